"""Packing and validation of fixed-layout on-disk records."""

from __future__ import annotations

import struct
from dataclasses import InitVar
from typing import Any, ClassVar, Literal, NamedTuple, TypeVar

from typing_extensions import Annotated, get_args, get_origin, get_type_hints

from .base import ValidationError
from .typing_ import NoneType

__all__ = ["ByteStruct"]


INT_FORMATS = {1: "B", 2: "H", 4: "I", 8: "Q"}
STR_ENCODING_DEFAULT = "utf-8"
INTERNAL_NAMES = (
    "__bytestruct_fields__",
    "__bytestruct_format__",
    "__bytestruct_size__",
    "__bytestruct_cached__",
)

_Bs = TypeVar("_Bs", bound="ByteStruct")


class _Field(NamedTuple):
    """Layout of a single field of a `ByteStruct`.

    `kind` is one of `int`, `bytes`, `str` or `NoneType` (pad bytes), `size` the
    number of bytes the field occupies. `encoding` is only meaningful for `str`.
    """

    kind: type
    size: int
    encoding: str = STR_ENCODING_DEFAULT

    @property
    def format(self) -> str:
        """`struct` format characters of the field."""
        if self.kind is int:
            return INT_FORMATS[self.size]
        if self.kind is NoneType:
            return f"{self.size}x"
        return f"{self.size}s"


def _parse_annotation(name: str, type_: Any) -> _Field:
    """Return the `_Field` described by the annotation `type_` of field `name`."""
    if get_origin(type_) is not Annotated:
        raise TypeError(
            f"Unannotated type {type_} of field {name!r} is not allowed for "
            f"ByteStruct"
        )

    kind, size, *extra = get_args(type_)
    if not isinstance(size, int):
        raise TypeError("Field size must be specified as int")
    if size < 1:
        raise ValueError("Field size must be greater than or equal to 1")

    if kind is int:
        if extra:
            raise ValueError(f"Unexpected metadata {extra} on int field {name!r}")
        if size not in INT_FORMATS:
            raise ValueError(
                f"Invalid int field size {size}, must be one of {tuple(INT_FORMATS)}"
            )
        return _Field(int, size)

    if kind is str:
        if not extra:
            return _Field(str, size)
        encoding = extra[0]
        "".encode(encoding)  # unknown codecs raise LookupError
        return _Field(str, size, encoding)

    if kind in (bytes, NoneType) and not extra:
        return _Field(kind, size)

    raise TypeError(
        f"Annotated type {kind} of field {name!r} is not allowed for ByteStruct"
    )


class _ByteStructMeta(type):
    """Metaclass of `ByteStruct`.

    Turns the annotations of a `ByteStruct` subclass into the `struct` format of
    its records.
    """

    def __new__(
        mcs,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        **kwargs: Any,
    ) -> _ByteStructMeta:
        """Accept `kwargs` like `byteorder` when subclassing `ByteStruct`."""
        return super().__new__(mcs, name, bases, namespace)

    def __init__(
        cls,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        byteorder: Literal["<", ">", "!", "="] = ">",
    ):
        super().__init__(name, bases, namespace)
        if not bases:
            return  # cls is ByteStruct

        fields = {}
        for field_name, type_ in get_type_hints(cls, include_extras=True).items():
            if field_name in INTERNAL_NAMES or type(type_) is InitVar:
                continue
            if get_origin(type_) is ClassVar:
                continue
            fields[field_name] = _parse_annotation(field_name, type_)

        format_ = byteorder + "".join(field.format for field in fields.values())
        cls.__bytestruct_fields__ = fields
        cls.__bytestruct_format__ = format_
        cls.__bytestruct_size__ = struct.calcsize(format_)

    def __len__(cls) -> int:
        """Size of a record in bytes."""
        return cls.__bytestruct_size__


class ByteStruct(metaclass=_ByteStructMeta):
    """Packed binary record with named, validated fields.

    Every subclass must be a frozen `dataclass` whose fields are annotated with
    their on-disk size::

        @dataclasses.dataclass(frozen=True)
        class Record(ByteStruct):

            count: Annotated[int, 2]           # unsigned int of 2 bytes
            magic: Annotated[bytes, 4]         # raw bytes
            name: Annotated[str, 11]           # UTF-8 text of up to 11 bytes
            label: Annotated[str, 8, "ascii"]  # ASCII text of up to 8 bytes
            _reserved: Annotated[None, 8]      # 8 pad bytes

    Integers are stored in network byte order unless `byteorder` is passed when
    subclassing. Text fields are NUL padded and may not contain NUL themselves.

    Records parsed with `from_bytes()` keep the bytes they were parsed from, so
    pad bytes survive a round trip unchanged. Override `validate()` to add checks
    that go beyond the field formats.
    """

    # Populated per class
    __bytestruct_fields__: "dict[str, _Field]"
    __bytestruct_format__: str
    __bytestruct_size__: int

    # Populated per instance
    __bytestruct_cached__: bytes

    @classmethod
    def _check_direct_instantiation(cls) -> None:
        if cls.__bases__ == (object,):
            raise TypeError(f"Cannot directly instantiate {cls.__name__}")

    @classmethod
    def _check_frozen_dataclass(cls) -> None:
        params: Any = getattr(cls, "__dataclass_params__", None)
        if params is None or not params.frozen:
            raise TypeError("ByteStruct subclass must be a frozen dataclass")

    # noinspection PyUnusedLocal
    def __init__(self, *args: Any, **kwargs: Any):
        self._check_direct_instantiation()
        self._check_frozen_dataclass()

    def __post_init__(self) -> None:
        self._check_frozen_dataclass()
        if not hasattr(self, "__bytestruct_cached__"):
            self._pack()
        self.validate()

    def _pack(self) -> None:
        """Check the field values against their formats and cache the packed
        record.
        """
        values = []
        for name, field in self.__bytestruct_fields__.items():
            if field.kind is NoneType:
                continue  # struct.pack() takes no value for pad bytes
            value = getattr(self, name)
            if field.kind is str:
                value = _encode_text(name, value, field)
            elif field.kind is bytes and len(value) != field.size:
                raise ValidationError(
                    f"Value of field {name!r} must be of length {field.size} bytes, "
                    f"got {len(value)} bytes"
                )
            values.append(value)

        try:
            packed = struct.pack(self.__bytestruct_format__, *values)
        except (struct.error, OverflowError) as e:
            raise ValidationError(
                f"Value out of range (format is {self.__bytestruct_format__!r})"
            ) from e
        self.__dict__["__bytestruct_cached__"] = packed  # frozen dataclass

    def validate(self) -> None:
        """Custom validation logic, run after the field formats are checked."""

    @classmethod
    def from_bytes(cls: type[_Bs], b: bytes) -> _Bs:
        """Parse a record from `b`, which must be exactly `len(cls)` bytes long."""
        cls._check_direct_instantiation()
        b = bytes(b)
        if len(b) != cls.__bytestruct_size__:
            raise ValueError(
                f"Structure is {cls.__bytestruct_size__} bytes long, got {len(b)} bytes"
            )

        unpacked = iter(struct.unpack(cls.__bytestruct_format__, b))
        values: list[Any] = []
        for name, field in cls.__bytestruct_fields__.items():
            if field.kind is NoneType:
                values.append(None)
            elif field.kind is str:
                values.append(_decode_text(name, next(unpacked), field))
            else:
                values.append(next(unpacked))

        self = cls(*values)
        # Pad bytes are not necessarily zero on disk
        self.__dict__["__bytestruct_cached__"] = b
        return self

    def __bytes__(self) -> bytes:
        return self.__bytestruct_cached__

    def __len__(self) -> int:
        return self.__bytestruct_size__


def _encode_text(name: str, value: str, field: _Field) -> bytes:
    if "\x00" in value:
        raise ValidationError(f"Value of field {name!r} must not contain NUL")
    try:
        encoded = value.encode(field.encoding)
    except UnicodeEncodeError as e:
        raise ValidationError(
            f"Value of field {name!r} cannot be encoded as {field.encoding}"
        ) from e
    if len(encoded) > field.size:
        raise ValidationError(
            f"Value of field {name!r} must not exceed {field.size} bytes, "
            f"got {len(encoded)} bytes"
        )
    return encoded


def _decode_text(name: str, value: bytes, field: _Field) -> str:
    try:
        decoded = value.rstrip(b"\x00").decode(field.encoding)
    except UnicodeDecodeError as e:
        raise ValidationError(
            f"Value of field {name!r} is not valid {field.encoding}"
        ) from e
    if "\x00" in decoded:
        raise ValidationError(f"Value of field {name!r} must not contain NUL")
    return decoded
