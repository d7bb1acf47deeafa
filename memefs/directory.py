"""Directory table and directory entries."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from datetime import datetime
from errno import EEXIST, ENOENT
from stat import S_IFMT, S_IFREG
from typing import TYPE_CHECKING, Iterable, Iterator

from typing_extensions import Annotated

from .base import (
    NameTooLong,
    NoSpace,
    ValidationError,
    pack_bcd_datetime,
    unpack_bcd_datetime,
)
from .bytestruct import ByteStruct
from .superblock import read_region
from .typing_ import SlotIndex

if TYPE_CHECKING:
    from .store import BlockStore
    from .superblock import Superblock

__all__ = [
    "ENTRY_SIZE",
    "NAME_MAX_LENGTH",
    "NO_BLOCK",
    "MODE_FILE_DEFAULT",
    "DirectoryEntry",
    "Directory",
    "check_name",
]


log = logging.getLogger(__name__)


ENTRY_SIZE = 32
NAME_MAX_LENGTH = 11  # bytes, UTF-8
NAME_ENCODING = "utf-8"
NAME_FORBIDDEN = "/\x00"
NAMES_RESERVED = (".", "..")

NO_BLOCK = 0
"""Start block of a file without any blocks. Block 0 holds the backup superblock."""

MODE_FILE_DEFAULT = S_IFREG | 0o644
ZERO_DATETIME = bytes(8)


def check_name(name: str) -> None:
    """Check that ``name`` can be stored in a directory entry.

    Raises ``ValueError`` for empty names, reserved names and names containing a
    slash or NUL, ``NameTooLong`` for names exceeding ``NAME_MAX_LENGTH`` bytes.
    """
    if not name:
        raise ValueError("File name must not be empty")
    if name in NAMES_RESERVED:
        raise ValueError(f"File name {name!r} is reserved")
    if any(char in NAME_FORBIDDEN for char in name):
        raise ValueError(f"Invalid file name {name!r}")
    try:
        encoded = name.encode(NAME_ENCODING)
    except UnicodeEncodeError as e:
        raise ValueError(f"Invalid file name {name!r}") from e
    if len(encoded) > NAME_MAX_LENGTH:
        raise NameTooLong(
            f"File name exceeds {NAME_MAX_LENGTH} bytes ({len(encoded)} bytes)", name
        )


@dataclass(frozen=True)
class DirectoryEntry(ByteStruct):
    """Directory entry; a ``mode`` of zero marks an unused slot."""

    mode: Annotated[int, 2]
    start_block: Annotated[int, 2]
    name: Annotated[str, NAME_MAX_LENGTH]
    _reserved: Annotated[None, 1]
    last_modified_bcd: Annotated[bytes, 8]
    size: Annotated[int, 4]
    uid: Annotated[int, 2]
    gid: Annotated[int, 2]

    @classmethod
    def empty(cls) -> DirectoryEntry:
        """Unused, zeroed slot."""
        return cls(0, NO_BLOCK, "", None, ZERO_DATETIME, 0, 0, 0)

    def validate(self) -> None:
        if not self.in_use:
            return
        if not self.name:
            raise ValidationError("Directory entry in use without a name")
        if S_IFMT(self.mode) not in (0, S_IFREG):
            raise ValidationError(f"Unsupported file type in mode {self.mode:#o}")
        if self.start_block == NO_BLOCK and self.size != 0:
            raise ValidationError(
                f"Entry {self.name!r} has a size of {self.size} bytes but no blocks"
            )

    @property
    def in_use(self) -> bool:
        return self.mode != 0

    @property
    def has_blocks(self) -> bool:
        return self.start_block != NO_BLOCK

    @property
    def last_modified(self) -> datetime | None:
        """Datetime of last modification or ``None`` if invalid."""
        return unpack_bcd_datetime(self.last_modified_bcd)

    def updated(
        self,
        *,
        start_block: int | None = None,
        size: int | None = None,
        last_modified: datetime | None = None,
        name: str | None = None,
    ) -> DirectoryEntry:
        """Return a copy of the entry with the given fields replaced."""
        replacements: dict[str, object] = {}
        if start_block is not None:
            replacements["start_block"] = start_block
        if size is not None:
            replacements["size"] = size
        if last_modified is not None:
            replacements["last_modified_bcd"] = pack_bcd_datetime(last_modified)
        if name is not None:
            replacements["name"] = name
        if not replacements:
            return self
        return replace(self, **replacements)  # type: ignore[arg-type]


class Directory:
    """Fixed-capacity, flat directory table.

    Names are matched exactly (case-sensitive). New entries take the free slot with
    the lowest index.
    """

    def __init__(self, entries: Iterable[DirectoryEntry]):
        self._entries = list(entries)

    @classmethod
    def new(cls, superblock: Superblock, block_size: int) -> Directory:
        capacity = superblock.directory_size * block_size // ENTRY_SIZE
        return cls(DirectoryEntry.empty() for _ in range(capacity))

    @classmethod
    def from_bytes(cls, b: bytes) -> Directory:
        """Parse a directory table from ``b``.

        Slots with a mode of zero are treated as unused regardless of their
        remaining content.
        """
        if len(b) % ENTRY_SIZE != 0:
            raise ValueError(f"Directory size must be a multiple of {ENTRY_SIZE}")

        entries = []
        for offset in range(0, len(b), ENTRY_SIZE):
            entry_bytes = b[offset : offset + ENTRY_SIZE]
            if entry_bytes[:2] == b"\x00\x00":
                entries.append(DirectoryEntry.empty())
            else:
                entries.append(DirectoryEntry.from_bytes(entry_bytes))

        directory = cls(entries)
        directory._check_unique()
        return directory

    @classmethod
    def read(cls, store: BlockStore, superblock: Superblock) -> Directory:
        return cls.from_bytes(read_region(store, superblock.directory_region))

    def __bytes__(self) -> bytes:
        return b"".join(map(bytes, self._entries))

    def _check_unique(self) -> None:
        seen: set[str] = set()
        for entry in self:
            if entry.name in seen:
                raise ValidationError(f"Duplicate directory entry {entry.name!r}")
            seen.add(entry.name)

    def __getitem__(self, slot: int) -> DirectoryEntry:
        return self._entries[slot]

    def __setitem__(self, slot: int, entry: DirectoryEntry) -> None:
        if entry.in_use:
            for other_slot, other in self.slots():
                if other_slot != slot and other.name == entry.name:
                    raise OSError(EEXIST, os.strerror(EEXIST), entry.name)
        self._entries[slot] = entry

    def __iter__(self) -> Iterator[DirectoryEntry]:
        """Iterate over all entries in use, in slot order."""
        return (entry for entry in self._entries if entry.in_use)

    def slots(self) -> Iterator[tuple[SlotIndex, DirectoryEntry]]:
        """Yield ``(slot, entry)`` for all entries in use."""
        for slot, entry in enumerate(self._entries):
            if entry.in_use:
                yield SlotIndex(slot), entry

    def index(self, name: str) -> SlotIndex:
        """Return the slot of the entry named ``name``.

        Raises ``FileNotFoundError`` if there is no such entry.
        """
        for slot, entry in self.slots():
            if entry.name == name:
                return slot
        raise OSError(ENOENT, os.strerror(ENOENT), name)  # FileNotFoundError

    def find(self, name: str) -> DirectoryEntry:
        """Return the entry named ``name``."""
        return self._entries[self.index(name)]

    def __contains__(self, name: object) -> bool:
        return any(entry.name == name for entry in self)

    def insert(
        self,
        name: str,
        *,
        mode: int = MODE_FILE_DEFAULT,
        uid: int = 0,
        gid: int = 0,
        last_modified: datetime | None = None,
    ) -> DirectoryEntry:
        """Create an empty entry named ``name`` in the first free slot."""
        check_name(name)
        if name in self:
            raise OSError(EEXIST, os.strerror(EEXIST), name)  # FileExistsError
        if S_IFMT(mode) == 0:
            mode |= S_IFREG
        if last_modified is None:
            last_modified = datetime.now()

        for slot, existing in enumerate(self._entries):
            if not existing.in_use:
                entry = DirectoryEntry(
                    mode,
                    NO_BLOCK,
                    name,
                    None,
                    pack_bcd_datetime(last_modified),
                    0,
                    uid,
                    gid,
                )
                self._entries[slot] = entry
                log.debug(f"Inserted entry {name!r} at slot {slot}")
                return entry

        raise NoSpace("Directory table is full", name)

    def remove(self, name: str) -> None:
        """Zero the slot of the entry named ``name``."""
        slot = self.index(name)
        self._entries[slot] = DirectoryEntry.empty()
        log.debug(f"Removed entry {name!r} from slot {slot}")

    def rename(self, old: str, new: str) -> DirectoryEntry:
        """Rename the entry ``old`` to ``new``; ``new`` must not exist yet."""
        check_name(new)
        slot = self.index(old)
        if new == old:
            return self._entries[slot]
        if new in self:
            raise OSError(EEXIST, os.strerror(EEXIST), new)
        entry = self._entries[slot].updated(name=new)
        self._entries[slot] = entry
        return entry

    def names(self) -> list[str]:
        return [entry.name for entry in self]

    def free_slots(self) -> int:
        return sum(1 for entry in self._entries if not entry.in_use)

    @property
    def capacity(self) -> int:
        """Total number of slots."""
        return len(self._entries)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(capacity={self.capacity}, "
            f"in_use={self.capacity - self.free_slots()})"
        )
