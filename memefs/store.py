"""Block stores.

A block store is the block-addressable medium beneath a MEMEfs volume, e.g. an
image file. The file system only ever reads and writes whole blocks by index.
"""

from __future__ import annotations

import logging
import os
from errno import EROFS
from stat import S_ISBLK, S_ISREG
from types import TracebackType
from typing import TYPE_CHECKING, Protocol

from .base import BlockIOError

if TYPE_CHECKING:
    from .typing_ import ReadableBuffer, StrPath

__all__ = ["BlockStore", "ImageStore", "MemoryStore", "BLOCK_SIZE"]


log = logging.getLogger(__name__)


BLOCK_SIZE = 512


if hasattr(os, "pread") and hasattr(os, "pwrite"):
    _read = os.pread
    _write = os.pwrite
else:

    def _read(fd: int, size: int, pos: int) -> bytes:
        """Read `size` bytes from file descriptor `fd` starting at byte `pos`."""
        os.lseek(fd, pos, os.SEEK_SET)
        return os.read(fd, size)

    def _write(fd: int, b: ReadableBuffer, pos: int) -> int:
        """Write raw bytes `b` to file descriptor `fd` starting at byte `pos`."""
        os.lseek(fd, pos, os.SEEK_SET)
        return os.write(fd, b)


class BlockStore(Protocol):
    """Fixed-size block read and write access to a persistent medium."""

    def read_block(self, index: int) -> bytes:
        """Read block `index`. Raises `BlockIOError` on failure."""
        ...

    def write_block(self, index: int, b: ReadableBuffer) -> None:
        """Write exactly one block `b` at block `index`.

        Raises `BlockIOError` on failure.
        """
        ...

    def flush(self) -> None:
        ...

    def close(self) -> None:
        ...

    def check_writable(self) -> None:
        ...

    @property
    def block_size(self) -> int:
        ...

    @property
    def block_count(self) -> int:
        ...

    @property
    def writable(self) -> bool:
        ...


class _BaseStore:
    """Bounds and state checks shared by the block stores of this module."""

    _block_size: int
    _block_count: int
    _writable: bool
    _closed: bool

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self._block_count:
            raise BlockIOError(
                f"Block index {index} out of range (0, {self._block_count - 1})"
            )

    def _check_block(self, b: ReadableBuffer) -> memoryview:
        view = memoryview(b).cast("B")
        if view.nbytes != self._block_size:
            raise ValueError(
                f"Can only write blocks of {self._block_size} bytes, got "
                f"{view.nbytes} bytes"
            )
        return view

    @property
    def block_size(self) -> int:
        """Size of a block in bytes."""
        return self._block_size

    @property
    def block_count(self) -> int:
        """Total number of blocks of the store."""
        return self._block_count

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def writable(self) -> bool:
        """Whether the store supports writing."""
        self.check_closed()
        return self._writable

    def check_closed(self) -> None:
        """Raise `ValueError` if the store is closed."""
        if self._closed:
            raise ValueError("I/O operation on closed block store")

    def check_writable(self) -> None:
        """Raise `OSError` with `EROFS` if the store is read-only."""
        if not self._writable:
            raise OSError(EROFS, os.strerror(EROFS), str(self))

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context management protocol."""
        self.close()

    def close(self) -> None:
        raise NotImplementedError


class ImageStore(_BaseStore):
    """Image file or block device holding a MEMEfs volume.

    Do not use `__init__` directly, use `ImageStore.open()` or `ImageStore.new()`
    instead.
    """

    def __init__(
        self,
        fd: int,
        path: StrPath,
        size: int,
        *,
        block_size: int = BLOCK_SIZE,
        writable: bool,
    ):
        if size % block_size != 0:
            raise ValueError(
                f"Image size {size} is not a multiple of the block size {block_size}"
            )
        self._fd = fd
        self._path = str(path)
        self._block_size = block_size
        self._block_count = size // block_size
        self._writable = writable
        self._closed = False

        log.info(f"Opened image {self}")
        log.info(f"{self} - Size: {size} bytes, {self._block_count} blocks")

    @classmethod
    def new(
        cls, path: StrPath, block_count: int, *, block_size: int = BLOCK_SIZE
    ) -> ImageStore:
        """Create a new zero-filled image at `path`."""
        if block_count <= 0:
            raise ValueError("Block count must be greater than 0")
        if block_size <= 0:
            raise ValueError("Block size must be greater than 0")

        flags = os.O_CREAT | os.O_EXCL | os.O_RDWR | getattr(os, "O_BINARY", 0)
        fd = os.open(path, flags, 0o666)
        try:
            size = block_count * block_size
            os.truncate(fd, size)
            return cls(fd, path, size, block_size=block_size, writable=True)
        except BaseException:
            os.close(fd)
            raise

    @classmethod
    def open(
        cls, path: StrPath, *, block_size: int = BLOCK_SIZE, readonly: bool = False
    ) -> ImageStore:
        """Open the image file or block device at `path`."""
        read_write_flag = os.O_RDONLY if readonly else os.O_RDWR
        flags = read_write_flag | getattr(os, "O_BINARY", 0)
        fd = os.open(path, flags)

        try:
            stat = os.fstat(fd)
            if S_ISREG(stat.st_mode):
                size = stat.st_size
            elif S_ISBLK(stat.st_mode):
                size = os.lseek(fd, 0, os.SEEK_END)
            else:
                raise ValueError("File is neither a block device nor a regular file")
            return cls(fd, path, size, block_size=block_size, writable=not readonly)

        except BaseException:
            os.close(fd)
            raise

    def read_block(self, index: int) -> bytes:
        """Read block `index` of the image."""
        self.check_closed()
        self._check_index(index)

        try:
            b = _read(self._fd, self._block_size, index * self._block_size)
        except OSError as e:
            raise BlockIOError(f"Failed to read block {index}", self._path) from e

        if len(b) != self._block_size:
            raise BlockIOError(
                f"Short read at block {index} (expected {self._block_size} bytes, "
                f"got {len(b)} bytes)",
                self._path,
            )
        return b

    def write_block(self, index: int, b: ReadableBuffer) -> None:
        """Write the block `b` at block `index` of the image."""
        self.check_closed()
        self.check_writable()
        self._check_index(index)
        view = self._check_block(b)

        try:
            bytes_written = _write(self._fd, view, index * self._block_size)
        except OSError as e:
            raise BlockIOError(f"Failed to write block {index}", self._path) from e

        if bytes_written != self._block_size:
            raise BlockIOError(
                f"Short write at block {index} (expected {self._block_size} bytes, "
                f"wrote {bytes_written} bytes)",
                self._path,
            )

    def flush(self) -> None:
        """Flush write buffers of the underlying file or block device."""
        self.check_closed()
        if self._writable:
            os.fsync(self._fd)

    def close(self) -> None:
        """Close the underlying file descriptor.

        This method has no effect if the store is already closed.
        """
        if self._closed:
            return
        os.close(self._fd)
        self._closed = True
        log.info(f"Closed image {self}")

    def __enter__(self) -> ImageStore:
        self.check_closed()
        return self

    def __str__(self) -> str:
        return self._path

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}({self._path!r}, "
            f"block_count={self._block_count})"
        )


class MemoryStore(_BaseStore):
    """Block store held entirely in memory."""

    def __init__(
        self,
        block_count: int,
        *,
        block_size: int = BLOCK_SIZE,
        data: ReadableBuffer | None = None,
        writable: bool = True,
    ):
        if block_count <= 0:
            raise ValueError("Block count must be greater than 0")
        if block_size <= 0:
            raise ValueError("Block size must be greater than 0")

        size = block_count * block_size
        if data is None:
            self._data = bytearray(size)
        else:
            self._data = bytearray(data)
            if len(self._data) != size:
                raise ValueError(f"Initial data must be {size} bytes long")

        self._block_size = block_size
        self._block_count = block_count
        self._writable = writable
        self._closed = False

    def read_block(self, index: int) -> bytes:
        self.check_closed()
        self._check_index(index)
        start = index * self._block_size
        return bytes(self._data[start : start + self._block_size])

    def write_block(self, index: int, b: ReadableBuffer) -> None:
        self.check_closed()
        self.check_writable()
        self._check_index(index)
        view = self._check_block(b)
        start = index * self._block_size
        self._data[start : start + self._block_size] = view

    def flush(self) -> None:
        self.check_closed()

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> MemoryStore:
        self.check_closed()
        return self

    def getvalue(self) -> bytes:
        """Return the whole content of the store."""
        return bytes(self._data)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(block_count={self._block_count}, "
            f"block_size={self._block_size})"
        )
