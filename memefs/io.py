"""Byte-level access to the block chain of a file."""

from __future__ import annotations

import logging
from itertools import islice
from typing import TYPE_CHECKING, Sequence

from .base import IntegrityError, InvalidOffset, NoSpace, ceil_div
from .directory import NO_BLOCK

if TYPE_CHECKING:
    from .directory import DirectoryEntry
    from .filesystem import FileSystem
    from .typing_ import BlockIndex, ReadableBuffer

__all__ = ["ChainIO"]


log = logging.getLogger(__name__)


class ChainIO:
    """Reads and writes the data of one file through its block chain.

    Operates on the allocation table and the store of ``fs`` directly, while the
    directory entry is left to the caller: after a successful ``write()`` or
    ``truncate()``, ``start_block`` and ``size`` hold the values to be stored in
    the entry. A failed ``write()`` or ``truncate()`` releases every block it
    allocated and leaves ``start_block`` and ``size`` unchanged.
    """

    def __init__(self, fs: FileSystem, entry: DirectoryEntry):
        self._store = fs.store
        self._fat = fs.fat
        self._block_size = fs.store.block_size
        self._start = entry.start_block
        self._size = entry.size
        self._name = entry.name

    @property
    def start_block(self) -> int:
        """First block of the chain or ``NO_BLOCK``."""
        return self._start

    @property
    def size(self) -> int:
        """Size of the file in bytes."""
        return self._size

    def _load_chain(self) -> list[BlockIndex]:
        if self._start == NO_BLOCK:
            return []
        chain = list(self._fat.chain_blocks(self._start))
        if len(chain) * self._block_size < self._size:
            raise IntegrityError(
                f"Chain of {self._name!r} spans {len(chain)} blocks, too few for "
                f"{self._size} bytes"
            )
        return chain

    def read(self, offset: int, length: int) -> bytes:
        """Read up to ``length`` bytes starting at byte ``offset``.

        Returns fewer bytes if the end of the file is reached and an empty bytes
        object if ``offset`` is at or past the end of the file. Only the blocks
        holding the requested range are read.
        """
        if offset < 0:
            raise InvalidOffset(f"Negative offset {offset}", self._name)
        if length < 0:
            raise InvalidOffset(f"Negative length {length}", self._name)
        if length == 0 or offset >= self._size:
            return b""
        if self._start == NO_BLOCK:
            raise IntegrityError(f"{self._name!r} has a size but no blocks")

        stop = min(self._size, offset + length)
        first = offset // self._block_size
        last = ceil_div(stop, self._block_size)

        blocks = list(islice(self._fat.chain_blocks(self._start), first, last))
        if len(blocks) != last - first:
            raise IntegrityError(f"Chain of {self._name!r} ends before its size")

        b = b"".join(self._store.read_block(block) for block in blocks)
        b_start = offset - first * self._block_size
        return b[b_start : b_start + stop - offset]

    def write(self, offset: int, b: ReadableBuffer) -> int:
        """Write ``b`` at byte ``offset``, extending the file if needed.

        Bytes between the previous end of the file and ``offset`` read back as
        zeroes afterwards. Writing zero bytes changes nothing.
        """
        if offset < 0:
            raise InvalidOffset(f"Negative offset {offset}", self._name)
        data = memoryview(b).cast("B")
        size = data.nbytes
        if size == 0:
            return 0
        self._store.check_writable()

        stop = offset + size
        chain = self._load_chain()
        fresh = self._allocate(chain, stop)

        # zero-fill the gap between the current end of the file and offset
        pos = min(offset, self._size)
        payload = bytes(offset - pos) + data.tobytes()

        blocks = chain + fresh
        try:
            self._write_range(blocks, fresh, pos, payload)
        except BaseException:
            self._release(chain, fresh)
            raise

        self._commit(blocks)
        self._size = max(self._size, stop)
        return size

    def truncate(self, size: int) -> int:
        """Resize the file to ``size`` bytes.

        Shrinking frees all blocks past the one holding the new last byte, growing
        appends zeroes.
        """
        if size < 0:
            raise InvalidOffset(f"Invalid size {size}", self._name)
        self._store.check_writable()

        if size < self._size:
            self._free(size)
        elif size > self._size:
            chain = self._load_chain()
            fresh = self._allocate(chain, size)
            blocks = chain + fresh
            try:
                self._write_range(blocks, fresh, self._size, bytes(size - self._size))
            except BaseException:
                self._release(chain, fresh)
                raise
            self._commit(blocks)
        self._size = size
        return size

    def _allocate(
        self, chain: Sequence[BlockIndex], min_size: int
    ) -> list[BlockIndex]:
        """Append as many blocks to ``chain`` as needed to hold ``min_size`` bytes.

        Returns the newly allocated blocks. Raises ``NoSpace`` without changing the
        allocation table if not enough blocks are free.
        """
        to_allocate = ceil_div(min_size, self._block_size) - len(chain)
        if to_allocate <= 0:
            return []

        free = self._fat.free_blocks()
        if to_allocate > free:
            raise NoSpace(
                f"{to_allocate} blocks required, only {free} blocks free", self._name
            )

        fresh: list[BlockIndex] = []
        try:
            for _ in range(to_allocate):
                if fresh:
                    fresh.append(self._fat.extend_chain(fresh[-1]))
                elif chain:
                    fresh.append(self._fat.extend_chain(chain[-1]))
                else:
                    fresh.append(self._fat.allocate_block())
        except BaseException:
            self._release(chain, fresh)
            raise

        log.debug(f"Allocated {len(fresh)} blocks for {self._name!r}")
        return fresh

    def _release(
        self, chain: Sequence[BlockIndex], fresh: Sequence[BlockIndex]
    ) -> None:
        """Undo ``_allocate()``: free ``fresh`` and terminate ``chain`` again."""
        if not fresh:
            return
        if chain:
            self._fat.set_eoc(chain[-1])
        self._fat.free_chain(fresh[0])
        log.debug(f"Released {len(fresh)} blocks of {self._name!r}")

    def _free(self, max_size: int) -> None:
        chain = self._load_chain()
        keep = ceil_div(max_size, self._block_size)
        if keep >= len(chain):
            return

        if keep == 0:
            self._fat.free_chain(chain[0])
            self._start = NO_BLOCK
        else:
            self._fat.set_eoc(chain[keep - 1])
            self._fat.free_chain(chain[keep])
        log.debug(f"Freed {len(chain) - keep} blocks of {self._name!r}")

    def _commit(self, blocks: Sequence[BlockIndex]) -> None:
        if self._start == NO_BLOCK and blocks:
            self._start = blocks[0]

    def _write_range(
        self,
        blocks: Sequence[BlockIndex],
        fresh: Sequence[BlockIndex],
        pos: int,
        payload: bytes,
    ) -> None:
        """Write ``payload`` at byte ``pos`` of the chain ``blocks``.

        Partially covered blocks are read first, unless they are freshly allocated,
        in which case the uncovered part is zero-filled. Fresh blocks are written
        before blocks already holding data of the file.
        """
        block_size = self._block_size
        stop = pos + len(payload)
        fresh_blocks = set(fresh)
        view = memoryview(payload)

        indices = range(pos // block_size, ceil_div(stop, block_size))
        for index in sorted(indices, key=lambda i: blocks[i] not in fresh_blocks):
            block = blocks[index]
            block_start = index * block_size
            lo = max(pos, block_start) - block_start
            hi = min(stop, block_start + block_size) - block_start
            chunk = view[block_start + lo - pos : block_start + hi - pos]

            if lo == 0 and hi == block_size:
                self._store.write_block(block, chunk)
                continue

            if block in fresh_blocks:
                buffer = bytearray(block_size)
            else:
                buffer = bytearray(self._store.read_block(block))
            buffer[lo:hi] = chunk
            self._store.write_block(block, buffer)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}({self._name!r}, start_block={self._start}, "
            f"size={self._size})"
        )
