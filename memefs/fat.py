"""File allocation table."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Iterator

from .base import IntegrityError, NoSpace, ValidationError
from .superblock import FAT_ENTRY_SIZE, read_region
from .typing_ import BlockIndex

if TYPE_CHECKING:
    from .store import BlockStore
    from .superblock import Region, Superblock

__all__ = ["Fat", "BLOCK_FREE", "BLOCK_EOC"]


log = logging.getLogger(__name__)


BLOCK_FREE = 0x0000
BLOCK_EOC = 0xFFFF


class Fat:
    """In-memory allocation table of a volume.

    Holds one entry per block of the volume. An entry is either ``BLOCK_FREE``,
    ``BLOCK_EOC`` or the index of the next block of the same chain. Only blocks of
    the user region are ever allocated or freed; all other entries (block 0 and
    the metadata regions) are marked ``BLOCK_EOC`` when the volume is formatted.

    Changes are persisted by ``SuperblockManager.sync()``.
    """

    def __init__(self, entries: Iterable[int], user_region: Region):
        entries = list(entries)

        if user_region.start < 1 or user_region.stop > len(entries):
            raise ValueError(
                f"User region {tuple(user_region)} out of FAT bounds "
                f"(1, {len(entries) - 1})"
            )
        for value in entries:
            self._check_block_value(value)

        self._entries = entries
        self._user_region = user_region

    @classmethod
    def new(cls, superblock: Superblock, block_count: int) -> Fat:
        """Return the allocation table of a freshly formatted volume."""
        user_region = superblock.user_region
        entries = (
            BLOCK_FREE if block in user_region else BLOCK_EOC
            for block in range(block_count)
        )
        return cls(entries, user_region)

    @classmethod
    def from_bytes(cls, b: bytes, block_count: int, user_region: Region) -> Fat:
        """Parse the first ``block_count`` big-endian entries found in ``b``."""
        expected_size = block_count * FAT_ENTRY_SIZE
        if len(b) < expected_size:
            raise ValidationError(
                f"FAT is too small for {block_count} blocks (expected at least "
                f"{expected_size} bytes, got {len(b)} bytes)"
            )
        entries = (
            int.from_bytes(b[offset : offset + FAT_ENTRY_SIZE], "big")
            for offset in range(0, expected_size, FAT_ENTRY_SIZE)
        )
        return cls(entries, user_region)

    @classmethod
    def read(
        cls, store: BlockStore, superblock: Superblock, *, backup: bool = False
    ) -> Fat:
        """Read the main FAT or, if ``backup`` is set, the backup FAT."""
        if backup:
            region = superblock.backup_fat_region
        else:
            region = superblock.main_fat_region
        b = read_region(store, region)
        return cls.from_bytes(b, store.block_count, superblock.user_region)

    def __bytes__(self) -> bytes:
        return b"".join(
            value.to_bytes(FAT_ENTRY_SIZE, "big") for value in self._entries
        )

    def __len__(self) -> int:
        """Number of FAT entries, i.e. the total block count of the volume."""
        return len(self._entries)

    def _check_block_key(self, block: int) -> None:
        """Raise ``IntegrityError`` if ``block`` is not a valid index for the FAT."""
        key_max = len(self._entries) - 1
        if not 0 <= block <= key_max:
            raise IntegrityError(
                f"Block index {block} out of FAT bounds (0, {key_max})"
            )

    def _check_user_block(self, block: int) -> None:
        """Raise ``IntegrityError`` if ``block`` is not part of the user region."""
        if block not in self._user_region:
            raise IntegrityError(
                f"Block {block} is not part of the user region "
                f"{tuple(self._user_region)}"
            )

    @staticmethod
    def _check_block_value(value: int) -> None:
        if not 0 <= value <= BLOCK_EOC:
            raise ValueError(f"FAT value must be in range (0, {BLOCK_EOC})")

    def __getitem__(self, block: int) -> int:
        """Read the FAT entry of ``block``."""
        self._check_block_key(block)
        return self._entries[block]

    def __setitem__(self, block: int, value: int) -> None:
        """Set the FAT entry of ``block``."""
        self._check_block_key(block)
        self._check_block_value(value)
        if value not in (BLOCK_FREE, BLOCK_EOC):
            self._check_user_block(value)
        self._entries[block] = value

    def set_eoc(self, block: int) -> None:
        """Mark ``block`` as the end of a chain."""
        self[block] = BLOCK_EOC

    def set_free(self, block: int) -> None:
        """Mark ``block`` as unused."""
        self._check_user_block(block)
        self[block] = BLOCK_FREE

    def is_free(self, block: int) -> bool:
        return self[block] == BLOCK_FREE

    def allocate_block(self) -> BlockIndex:
        """Allocate the free block with the lowest index and mark it as the end of
        a chain.

        Raises ``NoSpace`` if no block of the user region is free.
        """
        for block in self._user_region.blocks():
            if self._entries[block] == BLOCK_FREE:
                self._entries[block] = BLOCK_EOC
                log.debug(f"Allocated block {block}")
                return BlockIndex(block)
        raise NoSpace("No free blocks left on volume")

    def extend_chain(self, tail: int) -> BlockIndex:
        """Allocate a new block and link it to ``tail``, the last block of a chain.

        The table is left unchanged if no block can be allocated.
        """
        self._check_user_block(tail)
        if self._entries[tail] != BLOCK_EOC:
            raise IntegrityError(f"Block {tail} is not the end of a chain")

        new = self.allocate_block()
        self._entries[tail] = new
        return new

    def chain_blocks(self, start: int) -> Iterator[BlockIndex]:
        """Yield the blocks of the chain starting with ``start``.

        Each call walks the chain anew. Raises ``IntegrityError`` if the chain
        leaves the user region, runs into a free block or does not terminate within
        ``len(self)`` blocks.
        """
        block = start
        for _ in range(len(self._entries)):
            self._check_user_block(block)
            yield BlockIndex(block)

            block = self._entries[block]
            if block == BLOCK_EOC:
                return
            if block == BLOCK_FREE:
                raise IntegrityError(
                    f"Chain starting at {start} runs into a free block"
                )

        raise IntegrityError(
            f"Chain starting at {start} does not terminate within "
            f"{len(self._entries)} blocks"
        )

    def free_chain(self, start: int) -> int:
        """Mark every block of the chain starting with ``start`` as free.

        The whole chain is walked before any entry is changed, so a corrupt chain
        leaves the table untouched. Returns the number of freed blocks.
        """
        blocks = list(self.chain_blocks(start))
        for block in blocks:
            self._entries[block] = BLOCK_FREE
        log.debug(f"Freed {len(blocks)} blocks starting at block {start}")
        return len(blocks)

    def free_blocks(self) -> int:
        """Return the total count of free blocks."""
        return sum(
            1
            for block in self._user_region.blocks()
            if self._entries[block] == BLOCK_FREE
        )

    @property
    def user_region(self) -> Region:
        return self._user_region

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(blocks={len(self)}, "
            f"free={self.free_blocks()})"
        )
