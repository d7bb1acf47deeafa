"""Superblock and its mirrored persistence.

Volume layout for a volume of ``N`` blocks::

    0                               backup superblock
    1 .. first_user + user - 1      user data region
    backup_fat ..                   backup FAT
    directory_start ..              directory region
    main_fat ..                     main FAT
    N - 1                           primary superblock

All multi-byte integers are stored big-endian.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, NamedTuple

from typing_extensions import Annotated

from .base import (
    CorruptVolume,
    ValidationError,
    ceil_div,
    pack_bcd_datetime,
    unpack_bcd_datetime,
)
from .bytestruct import ByteStruct
from .store import BLOCK_SIZE

if TYPE_CHECKING:
    from .directory import Directory
    from .fat import Fat
    from .store import BlockStore

__all__ = [
    "Superblock",
    "SuperblockManager",
    "Region",
    "read_region",
    "SIGNATURE",
    "VERSION",
    "BACKUP_SUPERBLOCK",
    "BLOCK_COUNT_DEFAULT",
    "DIRECTORY_BLOCKS_DEFAULT",
    "FAT_ENTRY_SIZE",
    "LABEL_MAX_LENGTH",
]


log = logging.getLogger(__name__)


SIGNATURE = b"?MEMEFS++CMSC421"
VERSION = 1
BACKUP_SUPERBLOCK = 0
FAT_ENTRY_SIZE = 2
LABEL_MAX_LENGTH = 16

# Largest block count addressable by 16-bit FAT entries; 0xFFFF is the EOC marker.
BLOCK_COUNT_MAX = 0xFFFF

# defaults
BLOCK_COUNT_DEFAULT = 256
DIRECTORY_BLOCKS_DEFAULT = 14


class Region(NamedTuple):
    """Contiguous range of blocks."""

    start: int
    size: int

    @property
    def stop(self) -> int:
        return self.start + self.size

    def __contains__(self, block: object) -> bool:
        return isinstance(block, int) and self.start <= block < self.stop

    def blocks(self) -> range:
        return range(self.start, self.stop)


@dataclass(frozen=True)
class Superblock(ByteStruct):
    """MEMEfs superblock."""

    signature: Annotated[bytes, 16]
    cleanly_unmounted: Annotated[int, 1]
    _reserved: Annotated[None, 3]
    version: Annotated[int, 4]
    created_bcd: Annotated[bytes, 8]
    main_fat: Annotated[int, 2]
    main_fat_size: Annotated[int, 2]
    backup_fat: Annotated[int, 2]
    backup_fat_size: Annotated[int, 2]
    directory_start: Annotated[int, 2]
    directory_size: Annotated[int, 2]
    num_user_blocks: Annotated[int, 2]
    first_user_block: Annotated[int, 2]
    volume_label: Annotated[str, LABEL_MAX_LENGTH]
    _unused: Annotated[None, 448]

    @classmethod
    def new(
        cls,
        block_count: int = BLOCK_COUNT_DEFAULT,
        *,
        label: str = "",
        directory_blocks: int = DIRECTORY_BLOCKS_DEFAULT,
        created: datetime | None = None,
    ) -> Superblock:
        """Lay out a new volume of ``block_count`` blocks."""
        if not 0 < block_count <= BLOCK_COUNT_MAX:
            raise ValueError(f"Block count must be in range (1, {BLOCK_COUNT_MAX})")
        if directory_blocks < 1:
            raise ValueError("Directory must span at least one block")
        if created is None:
            created = datetime.now()

        fat_size = ceil_div(block_count * FAT_ENTRY_SIZE, BLOCK_SIZE)
        main_fat = block_count - 1 - fat_size
        directory_start = main_fat - directory_blocks
        backup_fat = directory_start - fat_size
        first_user_block = BACKUP_SUPERBLOCK + 1
        num_user_blocks = backup_fat - first_user_block

        if num_user_blocks < 1:
            raise ValueError(
                f"Block count {block_count} too small to hold metadata and at least "
                f"one user block"
            )

        return cls(
            SIGNATURE,
            1,
            None,
            VERSION,
            pack_bcd_datetime(created),
            main_fat,
            fat_size,
            backup_fat,
            fat_size,
            directory_start,
            directory_blocks,
            num_user_blocks,
            first_user_block,
            label,
            None,
        )

    def validate(self) -> None:
        if self.signature != SIGNATURE:
            raise ValidationError(f"Invalid signature {self.signature!r}")
        if self.version != VERSION:
            raise ValidationError(f"Unsupported version {self.version}")
        if self.cleanly_unmounted not in (0, 1):
            raise ValidationError(
                f"Invalid clean unmount flag {self.cleanly_unmounted}"
            )
        if self.main_fat_size != self.backup_fat_size:
            raise ValidationError("Main FAT and backup FAT sizes differ")
        if self.main_fat_size < 1:
            raise ValidationError("FAT must span at least one block")
        if self.directory_size < 1:
            raise ValidationError("Directory must span at least one block")
        if self.num_user_blocks < 1:
            raise ValidationError("Volume must provide at least one user block")
        if self.first_user_block == BACKUP_SUPERBLOCK:
            raise ValidationError("User region must not contain block 0")

        regions = sorted(self._regions())
        for (previous, _), (region, name) in zip(regions, regions[1:]):
            if region.start < previous.stop:
                raise ValidationError(f"Region {name} overlaps another region")

    def validate_for_store(self, store: BlockStore) -> None:
        """Check the geometry described by the superblock against ``store``."""
        if store.block_size != BLOCK_SIZE:
            raise ValidationError(
                f"Block size of store must be {BLOCK_SIZE}, got {store.block_size}"
            )
        block_count = store.block_count
        if block_count > BLOCK_COUNT_MAX:
            raise ValidationError(
                f"Store of {block_count} blocks exceeds the FAT addressing limit"
            )

        primary = block_count - 1
        for region, name in self._regions():
            if region.start <= BACKUP_SUPERBLOCK or region.stop > primary:
                raise ValidationError(
                    f"Region {name} {tuple(region)} out of bounds for store of "
                    f"{block_count} blocks"
                )

        fat_size_required = ceil_div(block_count * FAT_ENTRY_SIZE, BLOCK_SIZE)
        if self.main_fat_size < fat_size_required:
            raise ValidationError(
                f"FAT is too small for {block_count} blocks (expected at least "
                f"{fat_size_required} blocks, got {self.main_fat_size} blocks)"
            )

    def _regions(self) -> list[tuple[Region, str]]:
        # region first so that sorting orders by position
        return [
            (self.user_region, "user"),
            (self.main_fat_region, "main FAT"),
            (self.backup_fat_region, "backup FAT"),
            (self.directory_region, "directory"),
        ]

    @property
    def created(self) -> datetime | None:
        """Creation datetime or ``None`` if invalid."""
        return unpack_bcd_datetime(self.created_bcd)

    @property
    def main_fat_region(self) -> Region:
        return Region(self.main_fat, self.main_fat_size)

    @property
    def backup_fat_region(self) -> Region:
        return Region(self.backup_fat, self.backup_fat_size)

    @property
    def directory_region(self) -> Region:
        return Region(self.directory_start, self.directory_size)

    @property
    def user_region(self) -> Region:
        return Region(self.first_user_block, self.num_user_blocks)

    @property
    def clean(self) -> bool:
        """Whether the volume was cleanly unmounted."""
        return bool(self.cleanly_unmounted)


def _write_region(store: BlockStore, region: Region, b: bytes) -> None:
    """Write ``b`` to ``region`` of ``store``, zero-filling the last block."""
    block_size = store.block_size
    if len(b) > region.size * block_size:
        raise ValueError(f"{len(b)} bytes do not fit into region {tuple(region)}")
    b = b.ljust(region.size * block_size, b"\x00")
    for offset, block in enumerate(region.blocks()):
        start = offset * block_size
        store.write_block(block, b[start : start + block_size])


def read_region(store: BlockStore, region: Region) -> bytes:
    """Read all blocks of ``region`` of ``store``."""
    return b"".join(store.read_block(block) for block in region.blocks())


class SuperblockManager:
    """Loads, validates and persists the superblock of a volume.

    The superblock is mirrored: the primary copy lives in the last block of the
    store, the backup copy in block 0. ``sync()`` persists the allocation table and
    the directory table along with the superblock, in that order.
    """

    def __init__(self, store: BlockStore, superblock: Superblock | None = None):
        self._store = store
        self._superblock = superblock
        self._repair_primary = False

    @property
    def primary_location(self) -> int:
        return self._store.block_count - 1

    @property
    def backup_location(self) -> int:
        return BACKUP_SUPERBLOCK

    @property
    def superblock(self) -> Superblock:
        if self._superblock is None:
            raise RuntimeError("Superblock not loaded yet")
        return self._superblock

    @property
    def repair_pending(self) -> bool:
        """Whether the primary copy is to be rewritten by the next ``sync()``."""
        return self._repair_primary

    def _read_copy(self, location: int) -> Superblock:
        superblock = Superblock.from_bytes(self._store.read_block(location))
        superblock.validate_for_store(self._store)
        return superblock

    def load(self) -> Superblock:
        """Load the superblock, falling back to the backup copy once.

        Raises ``CorruptVolume`` if neither copy is valid.
        """
        try:
            superblock = self._read_copy(self.primary_location)
        except ValidationError as e:
            log.warning(
                f"{self._store} - Primary superblock invalid ({e}), trying backup "
                f"superblock"
            )
            try:
                superblock = self._read_copy(self.backup_location)
            except ValidationError as e_backup:
                raise CorruptVolume(
                    f"Neither primary nor backup superblock is valid: {e_backup}"
                ) from e_backup
            self._repair_primary = True
        else:
            backup_bytes = self._store.read_block(self.backup_location)
            if backup_bytes != bytes(superblock):
                log.warning(f"{self._store} - Backup superblock differs from primary")
                self._repair_primary = True

        if not superblock.clean:
            log.warning(f"{self._store} - Volume was not cleanly unmounted")

        self._superblock = superblock
        log.info(f"{self._store} - Loaded superblock {superblock.volume_label!r}")
        return superblock

    def update(self, **changes: object) -> Superblock:
        """Replace fields of the in-memory superblock; persisted by ``sync()``."""
        self._superblock = replace(self.superblock, **changes)  # type: ignore[arg-type]
        return self._superblock

    def mark_mounted(self) -> None:
        self.update(cleanly_unmounted=0)

    def mark_clean(self) -> None:
        self.update(cleanly_unmounted=1)

    def sync(self, fat: Fat, directory: Directory) -> None:
        """Persist allocation table, directory table and superblock.

        Both FAT copies are written before the directory and the superblock copies
        are written last, so that a crash during ``sync()`` at worst loses the most
        recent change.
        """
        store = self._store
        store.check_writable()
        superblock = self.superblock

        fat_bytes = bytes(fat)
        _write_region(store, superblock.main_fat_region, fat_bytes)
        _write_region(store, superblock.backup_fat_region, fat_bytes)
        _write_region(store, superblock.directory_region, bytes(directory))

        superblock_bytes = bytes(superblock)
        store.write_block(self.primary_location, superblock_bytes)
        store.write_block(self.backup_location, superblock_bytes)

        if self._repair_primary:
            log.info(f"{store} - Repaired superblock copies")
            self._repair_primary = False
        log.debug(f"{store} - Synced FAT, directory and superblock")
