"""Tests for the ``superblock`` module."""

import logging
from dataclasses import replace
from datetime import datetime

import pytest

from memefs.base import CorruptVolume, ValidationError
from memefs.directory import Directory
from memefs.fat import Fat
from memefs.filesystem import FileSystem
from memefs.store import BLOCK_SIZE, MemoryStore
from memefs.superblock import (
    BLOCK_COUNT_DEFAULT,
    DIRECTORY_BLOCKS_DEFAULT,
    LABEL_MAX_LENGTH,
    SIGNATURE,
    VERSION,
    Region,
    Superblock,
    SuperblockManager,
)


@pytest.mark.parametrize(
    ["block_count", "user", "backup_fat", "directory", "main_fat"],
    [
        (256, Region(1, 238), Region(239, 1), Region(240, 14), Region(254, 1)),
        (257, Region(1, 237), Region(238, 2), Region(240, 14), Region(254, 2)),
        (1024, Region(1, 1000), Region(1001, 4), Region(1005, 14), Region(1019, 4)),
    ],
)
def test_layout(block_count, user, backup_fat, directory, main_fat):
    """Test the volume layout computed for a new superblock."""
    superblock = Superblock.new(block_count)
    assert superblock.user_region == user
    assert superblock.backup_fat_region == backup_fat
    assert superblock.directory_region == directory
    assert superblock.main_fat_region == main_fat
    assert main_fat.stop == block_count - 1  # primary superblock follows


def test_bytes():
    """Test the on-disk form of a new superblock."""
    created = datetime(2024, 3, 9, 17, 5, 42)
    superblock = Superblock.new(label="MEMEFS", created=created)
    b = bytes(superblock)

    assert len(b) == BLOCK_SIZE
    assert b[:16] == SIGNATURE
    assert b[16] == 1  # cleanly unmounted
    assert b[20:24] == VERSION.to_bytes(4, "big")
    assert b[24:32] == b"\x20\x24\x03\x09\x17\x05\x42\x00"
    assert b[32:34] == (254).to_bytes(2, "big")  # main FAT
    assert b[46:48] == (1).to_bytes(2, "big")  # first user block
    assert b[48:64] == b"MEMEFS" + bytes(10)
    assert b[64:] == bytes(BLOCK_SIZE - 64)

    parsed = Superblock.from_bytes(b)
    assert parsed == superblock
    assert parsed.created == created
    assert parsed.volume_label == "MEMEFS"


@pytest.mark.parametrize(
    "changes",
    [
        {"signature": b"?MEMEFS++CMSC422"},
        {"version": 2},
        {"cleanly_unmounted": 7},
        {"backup_fat_size": 2},
        {"directory_size": 0},
        {"first_user_block": 0},
        {"directory_start": 230},  # overlaps the user region
    ],
)
def test_validate_fail(changes):
    """Test that inconsistent superblocks are rejected."""
    with pytest.raises(ValidationError):
        replace(Superblock.new(), **changes)


def test_new_fail():
    with pytest.raises(ValueError):
        Superblock.new(16)  # no room for user blocks
    with pytest.raises(ValueError):
        Superblock.new(0)
    with pytest.raises(ValidationError):
        Superblock.new(label="seventeen chars!!")


def test_label_max_length():
    label = "x" * LABEL_MAX_LENGTH
    assert Superblock.new(label=label).volume_label == label
    with pytest.raises(ValidationError):
        Superblock.new(label=label + "x")


def test_validate_for_store():
    """Test that a superblock is checked against the geometry of its store."""
    superblock = Superblock.new(BLOCK_COUNT_DEFAULT)
    superblock.validate_for_store(MemoryStore(BLOCK_COUNT_DEFAULT))
    with pytest.raises(ValidationError):
        superblock.validate_for_store(MemoryStore(128))
    with pytest.raises(ValidationError):
        superblock.validate_for_store(MemoryStore(BLOCK_COUNT_DEFAULT, block_size=1024))


class TestSuperblockManager:
    """Tests for ``SuperblockManager``."""

    @staticmethod
    def formatted_store() -> MemoryStore:
        store = MemoryStore(BLOCK_COUNT_DEFAULT)
        FileSystem.format(store, label="vol").close()
        return store

    def test_load(self):
        store = self.formatted_store()
        manager = SuperblockManager(store)
        superblock = manager.load()
        assert superblock.volume_label == "vol"
        assert superblock.clean
        assert not manager.repair_pending
        assert store.read_block(0) == store.read_block(BLOCK_COUNT_DEFAULT - 1)

    def test_superblock_not_loaded(self):
        with pytest.raises(RuntimeError):
            SuperblockManager(MemoryStore(BLOCK_COUNT_DEFAULT)).superblock

    @pytest.mark.parametrize("corrupt", [bytes(BLOCK_SIZE), b"\xff" * BLOCK_SIZE])
    def test_fallback_to_backup(self, corrupt, caplog):
        """Test that an invalid primary superblock is replaced by the backup copy
        on the next sync.
        """
        store = self.formatted_store()
        primary = BLOCK_COUNT_DEFAULT - 1
        backup_bytes = store.read_block(0)
        store.write_block(primary, corrupt)

        manager = SuperblockManager(store)
        with caplog.at_level(logging.WARNING):
            superblock = manager.load()
        assert "Primary superblock invalid" in caplog.text
        assert superblock.volume_label == "vol"
        assert manager.repair_pending

        fat = Fat.read(store, superblock)
        directory = Directory.read(store, superblock)
        manager.sync(fat, directory)
        assert not manager.repair_pending
        assert store.read_block(primary) == backup_bytes

    def test_backup_differs(self):
        """Test that a damaged backup copy is repaired by the next sync."""
        store = self.formatted_store()
        store.write_block(0, bytes(BLOCK_SIZE))

        manager = SuperblockManager(store)
        superblock = manager.load()
        assert manager.repair_pending

        manager.sync(Fat.read(store, superblock), Directory.read(store, superblock))
        assert store.read_block(0) == bytes(superblock)

    def test_corrupt_volume(self):
        """Test that a volume without any valid superblock cannot be loaded."""
        store = self.formatted_store()
        store.write_block(0, bytes(BLOCK_SIZE))
        store.write_block(BLOCK_COUNT_DEFAULT - 1, bytes(BLOCK_SIZE))
        with pytest.raises(CorruptVolume):
            SuperblockManager(store).load()

    def test_unclean(self, caplog):
        store = MemoryStore(BLOCK_COUNT_DEFAULT)
        FileSystem.format(store)  # never closed

        with caplog.at_level(logging.WARNING):
            superblock = SuperblockManager(store).load()
        assert not superblock.clean
        assert "not cleanly unmounted" in caplog.text

    def test_sync_order(self):
        """Test that ``sync()`` writes FATs, directory and superblock copies in this
        order.
        """
        superblock = Superblock.new(label="order")
        written = []

        class RecordingStore(MemoryStore):
            def write_block(self, index, b):
                written.append(index)
                super().write_block(index, b)

        store = RecordingStore(BLOCK_COUNT_DEFAULT)
        manager = SuperblockManager(store, superblock)
        manager.sync(
            Fat.new(superblock, BLOCK_COUNT_DEFAULT),
            Directory.new(superblock, BLOCK_SIZE),
        )
        directory_blocks = list(range(240, 240 + DIRECTORY_BLOCKS_DEFAULT))
        assert written == [254, 239, *directory_blocks, 255, 0]

    def test_sync_readonly(self):
        superblock = Superblock.new()
        store = MemoryStore(BLOCK_COUNT_DEFAULT, writable=False)
        manager = SuperblockManager(store, superblock)
        with pytest.raises(OSError):
            manager.sync(
                Fat.new(superblock, BLOCK_COUNT_DEFAULT),
                Directory.new(superblock, BLOCK_SIZE),
            )
