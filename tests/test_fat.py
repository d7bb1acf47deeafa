"""Tests for the ``fat`` module."""

import pytest

from memefs.base import IntegrityError, NoSpace, ValidationError
from memefs.fat import BLOCK_EOC, BLOCK_FREE, Fat
from memefs.superblock import Region, Superblock

BLOCK_COUNT = 256


@pytest.fixture
def fat():
    """Fixture providing the allocation table of a new volume of 256 blocks."""
    return Fat.new(Superblock.new(BLOCK_COUNT), BLOCK_COUNT)


def test_new(fat):
    """Test that only the user region is free on a new volume."""
    assert len(fat) == BLOCK_COUNT
    assert fat.user_region == Region(1, 238)
    assert fat.free_blocks() == 238
    for block in (0, 239, 240, 253, 254, 255):
        assert fat[block] == BLOCK_EOC
    for block in (1, 100, 238):
        assert fat[block] == BLOCK_FREE


def test_bytes(fat):
    """Test the big-endian on-disk form of the table."""
    b = bytes(fat)
    assert len(b) == 2 * BLOCK_COUNT
    assert b[:4] == b"\xff\xff\x00\x00"
    assert b[-2:] == b"\xff\xff"

    fat.set_eoc(5)
    fat[1] = 5
    parsed = Fat.from_bytes(bytes(fat) + bytes(100), BLOCK_COUNT, fat.user_region)
    assert parsed[1] == 5
    assert parsed[5] == BLOCK_EOC
    assert bytes(parsed) == bytes(fat)


def test_from_bytes_fail(fat):
    with pytest.raises(ValidationError):
        Fat.from_bytes(bytes(fat)[:-2], BLOCK_COUNT, fat.user_region)


def test_allocate_lowest_first(fat):
    """Test that blocks are allocated in ascending order."""
    assert fat.allocate_block() == 1
    assert fat.allocate_block() == 2
    fat.set_free(1)
    assert fat.allocate_block() == 1
    assert fat[1] == BLOCK_EOC


def test_allocate_exhausted(fat):
    """Test that allocation fails once every user block is in use."""
    for _ in range(238):
        fat.allocate_block()
    assert fat.free_blocks() == 0
    with pytest.raises(NoSpace):
        fat.allocate_block()


def test_extend_and_walk_chain(fat):
    start = fat.allocate_block()
    tail = start
    for _ in range(4):
        tail = fat.extend_chain(tail)
    assert list(fat.chain_blocks(start)) == [1, 2, 3, 4, 5]
    assert fat[5] == BLOCK_EOC


def test_extend_chain_fail(fat):
    """Test that only the last block of a chain can be extended."""
    start = fat.allocate_block()
    fat.extend_chain(start)
    with pytest.raises(IntegrityError):
        fat.extend_chain(start)


def test_extend_chain_no_space(fat):
    """Test that a failed extension leaves the tail of the chain untouched."""
    while fat.free_blocks() > 1:
        fat.allocate_block()
    tail = fat.allocate_block()
    with pytest.raises(NoSpace):
        fat.extend_chain(tail)
    assert fat[tail] == BLOCK_EOC


def test_free_chain(fat):
    start = fat.allocate_block()
    fat.extend_chain(fat.extend_chain(start))
    assert fat.free_chain(start) == 3
    assert fat.free_blocks() == 238
    assert all(fat.is_free(block) for block in (1, 2, 3))


def test_chain_cycle(fat):
    """Test that walking a cyclic chain terminates with ``IntegrityError``."""
    fat.set_eoc(1)
    fat.set_eoc(2)
    fat[1] = 2
    fat[2] = 1
    with pytest.raises(IntegrityError):
        list(fat.chain_blocks(1))
    with pytest.raises(IntegrityError):
        fat.free_chain(1)
    assert fat[1] == 2  # table untouched


def test_chain_into_free_block(fat):
    fat.set_eoc(1)
    fat[1] = 2
    with pytest.raises(IntegrityError):
        list(fat.chain_blocks(1))


@pytest.mark.parametrize("block", [0, 239, 255])
def test_chain_outside_user_region(fat, block):
    with pytest.raises(IntegrityError):
        list(fat.chain_blocks(block))


@pytest.mark.parametrize("block", [-1, 256, 1000])
def test_index_out_of_range(fat, block):
    with pytest.raises(IntegrityError):
        fat[block]


def test_link_outside_user_region(fat):
    """Test that chains cannot be linked to metadata blocks."""
    with pytest.raises(IntegrityError):
        fat[1] = 240
    with pytest.raises(IntegrityError):
        fat.set_free(0)
