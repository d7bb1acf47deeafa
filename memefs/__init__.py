"""MEMEfs: a small FAT-style file system with a flat directory, stored on any
block-addressable medium.
"""

from .base import (
    BlockIOError,
    CorruptVolume,
    IntegrityError,
    InvalidOffset,
    NameTooLong,
    NoSpace,
    ValidationError,
)
from .filesystem import FileSystem, Usage
from .store import BlockStore, ImageStore, MemoryStore

__all__ = [
    "FileSystem",
    "Usage",
    "BlockStore",
    "ImageStore",
    "MemoryStore",
    "ValidationError",
    "CorruptVolume",
    "IntegrityError",
    "NoSpace",
    "NameTooLong",
    "InvalidOffset",
    "BlockIOError",
]
