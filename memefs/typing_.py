"""Certain types used across the package."""

from __future__ import annotations

from os import PathLike
from typing import TYPE_CHECKING, NewType, Union

from typing_extensions import Buffer, TypeAlias

__all__ = [
    "NoneType",
    "StrPath",
    "ReadableBuffer",
    "BlockIndex",
    "SlotIndex",
]


NoneType: TypeAlias = type(None)

# `PathLike` cannot be subscripted at runtime.
if TYPE_CHECKING:
    StrPath: TypeAlias = Union[str, PathLike[str]]

# PEP 688 does not allow us to distinguish read-only and writable buffers.
ReadableBuffer: TypeAlias = Buffer

BlockIndex = NewType("BlockIndex", int)
"""Absolute index of a block on the volume."""

SlotIndex = NewType("SlotIndex", int)
"""Index of a slot in the directory table."""
