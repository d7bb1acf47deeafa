"""Exception classes and helper functions used across ``memefs``."""

from __future__ import annotations

import os
from datetime import datetime
from errno import EINVAL, EIO, ENAMETOOLONG, ENOSPC

__all__ = [
    "ValidationError",
    "CorruptVolume",
    "IntegrityError",
    "NoSpace",
    "NameTooLong",
    "InvalidOffset",
    "BlockIOError",
    "ceil_div",
    "pack_bcd_datetime",
    "unpack_bcd_datetime",
    "BCD_DATETIME_SIZE",
]


BCD_DATETIME_SIZE = 8


class ValidationError(ValueError):
    """Exception raised if an object representing a specific structure -- for example
    the superblock or a directory entry -- cannot be created because the data to be
    parsed as the structure does not conform to the MEMEfs format.
    """


class CorruptVolume(ValidationError):
    """Exception raised if neither the primary nor the backup superblock of a volume
    can be parsed. Mounting such a volume is impossible.
    """


class IntegrityError(RuntimeError):
    """Exception raised if the in-memory tables of a mounted volume are found to be
    inconsistent, e.g. because of a cyclic block chain or an out-of-range index.

    This is never a retryable condition.
    """


class _ErrnoError(OSError):
    """``OSError`` with a fixed errno.

    The first argument may be omitted, in which case it defaults to the message
    belonging to the class's errno.
    """

    errno_default: int

    def __init__(self, message: str | None = None, filename: str | None = None):
        if message is None:
            message = os.strerror(self.errno_default)
        if filename is None:
            super().__init__(self.errno_default, message)
        else:
            super().__init__(self.errno_default, message, filename)


class NoSpace(_ErrnoError):
    """Raised if the allocation table or the directory table is exhausted."""

    errno_default = ENOSPC


class NameTooLong(_ErrnoError):
    """Raised if a file name exceeds the fixed length bound of directory entries."""

    errno_default = ENAMETOOLONG


class InvalidOffset(_ErrnoError):
    """Raised for negative or otherwise out-of-domain offsets, lengths and sizes."""

    errno_default = EINVAL


class BlockIOError(_ErrnoError):
    """Raised by a backing store if a block cannot be read or written."""

    errno_default = EIO


def ceil_div(value: int, divisor: int) -> int:
    """Return ``value / divisor`` rounded up.

    ``value`` must be zero or positive, ``divisor`` must be greater than zero.
    """
    if divisor <= 0:
        raise ValueError("Divisor must be greater than 0")
    if value < 0:
        raise ValueError("Value must be zero or positive")
    return (value + divisor - 1) // divisor


def _to_bcd(value: int) -> int:
    return ((value // 10) << 4) | (value % 10)


def _from_bcd(byte: int) -> int:
    high, low = byte >> 4, byte & 0x0F
    if high > 9 or low > 9:
        raise ValueError(f"Invalid BCD byte {byte:#04x}")
    return high * 10 + low


def pack_bcd_datetime(dt: datetime) -> bytes:
    """Return the 8-byte BCD form of ``dt``.

    Layout: century, year of century, month, day, hour, minute, second, each as a
    packed two-digit BCD byte, followed by one zero byte. Sub-second precision and
    time zone information are dropped.
    """
    century, year = divmod(dt.year, 100)
    fields = (century, year, dt.month, dt.day, dt.hour, dt.minute, dt.second)
    return bytes(map(_to_bcd, fields)) + b"\x00"


def unpack_bcd_datetime(b: bytes) -> datetime | None:
    """Return a naive ``datetime`` from the 8-byte BCD form ``b`` or ``None`` if
    ``b`` does not represent a valid BCD datetime (this includes all zeroes).
    """
    if len(b) != BCD_DATETIME_SIZE:
        raise ValueError(f"BCD datetime must be {BCD_DATETIME_SIZE} bytes long")
    try:
        century, year, month, day, hh, mm, ss = map(_from_bcd, b[:7])
        return datetime(century * 100 + year, month, day, hh, mm, ss)
    except ValueError:
        return None
