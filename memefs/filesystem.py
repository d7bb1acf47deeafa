"""MEMEfs file system."""

from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps
from os import stat_result
from threading import Lock
from types import TracebackType
from typing import TYPE_CHECKING, Callable, NamedTuple, TypeVar

from typing_extensions import Concatenate, ParamSpec

from .base import IntegrityError
from .directory import MODE_FILE_DEFAULT, Directory, DirectoryEntry
from .fat import BLOCK_EOC, BLOCK_FREE, Fat
from .io import ChainIO
from .superblock import DIRECTORY_BLOCKS_DEFAULT, Superblock, SuperblockManager

if TYPE_CHECKING:
    from .store import BlockStore
    from .typing_ import ReadableBuffer, SlotIndex

__all__ = ["FileSystem", "Usage"]


log = logging.getLogger(__name__)


# Typing
P = ParamSpec("P")
R = TypeVar("R")  # return type


class Usage(NamedTuple):
    """Block and directory slot usage of a volume."""

    block_size: int
    total_blocks: int
    free_blocks: int
    total_slots: int
    free_slots: int

    @property
    def used_blocks(self) -> int:
        return self.total_blocks - self.free_blocks

    @property
    def free_bytes(self) -> int:
        return self.free_blocks * self.block_size


def locked(
    method: Callable[Concatenate[FileSystem, P], R],
) -> Callable[Concatenate[FileSystem, P], R]:
    @wraps(method)
    def locked_wrapper(self: FileSystem, *args: P.args, **kwargs: P.kwargs) -> R:
        with self._lock:
            self.check_closed()
            return method(self, *args, **kwargs)

    return locked_wrapper


class FileSystem:
    """MEMEfs file system residing on a block store.

    Do not use ``__init__`` directly, use ``FileSystem.format()`` or
    ``FileSystem.mount()`` instead.

    All files live in a single flat directory and are addressed by name. Every
    public method holds the lock of the file system for its whole duration, and
    every mutating method persists the allocation table, the directory table and
    the superblock before returning.
    """

    def __init__(
        self,
        store: BlockStore,
        manager: SuperblockManager,
        fat: Fat,
        directory: Directory,
    ):
        self._store = store
        self._manager = manager
        self._fat = fat
        self._directory = directory
        self._lock = Lock()
        self._closed = False

    @classmethod
    def format(
        cls,
        store: BlockStore,
        *,
        label: str = "",
        directory_blocks: int = DIRECTORY_BLOCKS_DEFAULT,
        created: datetime | None = None,
    ) -> FileSystem:
        """Create a new, empty file system spanning all blocks of ``store``.

        **Caution:** Any data residing on ``store`` is rendered unusable.
        """
        store.check_writable()
        superblock = Superblock.new(
            store.block_count,
            label=label,
            directory_blocks=directory_blocks,
            created=created,
        )
        superblock.validate_for_store(store)

        fat = Fat.new(superblock, store.block_count)
        directory = Directory.new(superblock, store.block_size)
        manager = SuperblockManager(store, superblock)
        manager.mark_mounted()
        manager.sync(fat, directory)

        log.info(
            f"{store} - Formatted volume {label!r} with {store.block_count} blocks, "
            f"{superblock.num_user_blocks} of them for data"
        )
        return cls(store, manager, fat, directory)

    @classmethod
    def mount(cls, store: BlockStore) -> FileSystem:
        """Load the file system residing on ``store``.

        If ``store`` is writable, the volume is marked as in use until ``close()``
        is called.
        """
        manager = SuperblockManager(store)
        superblock = manager.load()
        fat = Fat.read(store, superblock)
        if bytes(fat) != bytes(Fat.read(store, superblock, backup=True)):
            log.warning(f"{store} - Backup FAT differs from main FAT")
        directory = Directory.read(store, superblock)

        if store.writable:
            manager.mark_mounted()
            manager.sync(fat, directory)

        log.info(f"{store} - Mounted volume {superblock.volume_label!r}")
        return cls(store, manager, fat, directory)

    def _sync(self) -> None:
        self._manager.sync(self._fat, self._directory)

    def _stat_for_entry(self, slot: SlotIndex, entry: DirectoryEntry) -> stat_result:
        """Get ``stat_result`` for ``entry`` residing in ``slot``."""
        ino = slot + 1  # zero is not a valid inode number
        mtime = 0 if entry.last_modified is None else entry.last_modified.timestamp()
        return stat_result(
            (
                entry.mode,
                ino,
                0,
                1,
                entry.uid,
                entry.gid,
                entry.size,
                mtime,
                mtime,
                mtime,
            )
        )

    @locked
    def create(
        self, name: str, *, mode: int = MODE_FILE_DEFAULT, uid: int = 0, gid: int = 0
    ) -> None:
        """Create the empty file ``name``.

        Raises ``FileExistsError`` if ``name`` already exists and ``NoSpace`` if
        the directory table is full.
        """
        self._store.check_writable()
        self._directory.insert(name, mode=mode, uid=uid, gid=gid)
        self._sync()
        log.info(f"{self._store} - Created {name!r}")

    @locked
    def read(self, name: str, offset: int = 0, length: int | None = None) -> bytes:
        """Read up to ``length`` bytes of ``name`` starting at byte ``offset``.

        Reads until the end of the file if ``length`` is ``None``.
        """
        entry = self._directory.find(name)
        if length is None:
            length = max(0, entry.size - offset)
        return ChainIO(self, entry).read(offset, length)

    @locked
    def write(self, name: str, offset: int, b: ReadableBuffer) -> int:
        """Write ``b`` to ``name`` at byte ``offset`` and return the byte count.

        Writing past the end of the file extends it, filling any gap with zeroes.
        Either all of ``b`` is written or, on failure, the file is left unchanged.
        """
        slot = self._directory.index(name)
        entry = self._directory[slot]
        self._store.check_writable()

        io = ChainIO(self, entry)
        size = io.write(offset, b)
        if size == 0:
            return 0

        self._directory[slot] = entry.updated(
            start_block=io.start_block, size=io.size, last_modified=datetime.now()
        )
        self._sync()
        return size

    @locked
    def truncate(self, name: str, size: int) -> None:
        """Resize ``name`` to ``size`` bytes, either freeing blocks or appending
        zeroes.
        """
        slot = self._directory.index(name)
        entry = self._directory[slot]
        self._store.check_writable()

        io = ChainIO(self, entry)
        io.truncate(size)

        self._directory[slot] = entry.updated(
            start_block=io.start_block, size=io.size, last_modified=datetime.now()
        )
        self._sync()

    @locked
    def unlink(self, name: str) -> None:
        """Remove ``name`` and free all of its blocks."""
        entry = self._directory.find(name)
        self._store.check_writable()

        if entry.has_blocks:
            freed = self._fat.free_chain(entry.start_block)
        else:
            freed = 0
        self._directory.remove(name)
        self._sync()
        log.info(f"{self._store} - Removed {name!r}, {freed} blocks freed")

    @locked
    def rename(self, src: str, dst: str) -> None:
        """Rename ``src`` to ``dst``.

        Raises ``FileExistsError`` if ``dst`` already exists.
        """
        self._store.check_writable()
        self._directory.rename(src, dst)
        self._sync()

    @locked
    def utime(self, name: str, mtime: datetime | None = None) -> None:
        """Set the modification time of ``name``, to the current time by default."""
        slot = self._directory.index(name)
        self._store.check_writable()
        if mtime is None:
            mtime = datetime.now()
        self._directory[slot] = self._directory[slot].updated(last_modified=mtime)
        self._sync()

    @locked
    def stat(self, name: str) -> stat_result:
        slot = self._directory.index(name)
        return self._stat_for_entry(slot, self._directory[slot])

    @locked
    def listdir(self) -> list[str]:
        """Return the names of all files in directory slot order."""
        return self._directory.names()

    @locked
    def usage(self) -> Usage:
        return Usage(
            self._store.block_size,
            len(self._fat.user_region.blocks()),
            self._fat.free_blocks(),
            self._directory.capacity,
            self._directory.free_slots(),
        )

    @locked
    def check(self) -> list[str]:
        """Check the consistency of allocation table and directory table.

        Returns a list of problems found, which is empty for a consistent volume.
        Nothing is repaired.
        """
        problems = []
        block_size = self._store.block_size
        owners: dict[int, str] = {}

        for entry in self._directory:
            if not entry.has_blocks:
                continue
            chain = []
            try:
                for block in self._fat.chain_blocks(entry.start_block):
                    chain.append(block)
            except IntegrityError as e:
                problems.append(f"{entry.name!r}: {e}")

            for block in chain:
                if block in owners:
                    problems.append(
                        f"{entry.name!r}: block {block} is cross-linked with "
                        f"{owners[block]!r}"
                    )
                else:
                    owners[block] = entry.name

            if len(chain) * block_size < entry.size:
                problems.append(
                    f"{entry.name!r}: size of {entry.size} bytes exceeds chain of "
                    f"{len(chain)} blocks"
                )

        user_region = self._fat.user_region
        for block in range(len(self._fat)):
            value = self._fat[block]
            if block not in user_region:
                if value != BLOCK_EOC:
                    problems.append(f"Reserved block {block} is not marked as used")
            elif value != BLOCK_FREE and block not in owners:
                problems.append(f"Block {block} is allocated but not part of a file")

        superblock = self._manager.superblock
        backup_fat = Fat.read(self._store, superblock, backup=True)
        if bytes(self._fat) != bytes(backup_fat):
            problems.append("Backup FAT differs from main FAT")

        for problem in problems:
            log.warning(f"{self._store} - {problem}")
        return problems

    def check_closed(self) -> None:
        """Raise ``ValueError`` if the file system is closed."""
        if self._closed:
            raise ValueError("I/O operation on closed file system")

    def close(self) -> None:
        """Mark the volume as cleanly unmounted and flush the store.

        The store itself is not closed. This method has no effect if the file
        system is already closed.
        """
        with self._lock:
            if self._closed:
                return
            if self._store.writable:
                self._manager.mark_clean()
                self._sync()
                self._store.flush()
            self._closed = True
        log.info(f"{self._store} - Unmounted volume {self.label!r}")

    def __enter__(self) -> FileSystem:
        self.check_closed()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context management protocol."""
        self.close()

    @property
    def store(self) -> BlockStore:
        return self._store

    @property
    def fat(self) -> Fat:
        return self._fat

    @property
    def directory(self) -> Directory:
        return self._directory

    @property
    def superblock(self) -> Superblock:
        return self._manager.superblock

    @property
    def label(self) -> str:
        return self._manager.superblock.volume_label

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._store!r}, label={self.label!r})"
