"""Command line interface for MEMEfs image files."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from contextlib import contextmanager
from stat import filemode
from typing import Callable, Iterator, Sequence

from .base import IntegrityError, NoSpace, ceil_div
from .filesystem import FileSystem
from .store import ImageStore
from .superblock import BLOCK_COUNT_DEFAULT

__all__ = ["main"]


log = logging.getLogger(__name__)


@contextmanager
def _mounted(image: str, *, readonly: bool) -> Iterator[FileSystem]:
    with ImageStore.open(image, readonly=readonly) as store:
        with FileSystem.mount(store) as fs:
            yield fs


def cmd_mkfs(args: argparse.Namespace) -> int:
    if os.path.exists(args.image):
        if not args.force:
            print(
                f"{args.image} already exists, use --force to overwrite it",
                file=sys.stderr,
            )
            return 1
        os.remove(args.image)

    with ImageStore.new(args.image, args.blocks) as store:
        with FileSystem.format(store, label=args.label) as fs:
            usage = fs.usage()
    print(
        f"Created {args.image}: {args.blocks} blocks, {usage.total_blocks} for data, "
        f"{usage.total_slots} directory slots"
    )
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    with _mounted(args.image, readonly=True) as fs:
        superblock = fs.superblock
        usage = fs.usage()
        created = superblock.created
        rows = [
            ("label", superblock.volume_label),
            ("version", superblock.version),
            ("created", created.isoformat(" ") if created else "invalid"),
            ("clean", "yes" if superblock.clean else "no"),
            ("blocks", fs.store.block_count),
            ("block size", usage.block_size),
            ("user blocks", f"{superblock.first_user_block}+{usage.total_blocks}"),
            ("backup FAT", f"{superblock.backup_fat}+{superblock.backup_fat_size}"),
            (
                "directory",
                f"{superblock.directory_start}+{superblock.directory_size}",
            ),
            ("main FAT", f"{superblock.main_fat}+{superblock.main_fat_size}"),
            ("free blocks", f"{usage.free_blocks} ({usage.free_bytes} bytes)"),
            ("free slots", f"{usage.free_slots} of {usage.total_slots}"),
        ]
    for key, value in rows:
        label = key + ":"
        print(f"{label:<13} {value}")
    return 0


def cmd_ls(args: argparse.Namespace) -> int:
    with _mounted(args.image, readonly=True) as fs:
        names = fs.listdir()
        if not args.long:
            for name in names:
                print(name)
            return 0
        for name in names:
            st = fs.stat(name)
            entry = fs.directory.find(name)
            mtime = entry.last_modified
            mtime_str = mtime.isoformat(" ") if mtime else "-"
            print(f"{filemode(st.st_mode)} {st.st_size:>8} {mtime_str} {name}")
    return 0


def cmd_cat(args: argparse.Namespace) -> int:
    with _mounted(args.image, readonly=True) as fs:
        data = fs.read(args.name)
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()
    return 0


def cmd_get(args: argparse.Namespace) -> int:
    with _mounted(args.image, readonly=True) as fs:
        data = fs.read(args.name)
    with open(args.dest, "wb") as f:
        f.write(data)
    return 0


def cmd_put(args: argparse.Namespace) -> int:
    name = args.name if args.name is not None else os.path.basename(args.src)
    with open(args.src, "rb") as f:
        data = f.read()

    with _mounted(args.image, readonly=False) as fs:
        usage = fs.usage()
        exists = name in fs.listdir()
        # Blocks of the replaced content become free again
        available = usage.free_blocks
        if exists:
            available += ceil_div(fs.stat(name).st_size, usage.block_size)
        required = ceil_div(len(data), usage.block_size)
        if required > available:
            raise NoSpace(
                f"{required} blocks required, only {available} blocks available", name
            )

        if exists:
            fs.truncate(name, 0)
        else:
            fs.create(name)
        fs.write(name, 0, data)
    log.info(f"Copied {len(data)} bytes from {args.src} to {name!r}")
    return 0


def cmd_rm(args: argparse.Namespace) -> int:
    with _mounted(args.image, readonly=False) as fs:
        fs.unlink(args.name)
    return 0


def cmd_mv(args: argparse.Namespace) -> int:
    with _mounted(args.image, readonly=False) as fs:
        fs.rename(args.src, args.dst)
    return 0


def cmd_truncate(args: argparse.Namespace) -> int:
    with _mounted(args.image, readonly=False) as fs:
        fs.truncate(args.name, args.size)
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    with _mounted(args.image, readonly=True) as fs:
        problems = fs.check()
    for problem in problems:
        print(problem)
    if problems:
        print(f"{len(problems)} problems found", file=sys.stderr)
        return 1
    print("No problems found")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memefs", description="Manipulate MEMEfs image files."
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="log more details, may be given twice",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def add(
        name: str, func: Callable[[argparse.Namespace], int], help: str
    ) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help)
        p.add_argument("image", help="path to the image file")
        p.set_defaults(func=func)
        return p

    p = add("mkfs", cmd_mkfs, "create and format a new image")
    p.add_argument("--blocks", type=int, default=BLOCK_COUNT_DEFAULT)
    p.add_argument("--label", default="")
    p.add_argument("--force", action="store_true", help="overwrite existing image")

    add("info", cmd_info, "show superblock fields and usage")

    p = add("ls", cmd_ls, "list files")
    p.add_argument("-l", "--long", action="store_true", help="long listing")

    p = add("cat", cmd_cat, "write a file to stdout")
    p.add_argument("name")

    p = add("get", cmd_get, "copy a file out of the image")
    p.add_argument("name")
    p.add_argument("dest")

    p = add("put", cmd_put, "copy a host file into the image")
    p.add_argument("src")
    p.add_argument("name", nargs="?", default=None)

    p = add("rm", cmd_rm, "remove a file")
    p.add_argument("name")

    p = add("mv", cmd_mv, "rename a file")
    p.add_argument("src")
    p.add_argument("dst")

    p = add("truncate", cmd_truncate, "resize a file")
    p.add_argument("name")
    p.add_argument("size", type=int)

    add("check", cmd_check, "check volume consistency")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.verbose >= 2:
        level = logging.DEBUG
    elif args.verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        return args.func(args)
    except (OSError, ValueError, IntegrityError) as e:
        print(f"memefs: error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
