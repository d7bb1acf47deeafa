"""Tests for the ``cli`` module."""

import pytest

from memefs.cli import main
from memefs.filesystem import FileSystem
from memefs.store import BLOCK_SIZE, ImageStore


@pytest.fixture
def image(tempdir):
    """Fixture providing the path of a freshly formatted image of 256 blocks."""
    path = tempdir / "volume.img"
    assert main(["mkfs", str(path), "--label", "cli"]) == 0
    return path


def test_mkfs(image, capsys):
    assert image.stat().st_size == 256 * BLOCK_SIZE
    with ImageStore.open(image, readonly=True) as store:
        with FileSystem.mount(store) as fs:
            assert fs.label == "cli"
            assert fs.superblock.clean


def test_mkfs_blocks(tempdir):
    path = tempdir / "big.img"
    assert main(["mkfs", str(path), "--blocks", "1024"]) == 0
    assert path.stat().st_size == 1024 * BLOCK_SIZE


def test_mkfs_exists(image, capsys):
    """Test that existing images are only overwritten with ``--force``."""
    capsys.readouterr()
    assert main(["mkfs", str(image)]) == 1
    assert "--force" in capsys.readouterr().err
    assert main(["mkfs", str(image), "--force", "--label", "new"]) == 0
    assert main(["info", str(image)]) == 0
    assert "new" in capsys.readouterr().out


def test_put_get(image, tempdir, capsys):
    """Test copying a file into the image and back out."""
    src = tempdir / "source.bin"
    data = bytes(range(256)) * 10
    src.write_bytes(data)

    assert main(["put", str(image), str(src), "data.bin"]) == 0
    assert main(["put", str(image), str(src)]) == 0  # named after the source
    capsys.readouterr()

    assert main(["ls", str(image)]) == 0
    assert capsys.readouterr().out.split() == ["data.bin", "source.bin"]

    dest = tempdir / "dest.bin"
    assert main(["get", str(image), "data.bin", str(dest)]) == 0
    assert dest.read_bytes() == data


def test_put_replaces(image, tempdir):
    src = tempdir / "src"
    src.write_bytes(b"long content" * 100)
    assert main(["put", str(image), str(src), "f"]) == 0
    src.write_bytes(b"short")
    assert main(["put", str(image), str(src), "f"]) == 0

    with ImageStore.open(image, readonly=True) as store:
        with FileSystem.mount(store) as fs:
            assert fs.read("f") == b"short"
            assert fs.usage().used_blocks == 1


def test_put_replace_no_space(image, tempdir, capsys):
    """Test that replacing a file with content that does not fit keeps the old
    content.
    """
    src = tempdir / "src"
    old = b"a" * (100 * BLOCK_SIZE)
    src.write_bytes(old)
    assert main(["put", str(image), str(src), "f"]) == 0
    src.write_bytes(b"b" * (100 * BLOCK_SIZE))
    assert main(["put", str(image), str(src), "g"]) == 0
    capsys.readouterr()

    # 38 free blocks plus the 100 blocks of "f"
    src.write_bytes(b"c" * (139 * BLOCK_SIZE))
    assert main(["put", str(image), str(src), "f"]) == 1
    assert "blocks required" in capsys.readouterr().err

    with ImageStore.open(image, readonly=True) as store:
        with FileSystem.mount(store) as fs:
            assert fs.read("f") == old

    src.write_bytes(b"c" * (138 * BLOCK_SIZE))
    assert main(["put", str(image), str(src), "f"]) == 0


def test_cat(image, tempdir, capsysbinary):
    src = tempdir / "hello"
    src.write_bytes(b"hello, memefs\n")
    assert main(["put", str(image), str(src)]) == 0
    capsysbinary.readouterr()

    assert main(["cat", str(image), "hello"]) == 0
    assert capsysbinary.readouterr().out == b"hello, memefs\n"


def test_ls_long(image, tempdir, capsys):
    src = tempdir / "f"
    src.write_bytes(b"x" * 700)
    assert main(["put", str(image), str(src)]) == 0
    capsys.readouterr()

    assert main(["ls", "-l", str(image)]) == 0
    mode, size, *_, name = capsys.readouterr().out.split()
    assert mode == "-rw-r--r--"
    assert size == "700"
    assert name == "f"


def test_rm_mv_truncate(image, tempdir, capsys):
    src = tempdir / "a"
    src.write_bytes(b"abcdef")
    assert main(["put", str(image), str(src)]) == 0
    assert main(["mv", str(image), "a", "b"]) == 0
    assert main(["truncate", str(image), "b", "3"]) == 0

    with ImageStore.open(image, readonly=True) as store:
        with FileSystem.mount(store) as fs:
            assert fs.listdir() == ["b"]
            assert fs.read("b") == b"abc"

    assert main(["rm", str(image), "b"]) == 0
    capsys.readouterr()
    assert main(["ls", str(image)]) == 0
    assert capsys.readouterr().out == ""


def test_info(image, capsys):
    capsys.readouterr()
    assert main(["info", str(image)]) == 0
    out = capsys.readouterr().out
    assert "cli" in out
    assert "238" in out  # user blocks
    assert "224" in out  # directory slots


def test_check(image, capsys):
    assert main(["check", str(image)]) == 0
    assert "No problems found" in capsys.readouterr().out


def test_check_problems(image, capsys):
    """Test that ``check`` fails on an image with a lost block."""
    with ImageStore.open(image) as store:
        with FileSystem.mount(store) as fs:
            fs.fat.allocate_block()
            fs.close()  # persists the allocation

    assert main(["check", str(image)]) == 1
    assert "not part of a file" in capsys.readouterr().out


def test_errors(image, tempdir, capsys):
    """Test that file system errors result in exit code 1."""
    capsys.readouterr()
    assert main(["cat", str(image), "missing"]) == 1
    assert "error" in capsys.readouterr().err

    garbage = tempdir / "garbage.img"
    garbage.write_bytes(bytes(256 * BLOCK_SIZE))
    assert main(["ls", str(garbage)]) == 1


def test_usage_error():
    with pytest.raises(SystemExit) as exc_info:
        main(["frobnicate"])
    assert exc_info.value.code == 2
