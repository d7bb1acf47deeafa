"""Fixtures used across the test suite."""

import os
from pathlib import Path
from shutil import rmtree
from tempfile import mkdtemp, mkstemp

import pytest

from memefs.filesystem import FileSystem
from memefs.store import MemoryStore
from memefs.superblock import BLOCK_COUNT_DEFAULT


@pytest.fixture
def tempdir():
    """Fixture providing a new temporary directory for testing purposes.

    Returns a ``pathlib.Path`` object representing the path of the temporary directory.
    """
    path = Path(mkdtemp())
    yield path
    rmtree(path)  # clean up


@pytest.fixture
def tempfile():
    """Fixture providing a new temporary file for testing purposes.

    Returns a ``pathlib.Path`` object representing the path of the temporary file.
    """
    fd, path_str = mkstemp()
    os.close(fd)  # we are going to use a Path object instead
    path = Path(path_str)
    yield path
    path.unlink(missing_ok=True)  # clean up


@pytest.fixture
def store():
    """Fixture providing an empty, writable in-memory block store of the default
    volume size.
    """
    return MemoryStore(BLOCK_COUNT_DEFAULT)


@pytest.fixture
def fs(store):
    """Fixture providing a freshly formatted file system on ``store``."""
    fs = FileSystem.format(store, label="test")
    yield fs
    fs.close()
