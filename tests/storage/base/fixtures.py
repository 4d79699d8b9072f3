"""Shared fixtures for storage backend testing."""

import pytest

from aviary._storage.fs import FilesystemStorage


@pytest.fixture
def temp_storage_dir(tmp_path):
    """Provide temporary directory for storage tests."""
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir()
    return storage_dir


@pytest.fixture
def fs_storage(temp_storage_dir):
    """Filesystem backend rooted in a temporary directory."""
    return FilesystemStorage(temp_storage_dir)
