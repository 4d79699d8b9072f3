"""Base test suites for storage backends."""

from .storage_suite import BaseObjectStorageTestSuite, ObjectStorageContract
from .fixtures import temp_storage_dir, fs_storage

__all__ = [
    "BaseObjectStorageTestSuite",
    "ObjectStorageContract",
    "temp_storage_dir",
    "fs_storage",
]
