"""Storage module with lazy loading support."""

from typing import TYPE_CHECKING

# Always import factory and the interface (lightweight)
from .base import BaseStorageBackend, StorageError, StorageInfo, StorageKeyNotFoundError
from .factory import StorageFactory, validate_storage_config

# Type checking imports (no runtime cost)
if TYPE_CHECKING:
    from .fs import FilesystemStorage
    from .s3 import S3Storage


def __getattr__(name):
    """Lazy import backends so aioboto3 loads only when S3 is used."""
    if name == "FilesystemStorage":
        from .fs import FilesystemStorage
        return FilesystemStorage
    elif name == "S3Storage":
        from .s3 import S3Storage
        return S3Storage
    else:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    "BaseStorageBackend",
    "StorageError",
    "StorageInfo",
    "StorageKeyNotFoundError",
    "StorageFactory",
    "validate_storage_config",
    "FilesystemStorage",
    "S3Storage",
]
