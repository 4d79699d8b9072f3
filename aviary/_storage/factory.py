"""Storage factory for centralized backend creation."""

from typing import Callable, Dict, Type

from .._utils import logger
from ..config import StorageConfig
from .base import BaseStorageBackend


def validate_storage_config(config: StorageConfig) -> None:
    """Check the settings the selected backend needs.

    Raises:
        ValueError: If the backend is unknown or S3 settings are missing
    """
    if config.backend == "filesystem":
        return
    if config.backend == "s3":
        if not config.s3_bucket:
            raise ValueError("S3_BUCKET is required for S3 backend")
        if not config.s3_region:
            raise ValueError("S3_REGION is required for S3 backend")
        return
    raise ValueError(f"unknown storage backend: {config.backend} (valid options: filesystem, s3)")


class StorageFactory:
    """Factory for creating storage backends with validation and registration."""

    _backends: Dict[str, Callable[[], Type[BaseStorageBackend]]] = {}

    ALLOWED_BACKENDS = {"filesystem", "s3"}

    @classmethod
    def register_backend(cls, name: str, backend_loader: Callable[[], Type[BaseStorageBackend]]) -> None:
        """Register a storage backend.

        Args:
            name: Backend name (must be in ALLOWED_BACKENDS)
            backend_loader: Function that returns the backend class

        Raises:
            ValueError: If backend name not in allowed list
        """
        if name not in cls.ALLOWED_BACKENDS:
            raise ValueError(f"Backend {name} not in allowed storage backends: {cls.ALLOWED_BACKENDS}")
        cls._backends[name] = backend_loader

    @classmethod
    def create(cls, config: StorageConfig) -> BaseStorageBackend:
        """Create the configured storage backend.

        Args:
            config: Storage configuration

        Returns:
            Storage backend instance
        """
        validate_storage_config(config)
        _register_backends()

        backend_class = cls._backends[config.backend]()
        if config.backend == "s3":
            backend = backend_class.from_config(config)
        else:
            backend = backend_class(config.storage_root)

        logger.info(f"Storage backend initialized: {config.backend}")
        return backend


def _get_filesystem_storage():
    from .fs import FilesystemStorage
    return FilesystemStorage


def _get_s3_storage():
    from .s3 import S3Storage
    return S3Storage


def _register_backends():
    """Register the built-in backends with lazy loaders."""
    if not StorageFactory._backends:
        StorageFactory.register_backend("filesystem", _get_filesystem_storage)
        StorageFactory.register_backend("s3", _get_s3_storage)
