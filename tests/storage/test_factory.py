"""Tests for the storage factory pattern."""

import pytest
from unittest.mock import Mock, patch

from aviary._storage import BaseStorageBackend
from aviary._storage.factory import StorageFactory, _register_backends, validate_storage_config
from aviary._storage.fs import FilesystemStorage
from aviary.config import StorageConfig


class TestStorageFactory:
    """Test suite for StorageFactory."""

    def setup_method(self):
        """Reset factory state before each test."""
        StorageFactory._backends = {}

    def teardown_method(self):
        StorageFactory._backends = {}

    def test_register_backend(self):
        loader = Mock(return_value=Mock(spec=BaseStorageBackend))
        StorageFactory.register_backend("filesystem", loader)
        assert StorageFactory._backends["filesystem"] is loader

    def test_register_backend_not_allowed(self):
        with pytest.raises(ValueError, match="Backend gcs not in allowed storage backends"):
            StorageFactory.register_backend("gcs", Mock())

    def test_register_backends_is_lazy(self):
        _register_backends()
        assert set(StorageFactory._backends) == {"filesystem", "s3"}
        # Loaders are callables, nothing imported until create()
        assert all(callable(loader) for loader in StorageFactory._backends.values())

    def test_create_filesystem(self, tmp_path):
        storage = StorageFactory.create(StorageConfig(backend="filesystem", data_dir=str(tmp_path)))
        assert isinstance(storage, FilesystemStorage)
        assert storage.base_path == tmp_path.resolve()

    def test_create_s3_uses_from_config(self):
        config = StorageConfig(backend="s3", s3_bucket="bucket", s3_region="us-east-1")
        fake_class = Mock()
        StorageFactory._backends = {"s3": lambda: fake_class, "filesystem": lambda: FilesystemStorage}

        StorageFactory.create(config)

        fake_class.from_config.assert_called_once_with(config)


class TestValidateStorageConfig:

    def test_filesystem_needs_nothing(self):
        validate_storage_config(StorageConfig(backend="filesystem"))

    def test_s3_requires_bucket(self):
        with pytest.raises(ValueError, match="S3_BUCKET"):
            validate_storage_config(StorageConfig(backend="s3", s3_region="us-east-1"))

    def test_s3_requires_region(self):
        with pytest.raises(ValueError, match="S3_REGION"):
            validate_storage_config(StorageConfig(backend="s3", s3_bucket="bucket"))


def test_lazy_module_attributes():
    import aviary._storage as storage_module

    assert storage_module.FilesystemStorage is FilesystemStorage
    with pytest.raises(AttributeError):
        storage_module.NotABackend
