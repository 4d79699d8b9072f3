"""Tests for path and storage key validation."""

import pytest

from aviary.security import (
    PathValidationError,
    validate_file_path,
    validate_filename,
    validate_storage_key,
)


@pytest.mark.parametrize("key", [
    "users/u1/pdfs/a.pdf",
    "backups/aviary_backup_20240301_120000.tar.gz",
    "users/u1/pdfs/My Books/report (1).pdf",
])
def test_valid_storage_keys(key):
    validate_storage_key(key)


@pytest.mark.parametrize("key", [
    "",
    "../evil",
    "/etc/passwd",
    "a/../../b",
    "users/u1/./a.pdf",
    "users//a.pdf",
    "users/u1/a\x00.pdf",
    "users\\u1\\a.pdf",
    "users/u1/",
])
def test_invalid_storage_keys(key):
    with pytest.raises(PathValidationError):
        validate_storage_key(key)


def test_prefix_allows_trailing_slash():
    validate_storage_key("users/u1/", allow_prefix=True)
    with pytest.raises(PathValidationError):
        validate_storage_key("users/../", allow_prefix=True)


def test_validation_errors_are_value_errors():
    assert issubclass(PathValidationError, ValueError)


def test_validate_file_path(tmp_path):
    assert validate_file_path("sub/file.txt", tmp_path) == (tmp_path / "sub" / "file.txt").resolve()
    assert validate_file_path(".", tmp_path) == tmp_path.resolve()
    for bad in ("../outside", "/etc/passwd", "sub/../../x", ""):
        with pytest.raises(PathValidationError):
            validate_file_path(bad, tmp_path)


def test_validate_filename():
    assert validate_filename("  backup.tar.gz ") == "backup.tar.gz"
    for bad in ("", "   ", "../backup.tar.gz", "a/b.tgz", "a\\b.tgz", "..", "x\x00.tgz"):
        with pytest.raises(PathValidationError):
            validate_filename(bad)
