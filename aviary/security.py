"""Path and storage-key validation."""

from pathlib import Path
from typing import Union


class PathValidationError(ValueError):
    """Raised when a path or storage key could escape its namespace."""
    pass


def validate_storage_key(key: str, allow_prefix: bool = False) -> None:
    """Validate a `/`-delimited storage key.

    Args:
        key: Storage key such as ``users/<id>/pdfs/file.pdf``
        allow_prefix: Accept a single trailing ``/`` (list prefixes)

    Raises:
        PathValidationError: If the key is empty, absolute, contains a NUL
            byte or backslash, or has an empty, ``.`` or ``..`` segment
    """
    if not key:
        raise PathValidationError("storage key cannot be empty")
    if "\x00" in key:
        raise PathValidationError(f"storage key contains NUL byte: {key!r}")
    if "\\" in key:
        raise PathValidationError(f"storage key contains backslash: {key!r}")
    if key.startswith("/"):
        raise PathValidationError(f"absolute storage keys are not allowed: {key!r}")

    parts = key.split("/")
    if allow_prefix and len(parts) > 1 and parts[-1] == "":
        parts = parts[:-1]
    for part in parts:
        if part in ("", ".", ".."):
            raise PathValidationError(f"storage key contains invalid segment: {key!r}")


def validate_file_path(path: Union[str, Path], base_dir: Union[str, Path]) -> Path:
    """Resolve `path` relative to `base_dir` and ensure it stays inside it.

    Returns:
        The resolved absolute path
    """
    if str(path) == "":
        raise PathValidationError("path cannot be empty")
    if "\x00" in str(path):
        raise PathValidationError(f"path contains NUL byte: {str(path)!r}")

    base = Path(base_dir).resolve()
    full = (base / path).resolve()
    if full != base and base not in full.parents:
        raise PathValidationError(f"path is outside allowed base directory: {path}")
    return full


def validate_filename(filename: str) -> str:
    """Validate a bare filename supplied by a client.

    Returns:
        The filename with surrounding whitespace removed
    """
    filename = (filename or "").strip()
    if not filename:
        raise PathValidationError("filename cannot be empty")
    if "/" in filename or "\\" in filename:
        raise PathValidationError("filename cannot contain path separators")
    if "\x00" in filename:
        raise PathValidationError("filename contains NUL byte")
    if filename in (".", ".."):
        raise PathValidationError(f"invalid filename: {filename!r}")
    return filename
