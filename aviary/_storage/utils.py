"""Convenience operations composed from the storage interface."""

import asyncio
import shutil
from pathlib import Path
from typing import Union

from .._utils import logger
from .base import BaseStorageBackend


async def cleanup_storage_by_prefix(storage: BaseStorageBackend, prefix: str) -> int:
    """Delete every key under `prefix`, best effort.

    Returns:
        Number of keys successfully deleted
    """
    keys = await storage.list(prefix)
    deleted = 0
    for key in keys:
        try:
            await storage.delete(key)
            deleted += 1
        except Exception as e:
            logger.warning(f"Failed to delete storage file {key}: {e}")

    if keys:
        logger.info(f"Cleaned up {deleted}/{len(keys)} files with prefix {prefix}")
    return deleted


async def copy_file_to_storage(storage: BaseStorageBackend, source_path: Union[str, Path], key: str) -> int:
    """Upload a local file to `key`.

    Returns:
        Size of the uploaded file in bytes
    """
    source_path = Path(source_path)
    with open(source_path, "rb") as reader:
        await storage.put(key, reader)
    return source_path.stat().st_size


async def copy_file_from_storage(storage: BaseStorageBackend, key: str, dest_path: Union[str, Path]) -> None:
    """Download `key` to a local file, creating parent directories."""
    dest_path = Path(dest_path)
    reader = await storage.get(key)
    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        def _write():
            with open(dest_path, "wb") as out:
                shutil.copyfileobj(reader, out)

        await asyncio.to_thread(_write)
    finally:
        reader.close()
