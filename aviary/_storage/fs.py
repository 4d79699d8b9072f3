"""Local filesystem storage backend."""

import asyncio
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, List, Union

from .._utils import logger
from ..security import validate_storage_key
from .base import BaseStorageBackend, StorageInfo, StorageKeyNotFoundError

COPY_BUFFER_SIZE = 1024 * 1024


class FilesystemStorage(BaseStorageBackend):
    """Storage backend mapping keys onto files below a base directory."""

    name = "filesystem"

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _key_to_path(self, key: str, allow_prefix: bool = False) -> Path:
        validate_storage_key(key, allow_prefix=allow_prefix)
        return self.base_path.joinpath(*[p for p in key.split("/") if p])

    def _path_to_key(self, path: Path) -> str:
        return path.relative_to(self.base_path).as_posix()

    async def put(self, key: str, reader: BinaryIO) -> None:
        path = self._key_to_path(key)
        await asyncio.to_thread(self._put_sync, path, reader)
        logger.debug(f"Stored {key}")

    def _put_sync(self, path: Path, reader: BinaryIO) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write next to the target so the final rename stays on one filesystem
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as tmp:
                shutil.copyfileobj(reader, tmp, COPY_BUFFER_SIZE)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    async def get(self, key: str) -> BinaryIO:
        path = self._key_to_path(key)
        try:
            return await asyncio.to_thread(open, path, "rb")
        except (FileNotFoundError, IsADirectoryError):
            raise StorageKeyNotFoundError(key) from None

    async def delete(self, key: str) -> None:
        path = self._key_to_path(key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            pass

    async def list(self, prefix: str) -> List[str]:
        return [info.key for info in await self.list_with_info(prefix)]

    async def list_with_info(self, prefix: str) -> List[StorageInfo]:
        if prefix:
            validate_storage_key(prefix, allow_prefix=True)
        return await asyncio.to_thread(self._list_sync, prefix)

    def _list_sync(self, prefix: str) -> List[StorageInfo]:
        # Walk the deepest directory fully named by the prefix, then filter
        if prefix.endswith("/") or not prefix:
            walk_root = self.base_path.joinpath(*[p for p in prefix.split("/") if p])
        else:
            walk_root = self.base_path.joinpath(*prefix.split("/")[:-1])

        if not walk_root.is_dir():
            return []

        infos = []
        for dirpath, _dirnames, filenames in os.walk(walk_root):
            for filename in filenames:
                path = Path(dirpath) / filename
                key = self._path_to_key(path)
                if not key.startswith(prefix):
                    continue
                stat = path.stat()
                infos.append(StorageInfo(
                    key=key,
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                ))
        infos.sort(key=lambda info: info.key)
        return infos

    async def exists(self, key: str) -> bool:
        path = self._key_to_path(key)
        return await asyncio.to_thread(path.is_file)

    async def copy(self, src_key: str, dst_key: str) -> None:
        src = self._key_to_path(src_key)
        dst = self._key_to_path(dst_key)
        if not await asyncio.to_thread(src.is_file):
            raise StorageKeyNotFoundError(src_key)

        def _copy():
            with open(src, "rb") as reader:
                self._put_sync(dst, reader)

        await asyncio.to_thread(_copy)

    async def get_info(self, key: str) -> StorageInfo:
        path = self._key_to_path(key)
        try:
            stat = await asyncio.to_thread(path.stat)
        except FileNotFoundError:
            raise StorageKeyNotFoundError(key) from None
        if not path.is_file():
            raise StorageKeyNotFoundError(key)
        return StorageInfo(
            key=key,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )
