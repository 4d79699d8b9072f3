"""Abstract object storage interface shared by all backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, List, Optional


class StorageError(Exception):
    """Base exception for storage backend failures."""
    pass


class StorageKeyNotFoundError(StorageError, KeyError):
    """Raised by `get`/`get_info` when no object exists at the key."""

    def __init__(self, key: str):
        super().__init__(f"key not found: {key}")
        self.key = key

    def __str__(self) -> str:
        return self.args[0]


@dataclass
class StorageInfo:
    """Metadata about one stored object."""
    key: str
    size: int
    last_modified: Optional[datetime] = None


class BaseStorageBackend(ABC):
    """Flat key/value object store with `/`-delimited keys.

    All methods are coroutines; blocking I/O must not run on the event loop.
    """

    name: str = "base"

    @abstractmethod
    async def put(self, key: str, reader: BinaryIO) -> None:
        """Stream `reader` to `key`, overwriting any existing object."""
        ...

    @abstractmethod
    async def get(self, key: str) -> BinaryIO:
        """Open the object at `key` for reading.

        Raises:
            StorageKeyNotFoundError: If the key does not exist
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete the object at `key`. Deleting a missing key is not an error."""
        ...

    @abstractmethod
    async def list(self, prefix: str) -> List[str]:
        """Return every key starting with `prefix`."""
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def copy(self, src_key: str, dst_key: str) -> None:
        ...

    @abstractmethod
    async def list_with_info(self, prefix: str) -> List[StorageInfo]:
        ...

    @abstractmethod
    async def get_info(self, key: str) -> StorageInfo:
        ...

    async def close(self) -> None:
        """Release backend resources."""
        pass
