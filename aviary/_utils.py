import asyncio
import logging
import shutil
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Union

logger = logging.getLogger("aviary")


def utc_now() -> datetime:
    """Naive UTC timestamp, the form DateTime columns come back from the store in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def json_default(value: Any) -> Any:
    """`default=` hook for json.dump covering the column types we export."""
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def remove_tree(path: Union[str, Path]) -> bool:
    """Remove a directory tree, logging instead of raising on failure.

    Returns:
        True if the directory is gone afterwards
    """
    path = Path(path)
    if not path.exists():
        return True
    try:
        shutil.rmtree(path)
        return True
    except OSError as e:
        logger.warning(f"Failed to remove directory {path}: {e}")
        return False


@asynccontextmanager
async def scoped_directory(path: Union[str, Path]) -> AsyncIterator[Path]:
    """Create `path` and remove it on every exit path.

    Removal runs in a worker thread. A failed removal is logged, never raised
    over the body's own exception.
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    try:
        yield path
    finally:
        await asyncio.to_thread(remove_tree, path)


def parse_uuid(value: Any) -> Union[uuid.UUID, None]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None
