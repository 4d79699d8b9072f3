"""Global pytest configuration and fixtures."""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
import pytest_asyncio

from aviary.database import Database
from tests.storage.base.fixtures import temp_storage_dir, fs_storage

__all__ = ["temp_storage_dir", "fs_storage"]


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh SQLite database with the full schema."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return path
