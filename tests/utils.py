"""Test utilities for aviary tests."""

import io
import json
import tarfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from aviary.config import AviaryConfig, DatabaseConfig, StorageConfig, WorkerConfig
from aviary.database import User


def create_test_config(data_dir: Union[str, Path], **worker_overrides) -> AviaryConfig:
    """AviaryConfig rooted at `data_dir` with fast worker timings."""
    data_dir = str(data_dir)
    workers = dict(
        backup_poll_interval=0.01,
        extraction_poll_interval=0.01,
        extraction_wait_timeout=0.5,
        extraction_wait_poll=0.01,
    )
    workers.update(worker_overrides)
    return AviaryConfig(
        storage=StorageConfig(data_dir=str(Path(data_dir) / "storage")),
        database=DatabaseConfig(data_dir=data_dir),
        workers=WorkerConfig(**workers),
        data_dir=data_dir,
    )


def make_user(username: str = "alice", **overrides) -> User:
    values = dict(
        id=uuid.uuid4(),
        username=username,
        email=f"{username}@example.com",
        password=f"$2a$10$hash-for-{username}",
        rmapi_config="",
    )
    values.update(overrides)
    return User(**values)


def user_row(username: str = "alice", **overrides) -> Dict[str, Any]:
    """A users.json row as an export would write it."""
    row = {
        "id": str(uuid.uuid4()),
        "username": username,
        "email": f"{username}@example.com",
        "password": f"$2a$10$hash-for-{username}",
        "is_admin": False,
        "is_active": True,
        "created_at": "2024-03-01T12:00:00Z",
        "updated_at": "2024-03-01T12:00:00Z",
    }
    row.update(overrides)
    return row


def metadata_dict(**overrides) -> Dict[str, Any]:
    data = {
        "aviary_version": "1.4.0",
        "git_commit": "abc1234",
        "export_timestamp": "2024-03-01T12:00:00Z",
        "database_type": "sqlite",
        "total_users": 1,
        "total_api_keys": 0,
        "total_documents": 0,
        "total_size_bytes": 0,
        "exported_tables": ["users"],
        "users_exported": [],
    }
    data.update(overrides)
    return data


def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    tar.addfile(info, io.BytesIO(data))


def build_archive(
    path: Union[str, Path],
    entries: Dict[str, Any],
    metadata: Optional[Dict[str, Any]] = None,
    metadata_first: bool = True,
) -> Path:
    """Write a .tar.gz from `entries` (name -> bytes, str or JSON-able value).

    `metadata`, when given, is written as metadata.json, first by default.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    ordered: List = list(entries.items())
    if metadata is not None:
        item = ("metadata.json", metadata)
        if metadata_first:
            ordered.insert(0, item)
        else:
            ordered.append(item)

    with tarfile.open(path, "w:gz") as tar:
        for name, value in ordered:
            if isinstance(value, bytes):
                data = value
            elif isinstance(value, str):
                data = value.encode("utf-8")
            else:
                data = json.dumps(value).encode("utf-8")
            _add_bytes(tar, name, data)
    return path


def archive_names(path: Union[str, Path]) -> List[str]:
    with tarfile.open(path, "r:gz") as tar:
        return tar.getnames()
