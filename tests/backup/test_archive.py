"""Tests for the backup archive codec and helpers."""

import io
import json
import stat
import tarfile
from datetime import datetime, timezone

import pytest

from aviary.backup.utils import (
    ArchiveFormatError,
    UnsafeArchiveEntryError,
    count_json_records,
    create_archive,
    extract_archive,
    extract_tar_gz,
    generate_backup_filename,
    is_archive_filename,
    read_first_entry_json,
    write_json,
)
from tests.utils import archive_names, build_archive, metadata_dict


@pytest.mark.asyncio
async def test_create_and_extract_archive(tmp_path):
    """Archive creation puts metadata.json first and extraction restores the tree."""
    source_dir = tmp_path / "source"
    (source_dir / "database").mkdir(parents=True)
    (source_dir / "filesystem" / "documents" / "u1").mkdir(parents=True)
    (source_dir / "database" / "users.json").write_text("[]")
    (source_dir / "filesystem" / "documents" / "u1" / "a.pdf").write_bytes(b"%PDF")
    write_json(source_dir / "metadata.json", metadata_dict())

    archive_path = tmp_path / "backup.tar.gz"
    size = await create_archive(source_dir, archive_path)
    assert size == archive_path.stat().st_size

    names = archive_names(archive_path)
    assert names[0] == "metadata.json"
    assert "database/users.json" in names

    extract_dir = tmp_path / "extracted"
    files = await extract_archive(archive_path, extract_dir)
    assert files == 3
    assert (extract_dir / "filesystem" / "documents" / "u1" / "a.pdf").read_bytes() == b"%PDF"
    assert json.loads((extract_dir / "metadata.json").read_text())["aviary_version"] == "1.4.0"


@pytest.mark.parametrize("name", ["../evil", "/etc/passwd", "a/../../b"])
def test_extract_rejects_traversal(tmp_path, name):
    archive_path = build_archive(tmp_path / "evil.tar.gz", {name: b"pwned"})
    dest = tmp_path / "out" / "dest"

    with pytest.raises(UnsafeArchiveEntryError) as exc_info:
        extract_tar_gz(archive_path, dest)

    assert exc_info.value.name == name
    assert not (tmp_path / "out" / "evil").exists()
    assert not (tmp_path / "out" / "b").exists()
    assert list(dest.rglob("*")) == []


def test_unsafe_entry_is_format_error():
    assert issubclass(UnsafeArchiveEntryError, ArchiveFormatError)
    assert issubclass(ArchiveFormatError, ValueError)


def test_extract_strips_dot_slash_and_skips_links(tmp_path):
    archive_path = tmp_path / "links.tar.gz"
    with tarfile.open(archive_path, "w:gz") as tar:
        data = b"hello"
        info = tarfile.TarInfo("./database/users.json")
        info.size = len(data)
        info.mode = 0o600
        tar.addfile(info, io.BytesIO(data))

        link = tarfile.TarInfo("database/link")
        link.type = tarfile.SYMTYPE
        link.linkname = "/etc/passwd"
        tar.addfile(link)

    dest = tmp_path / "dest"
    assert extract_tar_gz(archive_path, dest) == 1
    target = dest / "database" / "users.json"
    assert target.read_bytes() == b"hello"
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    assert not (dest / "database" / "link").exists()


def test_extract_reports_progress(tmp_path):
    archive_path = build_archive(tmp_path / "a.tar.gz", {"database/users.json": "[]"}, metadata_dict())
    updates = []

    extract_tar_gz(archive_path, tmp_path / "dest", lambda percent, message: updates.append((percent, message)))

    assert updates[-1] == (100, "Extraction completed")
    percents = [percent for percent, _ in updates]
    assert percents == sorted(percents)


def test_extract_corrupt_archive(tmp_path):
    archive_path = tmp_path / "broken.tar.gz"
    archive_path.write_bytes(b"definitely not gzip")
    with pytest.raises(ArchiveFormatError):
        extract_tar_gz(archive_path, tmp_path / "dest")


def test_read_first_entry_json(tmp_path):
    new_format = build_archive(tmp_path / "new.tar.gz", {"database/users.json": "[]"}, metadata_dict())
    assert read_first_entry_json(new_format)["git_commit"] == "abc1234"

    legacy = build_archive(
        tmp_path / "legacy.tar.gz",
        {"database/users.json": "[]"},
        metadata_dict(),
        metadata_first=False,
    )
    assert read_first_entry_json(legacy) is None


def test_read_first_entry_skips_appledouble(tmp_path):
    archive_path = build_archive(
        tmp_path / "mac.tar.gz",
        {"._metadata.json": b"\x00\x05\x16\x07", "metadata.json": metadata_dict()},
    )
    assert read_first_entry_json(archive_path)["aviary_version"] == "1.4.0"


def test_count_json_records(tmp_path):
    assert count_json_records(tmp_path / "missing.json") == 0

    write_json(tmp_path / "users.json", [{"id": 1}, {"id": 2}])
    assert count_json_records(tmp_path / "users.json") == 2

    write_json(tmp_path / "bad.json", {"id": 1})
    with pytest.raises(ArchiveFormatError):
        count_json_records(tmp_path / "bad.json")


def test_generate_backup_filename():
    now = datetime(2024, 3, 1, 12, 30, 5, tzinfo=timezone.utc)
    assert generate_backup_filename(now) == "aviary_backup_20240301_123005.tar.gz"


@pytest.mark.parametrize("filename,expected", [
    ("backup.tar.gz", True),
    ("backup.TGZ", True),
    ("backup.zip", False),
    ("backup.tar", False),
])
def test_is_archive_filename(filename, expected):
    assert is_archive_filename(filename) is expected
