"""Tests for BackupAnalyzer."""

from pathlib import Path

import pytest

from aviary.backup import ArchiveFormatError, BackupAnalyzer, UnsafeArchiveEntryError
from tests.utils import build_archive, metadata_dict, user_row


@pytest.fixture
def extractions_dir(tmp_path):
    return tmp_path / "extractions"


@pytest.fixture
def analyzer(extractions_dir):
    return BackupAnalyzer(extractions_dir)


def _extraction_dirs(extractions_dir: Path):
    if not extractions_dir.exists():
        return []
    return list(extractions_dir.iterdir())


@pytest.mark.asyncio
async def test_fast_analysis_reads_metadata_only(tmp_path, analyzer, extractions_dir):
    archive = build_archive(
        tmp_path / "new.tar.gz",
        {"database/users.json": [user_row("alice"), user_row("bob")]},
        metadata_dict(total_users=2, total_api_keys=3, exported_tables=["users", "api_keys"]),
    )

    analysis = await analyzer.analyze_backup(archive)

    assert analysis.valid
    assert analysis.user_count == 2
    assert analysis.api_key_count == 3
    assert analysis.aviary_version == "1.4.0"
    assert analysis.export_timestamp == "2024-03-01 12:00:00 UTC"
    assert analysis.extraction_path is None
    assert _extraction_dirs(extractions_dir) == []


@pytest.mark.asyncio
async def test_legacy_archive_is_extracted_and_preserved(tmp_path, analyzer, extractions_dir):
    archive = build_archive(
        tmp_path / "legacy.tar.gz",
        {
            "database/users.json": [user_row("alice"), user_row("bob")],
            "database/api_keys.json": [],
        },
        metadata_dict(total_users=0, total_api_keys=0),
        metadata_first=False,
    )

    analysis = await analyzer.analyze_backup(archive)

    assert analysis.valid
    assert analysis.user_count == 2
    assert analysis.api_key_count == 0
    assert analysis.extraction_path is not None
    extraction_path = Path(analysis.extraction_path)
    assert extraction_path.parent == extractions_dir
    assert (extraction_path / "database" / "users.json").exists()


@pytest.mark.asyncio
async def test_zero_counts_fall_back_to_full_analysis(tmp_path, analyzer):
    archive = build_archive(
        tmp_path / "old.tar.gz",
        {"database/users.json": [user_row("alice")]},
        metadata_dict(total_users=0, total_api_keys=0, exported_tables=["users"]),
    )

    analysis = await analyzer.analyze_backup(archive)

    assert analysis.valid
    assert analysis.user_count == 1
    assert analysis.extraction_path is not None


@pytest.mark.asyncio
async def test_missing_metadata_is_invalid(tmp_path, analyzer, extractions_dir):
    archive = build_archive(tmp_path / "nometa.tar.gz", {"database/users.json": []})

    analysis = await analyzer.analyze_backup(archive)

    assert not analysis.valid
    assert analysis.errors
    assert analysis.extraction_path is None
    assert _extraction_dirs(extractions_dir) == []


@pytest.mark.asyncio
async def test_missing_database_dir_warns(tmp_path, analyzer):
    archive = build_archive(
        tmp_path / "filesonly.tar.gz",
        {"filesystem/documents/readme.txt": "hi"},
        metadata_dict(total_users=0, total_api_keys=0),
        metadata_first=False,
    )

    analysis = await analyzer.analyze_backup(archive)

    assert analysis.valid
    assert any("database" in warning for warning in analysis.warnings)


@pytest.mark.asyncio
async def test_corrupt_archive_raises(tmp_path, analyzer, extractions_dir):
    archive = tmp_path / "corrupt.tar.gz"
    archive.write_bytes(b"not a gzip stream at all")

    with pytest.raises(ArchiveFormatError):
        await analyzer.analyze_backup(archive)
    assert _extraction_dirs(extractions_dir) == []


@pytest.mark.asyncio
async def test_traversal_entry_raises(tmp_path, analyzer, extractions_dir):
    archive = build_archive(tmp_path / "evil.tar.gz", {"../../outside.txt": "x"})

    with pytest.raises(UnsafeArchiveEntryError):
        await analyzer.analyze_backup(archive)
    assert _extraction_dirs(extractions_dir) == []
    assert not (tmp_path / "outside.txt").exists()
