"""Tests for BackupManager: uploads, analysis, restore and backup queueing."""

import asyncio
import io
import uuid
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from aviary._utils import utc_now
from aviary.backup import ImportOptions
from aviary.backup.manager import (
    BackupManager,
    InvalidUploadError,
    JobNotFoundError,
    UploadNotFoundError,
)
from aviary.database import RestoreExtractionJob, RestoreUpload, User
from aviary.jobs import JobScheduler
from tests.utils import build_archive, create_test_config, metadata_dict, user_row

ADMIN_ID = uuid.uuid4()


async def wait_until(check, timeout: float = 5.0, interval: float = 0.02):
    """Await `check()` until it returns a truthy value or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = await check()
        if result:
            return result
        if loop.time() >= deadline:
            pytest.fail("condition not reached before timeout")
        await asyncio.sleep(interval)


@pytest_asyncio.fixture
async def manager(db, fs_storage, data_dir):
    scheduler = JobScheduler()
    backup_manager = BackupManager(db, fs_storage, scheduler, create_test_config(data_dir))
    yield backup_manager
    await scheduler.stop()


def new_format_archive(path: Path, *usernames: str) -> bytes:
    rows = [user_row(name) for name in usernames or ("alice",)]
    build_archive(path, {"database/users.json": rows}, metadata_dict(total_users=len(rows)))
    return path.read_bytes()


def legacy_archive(path: Path, *usernames: str) -> bytes:
    rows = [user_row(name) for name in usernames or ("alice",)]
    build_archive(
        path,
        {"database/users.json": rows},
        metadata_dict(total_users=0, total_api_keys=0),
        metadata_first=False,
    )
    return path.read_bytes()


async def usernames(db):
    async with db.session() as session:
        return sorted((await session.execute(select(User.username))).scalars().all())


class TestStaging:
    """Saving and listing uploads."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("filename", ["backup.zip", "backup.tar", "../backup.tar.gz", ""])
    async def test_rejects_bad_filenames(self, manager, filename):
        with pytest.raises(InvalidUploadError):
            await manager.stage_upload(ADMIN_ID, filename, io.BytesIO(b"data"))
        uploads_dir = manager.config.uploads_dir
        assert not uploads_dir.exists() or list(uploads_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_stage_and_list(self, manager, tmp_path):
        payload = new_format_archive(tmp_path / "a.tar.gz")

        upload = await manager.stage_upload(ADMIN_ID, "nightly.tar.gz", io.BytesIO(payload))

        assert upload.status == "uploaded"
        assert upload.file_size == len(payload)
        assert Path(upload.file_path).name == f"restore_{upload.id}_nightly.tar.gz"
        assert Path(upload.file_path).parent == manager.config.uploads_dir.resolve()
        assert Path(upload.file_path).read_bytes() == payload
        assert upload.expires_at > utc_now() + timedelta(hours=23)

        listed = await manager.list_uploads(ADMIN_ID)
        assert [item.id for item in listed] == [upload.id]
        assert await manager.list_uploads(uuid.uuid4()) == []

    @pytest.mark.asyncio
    async def test_expired_uploads_hidden_and_cleaned(self, db, manager, tmp_path):
        upload = await manager.stage_upload(ADMIN_ID, "old.tgz", io.BytesIO(new_format_archive(tmp_path / "a.tar.gz")))
        async with db.transaction() as session:
            await session.execute(
                update(RestoreUpload)
                .where(RestoreUpload.id == upload.id)
                .values(expires_at=utc_now() - timedelta(minutes=1))
            )

        assert await manager.list_uploads(ADMIN_ID) == []
        assert await manager.cleanup_expired_uploads() == 1
        assert not Path(upload.file_path).exists()

    @pytest.mark.asyncio
    async def test_delete_upload_removes_everything(self, manager, tmp_path):
        payload = legacy_archive(tmp_path / "legacy.tar.gz")
        upload = await manager.stage_upload(ADMIN_ID, "legacy.tar.gz", io.BytesIO(payload))
        _, job = await manager.analyze_upload(upload.id, ADMIN_ID)

        await manager.delete_upload(upload.id, ADMIN_ID)

        assert not Path(upload.file_path).exists()
        assert not Path(job.extracted_path).exists()
        assert await manager.extraction_jobs.get_job_by_upload(upload.id) is None
        with pytest.raises(UploadNotFoundError):
            await manager.delete_upload(upload.id, ADMIN_ID)


class TestAnalysis:
    """Analysis queues or adopts an extraction."""

    @pytest.mark.asyncio
    async def test_fast_analysis_queues_extraction(self, manager, tmp_path):
        upload = await manager.stage_upload(ADMIN_ID, "b.tar.gz", io.BytesIO(new_format_archive(tmp_path / "a.tar.gz")))

        analysis, job = await manager.analyze_upload(upload.id, ADMIN_ID)

        assert analysis.valid
        assert analysis.extraction_path is None
        assert job.status == "pending"
        assert job.status_message == "Queued for extraction"

        async def completed():
            current = await manager.get_extraction_job(job.id, ADMIN_ID)
            return current if current.status == "completed" else None

        finished = await wait_until(completed)
        assert finished.progress == 100
        assert (Path(finished.extracted_path) / "database" / "users.json").exists()

    @pytest.mark.asyncio
    async def test_legacy_analysis_adopts_extraction(self, manager, tmp_path):
        upload = await manager.stage_upload(ADMIN_ID, "b.tar.gz", io.BytesIO(legacy_archive(tmp_path / "a.tar.gz")))

        analysis, job = await manager.analyze_upload(upload.id, ADMIN_ID)

        assert analysis.valid
        assert analysis.extraction_path is None
        assert job.status == "completed"
        assert job.status_message == "Extraction completed (reused from analysis)"
        assert Path(job.extracted_path) == manager.extraction_jobs.job_dir(job.id)
        assert Path(job.extracted_path).is_dir()
        remaining = [p.name for p in manager.config.extractions_dir.iterdir()]
        assert remaining == [str(job.id)]

    @pytest.mark.asyncio
    async def test_analyze_twice_reuses_job(self, manager, tmp_path):
        upload = await manager.stage_upload(ADMIN_ID, "b.tar.gz", io.BytesIO(legacy_archive(tmp_path / "a.tar.gz")))

        _, first = await manager.analyze_upload(upload.id, ADMIN_ID)
        _, second = await manager.analyze_upload(upload.id, ADMIN_ID)

        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_invalid_archive_creates_no_job(self, manager, tmp_path):
        archive = build_archive(tmp_path / "nometa.tar.gz", {"database/users.json": []})
        upload = await manager.stage_upload(ADMIN_ID, "b.tar.gz", io.BytesIO(archive.read_bytes()))

        analysis, job = await manager.analyze_upload(upload.id, ADMIN_ID)

        assert not analysis.valid
        assert job is None
        assert await manager.extraction_jobs.get_job_by_upload(upload.id) is None

    @pytest.mark.asyncio
    async def test_missing_file_drops_record(self, manager, tmp_path):
        upload = await manager.stage_upload(ADMIN_ID, "b.tar.gz", io.BytesIO(new_format_archive(tmp_path / "a.tar.gz")))
        Path(upload.file_path).unlink()

        with pytest.raises(UploadNotFoundError):
            await manager.analyze_upload(upload.id, ADMIN_ID)
        assert await manager.list_uploads(ADMIN_ID) == []

    @pytest.mark.asyncio
    async def test_other_admin_cannot_see_upload(self, manager, tmp_path):
        upload = await manager.stage_upload(ADMIN_ID, "b.tar.gz", io.BytesIO(new_format_archive(tmp_path / "a.tar.gz")))

        with pytest.raises(UploadNotFoundError):
            await manager.analyze_upload(upload.id, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_unknown_extraction_job(self, manager):
        with pytest.raises(JobNotFoundError):
            await manager.get_extraction_job(uuid.uuid4(), ADMIN_ID)


class TestRestore:
    """Restoring staged uploads."""

    @pytest.mark.asyncio
    async def test_restore_from_adopted_extraction(self, db, manager, tmp_path):
        payload = legacy_archive(tmp_path / "a.tar.gz", "alice", "bob")
        upload = await manager.stage_upload(ADMIN_ID, "b.tar.gz", io.BytesIO(payload))
        _, job = await manager.analyze_upload(upload.id, ADMIN_ID)

        metadata = await manager.restore_database(upload.id, ADMIN_ID, ImportOptions())

        assert metadata.aviary_version == "1.4.0"
        assert await usernames(db) == ["alice", "bob"]
        assert not Path(upload.file_path).exists()
        assert not Path(job.extracted_path).exists()
        assert await manager.extraction_jobs.get_job_by_upload(upload.id) is None

    @pytest.mark.asyncio
    async def test_restore_waits_for_queued_extraction(self, db, manager, tmp_path):
        upload = await manager.stage_upload(ADMIN_ID, "b.tar.gz", io.BytesIO(new_format_archive(tmp_path / "a.tar.gz", "carol")))
        await manager.analyze_upload(upload.id, ADMIN_ID)

        await manager.restore_database(upload.id, ADMIN_ID, ImportOptions())

        assert await usernames(db) == ["carol"]
        assert list(manager.config.extractions_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_stuck_extraction_falls_back_to_archive(self, db, manager, tmp_path):
        upload = await manager.stage_upload(ADMIN_ID, "b.tar.gz", io.BytesIO(new_format_archive(tmp_path / "a.tar.gz", "dave")))
        job = await manager.extraction_jobs.create_job(ADMIN_ID, upload.id)
        await manager.extraction_jobs.update_job(job.id, status="extracting", status_message="Extracting archive...")

        await manager.restore_database(upload.id, ADMIN_ID, ImportOptions())

        assert await usernames(db) == ["dave"]
        async with db.session() as session:
            assert await session.get(RestoreExtractionJob, job.id) is None

    @pytest.mark.asyncio
    async def test_upload_is_consumed(self, manager, tmp_path):
        upload = await manager.stage_upload(ADMIN_ID, "b.tar.gz", io.BytesIO(new_format_archive(tmp_path / "a.tar.gz")))

        await manager.restore_database(upload.id, ADMIN_ID, ImportOptions())

        with pytest.raises(UploadNotFoundError):
            await manager.restore_database(upload.id, ADMIN_ID, ImportOptions())

    @pytest.mark.asyncio
    async def test_unknown_upload(self, manager):
        with pytest.raises(UploadNotFoundError):
            await manager.restore_database(uuid.uuid4(), ADMIN_ID, ImportOptions())


class TestBackups:
    """Queueing server-side backups."""

    @pytest.mark.asyncio
    async def test_backup_job_runs_to_completion(self, db, manager, fs_storage):
        async with db.transaction() as session:
            session.add(User(username="erin", email="erin@example.com", password="$2a$10$erin"))

        job = await manager.create_backup_job(ADMIN_ID, include_files=False)
        assert job.status == "pending"

        async def completed():
            current = await manager.get_backup_job(job.id, ADMIN_ID)
            return current if current.status == "completed" else None

        finished = await wait_until(completed)
        assert finished.file_path == f"backups/{finished.filename}"
        assert finished.expires_at is not None
        info = await fs_storage.get_info(finished.file_path)
        assert info.size == finished.file_size

    @pytest.mark.asyncio
    async def test_unknown_backup_job(self, manager):
        with pytest.raises(JobNotFoundError):
            await manager.get_backup_job(uuid.uuid4(), ADMIN_ID)

    @pytest.mark.asyncio
    async def test_workers_registered_once(self, db, fs_storage, data_dir, manager):
        scheduler = manager.scheduler
        workers = dict(scheduler.workers)

        BackupManager(db, fs_storage, scheduler, manager.config)

        assert scheduler.workers == workers
        assert set(workers) == {"backup", "extraction", "cleanup"}
