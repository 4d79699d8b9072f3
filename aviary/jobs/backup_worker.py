"""Server-side backup jobs: persistence and the worker that runs them."""

import uuid
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Sequence, Union

from sqlalchemy import delete, select, update

from .._storage import BaseStorageBackend, StorageKeyNotFoundError
from .._storage.keys import backup_key
from .._storage.utils import copy_file_to_storage
from .._utils import logger, parse_uuid, utc_now
from ..backup.exporter import BackupExporter
from ..backup.models import ExportOptions
from ..backup.utils import generate_backup_filename
from ..database import BackupJob, Database
from .scheduler import PollingWorker

BACKUP_WORKER = "backup"


def _join_user_ids(user_ids: Optional[Sequence[uuid.UUID]]) -> str:
    return ",".join(str(user_id) for user_id in user_ids or [])


def _split_user_ids(value: str) -> List[uuid.UUID]:
    user_ids = []
    for part in (value or "").split(","):
        user_id = parse_uuid(part.strip()) if part.strip() else None
        if user_id is not None:
            user_ids.append(user_id)
    return user_ids


class BackupJobStore:
    """CRUD for BackupJob rows and their archive in the storage backend."""

    def __init__(self, db: Database, storage: BaseStorageBackend):
        self.db = db
        self.storage = storage

    async def create_job(
        self,
        admin_user_id: uuid.UUID,
        include_files: bool = True,
        include_configs: bool = True,
        user_ids: Optional[Sequence[uuid.UUID]] = None,
    ) -> BackupJob:
        job = BackupJob(
            admin_user_id=admin_user_id,
            status="pending",
            progress=0,
            include_files=include_files,
            include_configs=include_configs,
            user_ids=_join_user_ids(user_ids),
        )
        async with self.db.transaction() as session:
            session.add(job)
        logger.info(f"[BACKUP] Created backup job {job.id}")
        return job

    async def list_jobs(self, admin_user_id: uuid.UUID, limit: int = 10) -> List[BackupJob]:
        query = (
            select(BackupJob)
            .where(BackupJob.admin_user_id == admin_user_id)
            .order_by(BackupJob.created_at.desc())
            .limit(limit)
        )
        async with self.db.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_job(self, job_id: uuid.UUID, admin_user_id: uuid.UUID) -> Optional[BackupJob]:
        query = select(BackupJob).where(BackupJob.id == job_id, BackupJob.admin_user_id == admin_user_id)
        async with self.db.session() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def _delete_file(self, job: BackupJob) -> bool:
        if not job.file_path:
            return True
        try:
            await self.storage.delete(job.file_path)
            return True
        except Exception as e:
            logger.warning(f"[BACKUP] Failed to delete backup file {job.file_path}: {e}")
            return False

    async def delete_job(self, job_id: uuid.UUID, admin_user_id: uuid.UUID) -> bool:
        """Delete the archive, then the row.

        Returns:
            False if no such job exists for this admin
        """
        job = await self.get_job(job_id, admin_user_id)
        if job is None:
            return False
        await self._delete_file(job)
        async with self.db.transaction() as session:
            await session.execute(delete(BackupJob).where(BackupJob.id == job.id))
        return True

    async def cleanup_expired(self) -> int:
        """Remove completed jobs past their expiry, file first.

        A row whose file could not be deleted is kept for the next sweep.
        """
        query = select(BackupJob).where(BackupJob.status == "completed", BackupJob.expires_at < utc_now())
        async with self.db.session() as session:
            result = await session.execute(query)
            expired = list(result.scalars().all())

        removed = 0
        for job in expired:
            if not await self._delete_file(job):
                continue
            async with self.db.transaction() as session:
                await session.execute(delete(BackupJob).where(BackupJob.id == job.id))
            removed += 1

        if removed:
            logger.info(f"[CLEANUP] Removed {removed} expired backup jobs")
        return removed

    async def claim_job(self, job_id: uuid.UUID) -> bool:
        """Move a job from pending to running. False if someone else got it first."""
        async with self.db.transaction() as session:
            result = await session.execute(
                update(BackupJob)
                .where(BackupJob.id == job_id, BackupJob.status == "pending")
                .values(status="running", started_at=utc_now(), progress=0)
            )
            return result.rowcount == 1

    async def update_job(self, job_id: uuid.UUID, **values) -> bool:
        """Returns False when the row no longer exists."""
        async with self.db.transaction() as session:
            result = await session.execute(update(BackupJob).where(BackupJob.id == job_id).values(**values))
            return result.rowcount == 1

    async def pending_job_ids(self) -> List[uuid.UUID]:
        query = select(BackupJob.id).where(BackupJob.status == "pending").order_by(BackupJob.created_at)
        async with self.db.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def open_archive(self, job: BackupJob):
        """Reader for a completed job's archive.

        Raises:
            StorageKeyNotFoundError: If the archive is gone from storage
        """
        if not job.file_path:
            raise StorageKeyNotFoundError(job.filename or str(job.id))
        return await self.storage.get(job.file_path)


class BackupWorker(PollingWorker):
    """Runs pending backup jobs one at a time, oldest first.

    Each claimed job ends either `completed` or `failed`; a failed job is
    never retried.
    """

    name = BACKUP_WORKER

    def __init__(
        self,
        store: BackupJobStore,
        exporter: BackupExporter,
        staging_dir: Union[str, Path],
        interval: float = 5.0,
        idle_shutdown: Optional[int] = 6,
        retention_hours: int = 24,
        **kwargs,
    ):
        super().__init__(interval, idle_shutdown=idle_shutdown, **kwargs)
        self.store = store
        self.exporter = exporter
        self.staging_dir = Path(staging_dir)
        self.retention = timedelta(hours=retention_hours)

    async def poll(self) -> bool:
        job_ids = await self.store.pending_job_ids()
        if not job_ids:
            return False
        for job_id in job_ids:
            if not await self.store.claim_job(job_id):
                logger.debug(f"[BACKUP] Job {job_id} already claimed, skipping")
                continue
            await self.process_job(job_id)
        return True

    async def _load(self, job_id: uuid.UUID) -> BackupJob:
        async with self.store.db.session() as session:
            job = await session.get(BackupJob, job_id)
        if job is None:
            raise LookupError(f"backup job {job_id} disappeared")
        return job

    async def process_job(self, job_id: uuid.UUID) -> None:
        """Run an already-claimed job to a terminal state."""
        logger.info(f"[BACKUP] Processing backup job {job_id}")
        archive_path = None
        try:
            job = await self._load(job_id)
            filename = generate_backup_filename()
            self.staging_dir.mkdir(parents=True, exist_ok=True)
            archive_path = self.staging_dir / f"{job_id}-{filename}"

            options = ExportOptions(
                include_database=True,
                include_files=job.include_files,
                include_configs=job.include_configs,
                user_ids=_split_user_ids(job.user_ids),
            )

            await self.store.update_job(job_id, progress=50)
            await self.exporter.export(archive_path, options)

            key = backup_key(filename)
            size = await copy_file_to_storage(self.store.storage, archive_path, key)
        except Exception as e:
            await self.fail_job(job_id, f"Export failed: {e}")
            return
        finally:
            if archive_path is not None and archive_path.exists():
                archive_path.unlink()

        completed_at = utc_now()
        completed = await self.store.update_job(
            job_id,
            status="completed",
            progress=100,
            file_path=key,
            filename=filename,
            file_size=size,
            completed_at=completed_at,
            expires_at=completed_at + self.retention,
        )
        if not completed:
            logger.warning(f"[BACKUP] Backup job {job_id} was deleted while running, discarding {key}")
            try:
                await self.store.storage.delete(key)
            except Exception as e:
                logger.warning(f"[BACKUP] Failed to delete backup file {key}: {e}")
            return
        logger.info(f"[BACKUP] Backup job {job_id} completed: {filename} ({size:,} bytes)")

    async def fail_job(self, job_id: uuid.UUID, error_message: str) -> None:
        logger.error(f"[BACKUP] Backup job {job_id} failed: {error_message}")
        await self.store.update_job(
            job_id,
            status="failed",
            error_message=error_message,
            completed_at=utc_now(),
        )
