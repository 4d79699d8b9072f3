"""Background extraction of uploaded restore archives."""

import asyncio
import os
import uuid
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Union

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from .._utils import logger, remove_tree, utc_now
from ..backup.utils import extract_archive
from ..database import Database, RestoreExtractionJob, RestoreUpload
from .scheduler import PollingWorker

EXTRACTION_WORKER = "extraction"

# Extraction progress is reported in this band; 0-10 and 90-100 are setup and finish
PROGRESS_START = 10
PROGRESS_SPAN = 80
PROGRESS_SAVE_STEP = 5


def scale_progress(percent: int) -> int:
    return PROGRESS_START + percent * PROGRESS_SPAN // 100


class ExtractionJobStore:
    """CRUD for RestoreExtractionJob rows and their extraction directories."""

    def __init__(self, db: Database, extractions_dir: Union[str, Path], retention_hours: int = 24):
        self.db = db
        self.extractions_dir = Path(extractions_dir)
        self.retention = timedelta(hours=retention_hours)

    def job_dir(self, job_id: uuid.UUID) -> Path:
        return self.extractions_dir / str(job_id)

    async def get_job(self, job_id: uuid.UUID, admin_user_id: uuid.UUID) -> Optional[RestoreExtractionJob]:
        query = select(RestoreExtractionJob).where(
            RestoreExtractionJob.id == job_id,
            RestoreExtractionJob.admin_user_id == admin_user_id,
        )
        async with self.db.session() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def get_job_by_upload(
        self,
        upload_id: uuid.UUID,
        admin_user_id: Optional[uuid.UUID] = None,
    ) -> Optional[RestoreExtractionJob]:
        query = select(RestoreExtractionJob).where(RestoreExtractionJob.restore_upload_id == upload_id)
        if admin_user_id is not None:
            query = query.where(RestoreExtractionJob.admin_user_id == admin_user_id)
        async with self.db.session() as session:
            result = await session.execute(query.order_by(RestoreExtractionJob.created_at).limit(1))
            return result.scalar_one_or_none()

    async def create_job(self, admin_user_id: uuid.UUID, upload_id: uuid.UUID) -> RestoreExtractionJob:
        """Queue an extraction for `upload_id`, or return the one already queued."""
        existing = await self.get_job_by_upload(upload_id)
        if existing is not None:
            return existing

        job = RestoreExtractionJob(
            admin_user_id=admin_user_id,
            restore_upload_id=upload_id,
            status="pending",
            progress=0,
            status_message="Queued for extraction",
        )
        async with self.db.transaction() as session:
            session.add(job)
        logger.info(f"[EXTRACTION] Created extraction job {job.id} for upload {upload_id}")
        return job

    async def create_completed_job(
        self,
        admin_user_id: uuid.UUID,
        upload_id: uuid.UUID,
        extraction_path: Union[str, Path],
    ) -> RestoreExtractionJob:
        """Adopt a directory extracted during analysis as a finished job.

        The directory is moved under the job id, so the analysis directory no
        longer exists afterwards.
        """
        existing = await self.get_job_by_upload(upload_id)
        if existing is not None:
            return existing

        job = RestoreExtractionJob(
            admin_user_id=admin_user_id,
            restore_upload_id=upload_id,
            status="completed",
            progress=100,
            status_message="Extraction completed (reused from analysis)",
        )
        async with self.db.transaction() as session:
            session.add(job)

        final_dir = self.job_dir(job.id)
        try:
            final_dir.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(os.replace, extraction_path, final_dir)
        except OSError:
            await self._delete_row(job.id)
            raise

        now = utc_now()
        try:
            await self.update_job(job.id, extracted_path=str(final_dir), started_at=now, completed_at=now)
        except SQLAlchemyError:
            await asyncio.to_thread(remove_tree, final_dir)
            await self._delete_row(job.id)
            raise

        job.extracted_path = str(final_dir)
        job.started_at = now
        job.completed_at = now
        logger.info(f"[EXTRACTION] Reused analysis extraction for upload {upload_id} as job {job.id}")
        return job

    async def delete_job(self, job_id: uuid.UUID, admin_user_id: Optional[uuid.UUID] = None) -> bool:
        """Remove the extraction directory, then the row."""
        query = select(RestoreExtractionJob).where(RestoreExtractionJob.id == job_id)
        if admin_user_id is not None:
            query = query.where(RestoreExtractionJob.admin_user_id == admin_user_id)
        async with self.db.session() as session:
            job = (await session.execute(query)).scalar_one_or_none()
        if job is None:
            return False

        # an extraction still in progress has no extracted_path yet
        paths = [self.job_dir(job.id)]
        if job.extracted_path and Path(job.extracted_path) != paths[0]:
            paths.append(Path(job.extracted_path))
        for path in paths:
            if path.exists() and await asyncio.to_thread(remove_tree, path):
                logger.info(f"[EXTRACTION] Cleaned up extraction directory: {path}")
        await self._delete_row(job.id)
        return True

    async def cleanup_expired(self) -> int:
        cutoff = utc_now() - self.retention
        query = select(RestoreExtractionJob.id).where(RestoreExtractionJob.created_at < cutoff)
        async with self.db.session() as session:
            expired = list((await session.execute(query)).scalars().all())

        for job_id in expired:
            await self.delete_job(job_id)
        if expired:
            logger.info(f"[CLEANUP] Removed {len(expired)} expired extraction jobs")
        return len(expired)

    async def pending_job_ids(self) -> List[uuid.UUID]:
        query = (
            select(RestoreExtractionJob.id)
            .where(RestoreExtractionJob.status == "pending")
            .order_by(RestoreExtractionJob.created_at)
        )
        async with self.db.session() as session:
            return list((await session.execute(query)).scalars().all())

    async def claim_job(self, job_id: uuid.UUID) -> bool:
        async with self.db.transaction() as session:
            result = await session.execute(
                update(RestoreExtractionJob)
                .where(RestoreExtractionJob.id == job_id, RestoreExtractionJob.status == "pending")
                .values(
                    status="extracting",
                    started_at=utc_now(),
                    progress=0,
                    status_message="Starting extraction...",
                )
            )
            return result.rowcount == 1

    async def update_job(self, job_id: uuid.UUID, **values) -> bool:
        """Returns False when the row no longer exists."""
        async with self.db.transaction() as session:
            result = await session.execute(
                update(RestoreExtractionJob).where(RestoreExtractionJob.id == job_id).values(**values)
            )
            return result.rowcount == 1

    async def _delete_row(self, job_id: uuid.UUID) -> None:
        async with self.db.transaction() as session:
            await session.execute(delete(RestoreExtractionJob).where(RestoreExtractionJob.id == job_id))


class ExtractionWorker(PollingWorker):
    """Extracts pending uploads into ``<extractions_dir>/<job_id>``."""

    name = EXTRACTION_WORKER

    def __init__(
        self,
        store: ExtractionJobStore,
        interval: float = 2.0,
        idle_shutdown: Optional[int] = 15,
        **kwargs,
    ):
        super().__init__(interval, idle_shutdown=idle_shutdown, **kwargs)
        self.store = store

    async def poll(self) -> bool:
        job_ids = await self.store.pending_job_ids()
        if not job_ids:
            return False
        for job_id in job_ids:
            if not await self.store.claim_job(job_id):
                continue
            await self.process_job(job_id)
        return True

    async def _upload_path(self, job_id: uuid.UUID) -> Path:
        async with self.store.db.session() as session:
            job = await session.get(RestoreExtractionJob, job_id)
            if job is None:
                raise LookupError(f"extraction job {job_id} disappeared")
            upload = await session.get(RestoreUpload, job.restore_upload_id)
        if upload is None:
            raise LookupError(f"restore upload {job.restore_upload_id} not found")
        return Path(upload.file_path)

    async def process_job(self, job_id: uuid.UUID) -> None:
        """Run an already-claimed job to `completed` or `failed`."""
        extract_dir = self.store.job_dir(job_id)
        try:
            archive_path = await self._upload_path(job_id)
            extract_dir.mkdir(parents=True, exist_ok=True)
            await self.store.update_job(job_id, progress=PROGRESS_START, status_message="Extracting archive...")
            await self._extract_with_progress(job_id, archive_path, extract_dir)
        except Exception as e:
            await asyncio.to_thread(remove_tree, extract_dir)
            await self.fail_job(job_id, f"Extraction failed: {e}")
            return

        completed = await self.store.update_job(
            job_id,
            status="completed",
            progress=100,
            status_message="Extraction completed",
            extracted_path=str(extract_dir),
            completed_at=utc_now(),
        )
        if not completed:
            logger.warning(f"[EXTRACTION] Extraction job {job_id} was deleted while running, discarding {extract_dir}")
            await asyncio.to_thread(remove_tree, extract_dir)
            return
        logger.info(f"[EXTRACTION] Extraction job {job_id} completed, extracted to: {extract_dir}")

    async def _extract_with_progress(self, job_id: uuid.UUID, archive_path: Path, extract_dir: Path) -> None:
        """Extract in a thread while a saver task persists progress.

        Updates are dropped rather than queued when the saver falls behind.
        """
        loop = asyncio.get_running_loop()
        updates: asyncio.Queue = asyncio.Queue(maxsize=10)

        def _offer(update) -> None:
            try:
                updates.put_nowait(update)
            except asyncio.QueueFull:
                pass

        def on_progress(percent: int, message: str) -> None:
            loop.call_soon_threadsafe(_offer, (percent, message))

        async def saver() -> None:
            last_saved = -1
            while True:
                update = await updates.get()
                if update is None:
                    return
                percent, message = update
                scaled = scale_progress(percent)
                if scaled - last_saved >= PROGRESS_SAVE_STEP or percent in (0, 100):
                    try:
                        await self.store.update_job(job_id, progress=scaled, status_message=message)
                    except SQLAlchemyError as e:
                        logger.warning(f"[EXTRACTION] Failed to update extraction progress: {e}")
                    last_saved = scaled

        saver_task = asyncio.create_task(saver())
        try:
            await extract_archive(archive_path, extract_dir, on_progress)
        finally:
            # let pending call_soon_threadsafe callbacks land before the sentinel
            await asyncio.sleep(0)
            await updates.put(None)
            await saver_task

    async def fail_job(self, job_id: uuid.UUID, error_message: str) -> None:
        logger.error(f"[EXTRACTION] Extraction job {job_id} failed: {error_message}")
        await self.store.update_job(
            job_id,
            status="failed",
            error_message=error_message,
            completed_at=utc_now(),
            progress=0,
            status_message="Extraction failed",
        )
