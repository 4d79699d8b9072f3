"""Restore and backup orchestration used by the admin API."""

import asyncio
import shutil
import uuid
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence, Tuple

from sqlalchemy import delete, select

from .._storage import BaseStorageBackend
from .._utils import logger, remove_tree, utc_now
from ..config import AviaryConfig
from ..database import BackupJob, Database, RestoreExtractionJob, RestoreUpload
from ..jobs.backup_worker import BACKUP_WORKER, BackupJobStore, BackupWorker
from ..jobs.extraction_worker import EXTRACTION_WORKER, ExtractionJobStore, ExtractionWorker
from ..jobs.scheduler import JobScheduler, PeriodicTask
from ..security import PathValidationError, validate_file_path, validate_filename
from .analyzer import BackupAnalyzer
from .exporter import BackupExporter
from .importer import BackupImporter
from .models import BackupAnalysis, ExportMetadata, ImportOptions
from .utils import is_archive_filename

CLEANUP_TASK = "cleanup"

WAITING_STATUSES = ("pending", "extracting")


class UploadNotFoundError(LookupError):
    """No usable upload with that id for this admin."""
    pass


class InvalidUploadError(ValueError):
    """The uploaded file cannot be accepted as a backup archive."""
    pass


class JobNotFoundError(LookupError):
    """No job with that id for this admin."""
    pass


class BackupManager:
    """Entry point for staging, analyzing and restoring uploads and for queueing backups.

    Registers the backup worker, the extraction worker and the cleanup sweep
    on `scheduler` unless workers with those names are already registered.
    """

    def __init__(
        self,
        db: Database,
        storage: BaseStorageBackend,
        scheduler: JobScheduler,
        config: AviaryConfig,
    ):
        self.db = db
        self.storage = storage
        self.scheduler = scheduler
        self.config = config
        workers = config.workers

        self.backup_jobs = BackupJobStore(db, storage)
        self.extraction_jobs = ExtractionJobStore(db, config.extractions_dir, workers.retention_hours)
        self.analyzer = BackupAnalyzer(config.extractions_dir)
        self.importer = BackupImporter(db, storage, config.staging_dir)
        self.exporter = BackupExporter(db, storage, config.staging_dir)
        self.upload_retention = timedelta(hours=workers.retention_hours)

        if BACKUP_WORKER not in scheduler.workers:
            scheduler.register(BackupWorker(
                self.backup_jobs,
                self.exporter,
                config.staging_dir,
                interval=workers.backup_poll_interval,
                idle_shutdown=workers.backup_idle_polls,
                retention_hours=workers.retention_hours,
            ))
        if EXTRACTION_WORKER not in scheduler.workers:
            scheduler.register(ExtractionWorker(
                self.extraction_jobs,
                interval=workers.extraction_poll_interval,
                idle_shutdown=workers.extraction_idle_polls,
            ))
        if CLEANUP_TASK not in scheduler.workers:
            scheduler.register(PeriodicTask(CLEANUP_TASK, self.cleanup_expired, workers.cleanup_interval))

    # Uploads

    async def stage_upload(self, admin_user_id: uuid.UUID, filename: str, reader: BinaryIO) -> RestoreUpload:
        """Save an uploaded archive under the uploads directory and record it.

        Raises:
            InvalidUploadError: If the name is unsafe or not a .tar.gz/.tgz
        """
        upload_id = uuid.uuid4()
        uploads_dir = Path(self.config.uploads_dir)
        try:
            filename = validate_filename(filename)
            file_path = validate_file_path(f"restore_{upload_id}_{filename}", uploads_dir)
        except PathValidationError as e:
            raise InvalidUploadError(str(e)) from e
        if not is_archive_filename(filename):
            raise InvalidUploadError("Invalid file type. Expected .tar.gz or .tgz file")
        uploads_dir.mkdir(parents=True, exist_ok=True)

        def _save() -> int:
            with open(file_path, "wb") as out:
                shutil.copyfileobj(reader, out)
            return file_path.stat().st_size

        try:
            size = await asyncio.to_thread(_save)
            upload = RestoreUpload(
                id=upload_id,
                admin_user_id=admin_user_id,
                filename=filename,
                file_path=str(file_path),
                file_size=size,
                status="uploaded",
                expires_at=utc_now() + self.upload_retention,
            )
            async with self.db.transaction() as session:
                session.add(upload)
        except BaseException:
            file_path.unlink(missing_ok=True)
            raise

        logger.info(f"[RESTORE] Staged upload {upload_id} ({filename}, {size:,} bytes)")
        return upload

    async def list_uploads(self, admin_user_id: uuid.UUID) -> List[RestoreUpload]:
        """Unexpired uploads still waiting to be restored."""
        query = (
            select(RestoreUpload)
            .where(
                RestoreUpload.admin_user_id == admin_user_id,
                RestoreUpload.status == "uploaded",
                RestoreUpload.expires_at > utc_now(),
            )
            .order_by(RestoreUpload.created_at.desc())
        )
        async with self.db.session() as session:
            return list((await session.execute(query)).scalars().all())

    async def _get_upload(self, upload_id: uuid.UUID, admin_user_id: uuid.UUID, status: Optional[str] = "uploaded") -> RestoreUpload:
        query = select(RestoreUpload).where(
            RestoreUpload.id == upload_id,
            RestoreUpload.admin_user_id == admin_user_id,
        )
        if status is not None:
            query = query.where(RestoreUpload.status == status)
        async with self.db.session() as session:
            upload = (await session.execute(query)).scalar_one_or_none()
        if upload is None:
            raise UploadNotFoundError(f"upload {upload_id} not found")
        return upload

    async def _get_usable_upload(self, upload_id: uuid.UUID, admin_user_id: uuid.UUID) -> RestoreUpload:
        """Upload with its file still on disk; a record whose file vanished is dropped."""
        upload = await self._get_upload(upload_id, admin_user_id)
        if not Path(upload.file_path).is_file():
            logger.warning(f"[RESTORE] Upload file for {upload_id} is missing, removing record")
            await self._delete_upload_row(upload.id)
            raise UploadNotFoundError(f"upload {upload_id} file is missing")
        return upload

    async def _delete_upload_row(self, upload_id: uuid.UUID) -> None:
        async with self.db.transaction() as session:
            await session.execute(delete(RestoreUpload).where(RestoreUpload.id == upload_id))

    async def _remove_upload(self, upload: RestoreUpload) -> None:
        """Extraction job and directory, then file, then row."""
        job = await self.extraction_jobs.get_job_by_upload(upload.id)
        if job is not None:
            await self.extraction_jobs.delete_job(job.id)
        if upload.file_path:
            try:
                Path(upload.file_path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"[RESTORE] Failed to remove upload file {upload.file_path}: {e}")
        await self._delete_upload_row(upload.id)

    async def delete_upload(self, upload_id: uuid.UUID, admin_user_id: uuid.UUID) -> None:
        upload = await self._get_upload(upload_id, admin_user_id, status=None)
        await self._remove_upload(upload)
        logger.info(f"[RESTORE] Deleted upload {upload_id}")

    async def cleanup_expired_uploads(self) -> int:
        query = select(RestoreUpload).where(RestoreUpload.expires_at < utc_now())
        async with self.db.session() as session:
            expired = list((await session.execute(query)).scalars().all())
        for upload in expired:
            await self._remove_upload(upload)
        if expired:
            logger.info(f"[CLEANUP] Removed {len(expired)} expired restore uploads")
        return len(expired)

    async def cleanup_expired(self) -> None:
        """Hourly sweep of expired backups, extractions and uploads."""
        await self.backup_jobs.cleanup_expired()
        await self.extraction_jobs.cleanup_expired()
        await self.cleanup_expired_uploads()

    # Analysis

    async def analyze_upload(
        self,
        upload_id: uuid.UUID,
        admin_user_id: uuid.UUID,
    ) -> Tuple[BackupAnalysis, Optional[RestoreExtractionJob]]:
        """Analyze a staged upload and queue or adopt its extraction.

        When analysis had to extract the archive, that directory becomes a
        completed extraction job; otherwise a pending job is queued and the
        extraction worker is started.
        """
        upload = await self._get_usable_upload(upload_id, admin_user_id)
        analysis = await self.analyzer.analyze_backup(upload.file_path)
        if not analysis.valid:
            return analysis, None

        if analysis.extraction_path:
            try:
                job = await self.extraction_jobs.create_completed_job(admin_user_id, upload.id, analysis.extraction_path)
            except OSError as e:
                logger.warning(f"[RESTORE] Could not reuse analysis extraction, queueing a new one: {e}")
                await asyncio.to_thread(remove_tree, analysis.extraction_path)
                job = await self._queue_extraction(admin_user_id, upload.id)
            analysis.extraction_path = None
        else:
            job = await self._queue_extraction(admin_user_id, upload.id)
        return analysis, job

    async def _queue_extraction(self, admin_user_id: uuid.UUID, upload_id: uuid.UUID) -> RestoreExtractionJob:
        job = await self.extraction_jobs.create_job(admin_user_id, upload_id)
        if job.status == "pending":
            self.scheduler.ensure_running(EXTRACTION_WORKER)
        return job

    async def get_extraction_job(self, job_id: uuid.UUID, admin_user_id: uuid.UUID) -> RestoreExtractionJob:
        job = await self.extraction_jobs.get_job(job_id, admin_user_id)
        if job is None:
            raise JobNotFoundError(f"extraction job {job_id} not found")
        return job

    # Restore

    async def _wait_for_extraction(self, job: RestoreExtractionJob) -> Optional[RestoreExtractionJob]:
        """Poll `job` until it leaves pending/extracting or the wait times out.

        Returns:
            The job's final row, or None on timeout or if the row disappears
        """
        workers = self.config.workers
        loop = asyncio.get_running_loop()
        deadline = loop.time() + workers.extraction_wait_timeout
        logger.info(f"[RESTORE] Waiting for extraction job {job.id} ({job.status})")

        while job.status in WAITING_STATUSES:
            if loop.time() >= deadline:
                logger.warning(
                    f"[RESTORE] Extraction job {job.id} still {job.status} after "
                    f"{workers.extraction_wait_timeout:.0f}s, importing from the archive instead"
                )
                return None
            await asyncio.sleep(workers.extraction_wait_poll)
            async with self.db.session() as session:
                job = await session.get(RestoreExtractionJob, job.id)
            if job is None:
                return None
        return job

    async def restore_database(
        self,
        upload_id: uuid.UUID,
        admin_user_id: uuid.UUID,
        options: ImportOptions,
    ) -> ExportMetadata:
        """Import a staged upload, preferring its completed extraction.

        Raises:
            UploadNotFoundError: If the upload is unknown, consumed or its file is gone
            BackupImportError: If the database import failed and was rolled back
        """
        upload = await self._get_usable_upload(upload_id, admin_user_id)
        logger.info(f"[RESTORE] Starting restore from upload {upload_id} ({upload.filename})")

        job = await self.extraction_jobs.get_job_by_upload(upload.id)
        if job is not None and job.status in WAITING_STATUSES:
            job = await self._wait_for_extraction(job)

        extracted = None
        if job is not None and job.status == "completed" and job.extracted_path:
            if Path(job.extracted_path).is_dir():
                extracted = Path(job.extracted_path)

        if extracted is not None:
            logger.info(f"[RESTORE] Importing from pre-extracted directory {extracted}")
            metadata = await self.importer.import_from_extracted_directory(extracted, options)
        else:
            logger.info(f"[RESTORE] Importing directly from archive {upload.file_path}")
            metadata = await self.importer.import_archive(upload.file_path, options)

        try:
            await self.db.run_migrations("RESTORE")
        except Exception as e:
            logger.warning(f"[RESTORE] Database migration failed after restore: {e}")

        await self._remove_upload(upload)
        logger.info(f"[RESTORE] Restore from upload {upload_id} completed")
        return metadata

    # Backups

    async def create_backup_job(
        self,
        admin_user_id: uuid.UUID,
        include_files: bool = True,
        include_configs: bool = True,
        user_ids: Optional[Sequence[uuid.UUID]] = None,
    ) -> BackupJob:
        job = await self.backup_jobs.create_job(admin_user_id, include_files, include_configs, user_ids)
        self.scheduler.ensure_running(BACKUP_WORKER)
        return job

    async def get_backup_job(self, job_id: uuid.UUID, admin_user_id: uuid.UUID) -> BackupJob:
        job = await self.backup_jobs.get_job(job_id, admin_user_id)
        if job is None:
            raise JobNotFoundError(f"backup job {job_id} not found")
        return job
