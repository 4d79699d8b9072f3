"""Server-side backup job endpoints."""

import uuid

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from aviary._storage import StorageKeyNotFoundError
from aviary._utils import logger
from aviary.backup.manager import BackupManager, JobNotFoundError

from ..dependencies import get_backup_manager, get_current_admin
from ..exceptions import BackupNotReadyError, JobNotFoundHTTPError
from ..models import BackupJobCreate, BackupJobList, BackupJobResponse, MessageResponse

router = APIRouter(prefix="/admin/backups", tags=["backups"])

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


async def _get_job(manager: BackupManager, job_id: uuid.UUID, admin_id: uuid.UUID):
    try:
        return await manager.get_backup_job(job_id, admin_id)
    except JobNotFoundError:
        raise JobNotFoundHTTPError("Backup", str(job_id))


@router.post("", response_model=BackupJobResponse, status_code=202)
async def create_backup(
    request: BackupJobCreate,
    manager: BackupManager = Depends(get_backup_manager),
    admin_id: uuid.UUID = Depends(get_current_admin),
) -> BackupJobResponse:
    """Queue a backup job; the archive is built in the background."""
    job = await manager.create_backup_job(
        admin_id,
        include_files=request.include_files,
        include_configs=request.include_configs,
        user_ids=request.user_ids,
    )
    return BackupJobResponse.model_validate(job)


@router.get("", response_model=BackupJobList)
async def list_backups(
    manager: BackupManager = Depends(get_backup_manager),
    admin_id: uuid.UUID = Depends(get_current_admin),
) -> BackupJobList:
    """Most recent backup jobs of the current admin."""
    jobs = await manager.backup_jobs.list_jobs(admin_id)
    return BackupJobList(jobs=[BackupJobResponse.model_validate(job) for job in jobs])


@router.get("/{job_id}", response_model=BackupJobResponse)
async def get_backup(
    job_id: uuid.UUID,
    manager: BackupManager = Depends(get_backup_manager),
    admin_id: uuid.UUID = Depends(get_current_admin),
) -> BackupJobResponse:
    job = await _get_job(manager, job_id, admin_id)
    return BackupJobResponse.model_validate(job)


@router.get("/{job_id}/download")
async def download_backup(
    job_id: uuid.UUID,
    manager: BackupManager = Depends(get_backup_manager),
    admin_id: uuid.UUID = Depends(get_current_admin),
) -> StreamingResponse:
    """Stream a completed backup archive from the storage backend."""
    job = await _get_job(manager, job_id, admin_id)
    if job.status != "completed":
        raise BackupNotReadyError(str(job_id), job.status)

    try:
        reader = await manager.backup_jobs.open_archive(job)
    except StorageKeyNotFoundError:
        logger.warning(f"Backup file for job {job_id} is missing from storage")
        raise JobNotFoundHTTPError("Backup", str(job_id))

    def iter_archive():
        try:
            while True:
                chunk = reader.read(DOWNLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            reader.close()

    return StreamingResponse(
        iter_archive(),
        media_type="application/gzip",
        headers={
            "Content-Disposition": f"attachment; filename={job.filename}",
            "Content-Length": str(job.file_size),
        },
    )


@router.delete("/{job_id}", response_model=MessageResponse)
async def delete_backup(
    job_id: uuid.UUID,
    manager: BackupManager = Depends(get_backup_manager),
    admin_id: uuid.UUID = Depends(get_current_admin),
) -> MessageResponse:
    """Delete a backup job and its archive."""
    deleted = await manager.backup_jobs.delete_job(job_id, admin_id)
    if not deleted:
        raise JobNotFoundHTTPError("Backup", str(job_id))
    return MessageResponse(message=f"Backup job deleted: {job_id}")
