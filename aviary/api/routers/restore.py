"""Restore upload, analysis and restore endpoints."""

import uuid

from fastapi import APIRouter, Depends, File, UploadFile

from aviary._storage import StorageError
from aviary._utils import logger
from aviary.backup.importer import BackupImportError
from aviary.backup.manager import (
    BackupManager,
    InvalidUploadError,
    JobNotFoundError,
    UploadNotFoundError,
)
from aviary.backup.models import ImportOptions
from aviary.backup.utils import ArchiveFormatError
from aviary.security import PathValidationError

from ..config import settings
from ..dependencies import get_backup_manager, get_current_admin
from ..exceptions import (
    InvalidUploadHTTPError,
    JobNotFoundHTTPError,
    RestoreFailedError,
    UploadNotFoundHTTPError,
    UploadTooLargeError,
)
from ..models import (
    AnalysisResponse,
    ExtractionJobResponse,
    MessageResponse,
    RestoreRequest,
    RestoreResponse,
    RestoreUploadList,
    RestoreUploadResponse,
)

router = APIRouter(prefix="/admin/restore", tags=["restore"])


@router.post("/uploads", response_model=RestoreUploadResponse, status_code=201)
async def upload_backup(
    backup_file: UploadFile = File(...),
    manager: BackupManager = Depends(get_backup_manager),
    admin_id: uuid.UUID = Depends(get_current_admin),
) -> RestoreUploadResponse:
    """Stage a .tar.gz/.tgz archive for analysis and restore."""
    if settings.max_upload_size and backup_file.size and backup_file.size > settings.max_upload_size:
        raise UploadTooLargeError(settings.max_upload_size)

    try:
        upload = await manager.stage_upload(admin_id, backup_file.filename or "", backup_file.file)
    except InvalidUploadError as e:
        raise InvalidUploadHTTPError(str(e))
    return RestoreUploadResponse.model_validate(upload)


@router.get("/uploads", response_model=RestoreUploadList)
async def list_uploads(
    manager: BackupManager = Depends(get_backup_manager),
    admin_id: uuid.UUID = Depends(get_current_admin),
) -> RestoreUploadList:
    uploads = await manager.list_uploads(admin_id)
    return RestoreUploadList(uploads=[RestoreUploadResponse.model_validate(u) for u in uploads])


@router.post("/uploads/{upload_id}/analyze", response_model=AnalysisResponse)
async def analyze_upload(
    upload_id: uuid.UUID,
    manager: BackupManager = Depends(get_backup_manager),
    admin_id: uuid.UUID = Depends(get_current_admin),
) -> AnalysisResponse:
    """Summarize a staged archive and start extracting it in the background."""
    try:
        analysis, job = await manager.analyze_upload(upload_id, admin_id)
    except UploadNotFoundError:
        raise UploadNotFoundHTTPError(str(upload_id))
    except ArchiveFormatError as e:
        raise InvalidUploadHTTPError(f"Invalid backup archive: {e}")

    return AnalysisResponse(
        valid=analysis.valid,
        metadata=analysis,
        extraction_job=ExtractionJobResponse.model_validate(job) if job is not None else None,
    )


@router.delete("/uploads/{upload_id}", response_model=MessageResponse)
async def delete_upload(
    upload_id: uuid.UUID,
    manager: BackupManager = Depends(get_backup_manager),
    admin_id: uuid.UUID = Depends(get_current_admin),
) -> MessageResponse:
    try:
        await manager.delete_upload(upload_id, admin_id)
    except UploadNotFoundError:
        raise UploadNotFoundHTTPError(str(upload_id))
    return MessageResponse(message=f"Upload deleted: {upload_id}")


@router.get("/extractions/{job_id}", response_model=ExtractionJobResponse)
async def get_extraction(
    job_id: uuid.UUID,
    manager: BackupManager = Depends(get_backup_manager),
    admin_id: uuid.UUID = Depends(get_current_admin),
) -> ExtractionJobResponse:
    """Progress of a background extraction."""
    try:
        job = await manager.get_extraction_job(job_id, admin_id)
    except JobNotFoundError:
        raise JobNotFoundHTTPError("Extraction", str(job_id))
    return ExtractionJobResponse.model_validate(job)


@router.post("", response_model=RestoreResponse)
async def restore(
    request: RestoreRequest,
    manager: BackupManager = Depends(get_backup_manager),
    admin_id: uuid.UUID = Depends(get_current_admin),
) -> RestoreResponse:
    """Restore the installation from a staged upload.

    May wait for a running background extraction before importing.
    """
    options = ImportOptions(
        overwrite_files=request.overwrite_files,
        overwrite_database=request.overwrite_database,
        user_ids=request.user_ids,
    )
    try:
        metadata = await manager.restore_database(request.upload_id, admin_id, options)
    except UploadNotFoundError:
        raise UploadNotFoundHTTPError(str(request.upload_id))
    except (ArchiveFormatError, BackupImportError, PathValidationError, StorageError, OSError) as e:
        logger.error(f"[RESTORE] Restore from upload {request.upload_id} failed: {e}")
        raise RestoreFailedError(str(e))

    return RestoreResponse(
        aviary_version=metadata.aviary_version,
        users_restored=len(request.user_ids) or metadata.total_users,
    )
