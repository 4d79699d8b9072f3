"""Custom exceptions for FastAPI application."""

from fastapi import HTTPException
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_404_NOT_FOUND,
    HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    HTTP_500_INTERNAL_SERVER_ERROR,
)


class AviaryAPIError(HTTPException):
    """Base exception for admin API errors."""
    pass


class AdminRequiredError(AviaryAPIError):
    def __init__(self):
        super().__init__(HTTP_401_UNAUTHORIZED, "Admin authentication required")


class UploadNotFoundHTTPError(AviaryAPIError):
    def __init__(self, upload_id: str):
        super().__init__(HTTP_404_NOT_FOUND, f"Upload {upload_id} not found")


class JobNotFoundHTTPError(AviaryAPIError):
    def __init__(self, kind: str, job_id: str):
        super().__init__(HTTP_404_NOT_FOUND, f"{kind} job {job_id} not found")


class InvalidUploadHTTPError(AviaryAPIError):
    def __init__(self, reason: str):
        super().__init__(HTTP_400_BAD_REQUEST, reason)


class UploadTooLargeError(AviaryAPIError):
    def __init__(self, limit: int):
        super().__init__(HTTP_413_REQUEST_ENTITY_TOO_LARGE, f"Upload exceeds {limit:,} bytes")


class BackupNotReadyError(AviaryAPIError):
    def __init__(self, job_id: str, status: str):
        super().__init__(HTTP_400_BAD_REQUEST, f"Backup job {job_id} is {status}, not completed")


class RestoreFailedError(AviaryAPIError):
    def __init__(self, reason: str):
        super().__init__(HTTP_500_INTERNAL_SERVER_ERROR, f"Restore failed: {reason}")
