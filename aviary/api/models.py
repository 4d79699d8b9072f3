"""Pydantic models for API requests and responses."""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..backup.models import BackupAnalysis


class BackupJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExtractionJobStatus(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    COMPLETED = "completed"
    FAILED = "failed"


class BackupJobCreate(BaseModel):
    include_files: bool = True
    include_configs: bool = True
    user_ids: List[uuid.UUID] = Field(default_factory=list)


class BackupJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    status: BackupJobStatus
    progress: int = 0
    include_files: bool
    include_configs: bool
    filename: str = ""
    file_size: int = 0
    error_message: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime


class BackupJobList(BaseModel):
    jobs: List[BackupJobResponse]


class RestoreUploadResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    filename: str
    file_size: int
    status: str
    expires_at: datetime
    created_at: datetime


class RestoreUploadList(BaseModel):
    uploads: List[RestoreUploadResponse]


class ExtractionJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    restore_upload_id: uuid.UUID
    status: ExtractionJobStatus
    progress: int = 0
    status_message: str = ""
    error_message: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class AnalysisResponse(BaseModel):
    valid: bool
    metadata: BackupAnalysis
    extraction_job: Optional[ExtractionJobResponse] = None


class RestoreRequest(BaseModel):
    upload_id: uuid.UUID
    overwrite_files: bool = False
    overwrite_database: bool = True
    user_ids: List[uuid.UUID] = Field(default_factory=list)


class RestoreResponse(BaseModel):
    success: bool = True
    aviary_version: str = ""
    users_restored: int = 0
    message: str = "Restore completed successfully"


class MessageResponse(BaseModel):
    message: str
