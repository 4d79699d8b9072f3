"""Data models for backup/restore operations."""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

ANALYSIS_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S UTC"


class ExportMetadata(BaseModel):
    """Contents of ``metadata.json``, the first entry of every archive.

    Legacy archives predate the count fields; they default to zero.
    """

    model_config = ConfigDict(extra="ignore")

    aviary_version: str = Field("", description="Release that produced the archive")
    git_commit: str = Field("", description="Commit of that release")
    export_timestamp: Optional[datetime] = Field(None, description="Creation time, ISO-8601")
    database_type: str = Field("", description="sqlite or postgres")
    total_users: int = 0
    total_api_keys: int = 0
    total_documents: int = 0
    total_size_bytes: int = 0
    exported_tables: List[str] = Field(default_factory=list)
    users_exported: List[str] = Field(default_factory=list)


class BackupAnalysis(BaseModel):
    """Result of inspecting an uploaded archive."""

    valid: bool = False
    aviary_version: str = ""
    git_commit: str = ""
    export_timestamp: str = ""
    database_type: str = ""
    user_count: int = 0
    api_key_count: int = 0
    document_count: int = 0
    total_size_bytes: int = 0
    exported_tables: List[str] = Field(default_factory=list)
    users_exported: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    extraction_path: Optional[str] = Field(None, description="Set only after a successful full extraction")

    @classmethod
    def from_metadata(cls, metadata: ExportMetadata, **kwargs) -> 'BackupAnalysis':
        timestamp = ""
        if metadata.export_timestamp is not None:
            timestamp = metadata.export_timestamp.strftime(ANALYSIS_TIMESTAMP_FORMAT)
        values = dict(
            aviary_version=metadata.aviary_version,
            git_commit=metadata.git_commit,
            export_timestamp=timestamp,
            database_type=metadata.database_type,
            user_count=metadata.total_users,
            api_key_count=metadata.total_api_keys,
            document_count=metadata.total_documents,
            total_size_bytes=metadata.total_size_bytes,
            exported_tables=list(metadata.exported_tables),
            users_exported=list(metadata.users_exported),
        )
        values.update(kwargs)
        return cls(**values)


class ExportOptions(BaseModel):
    include_database: bool = True
    include_files: bool = True
    include_configs: bool = True
    user_ids: List[uuid.UUID] = Field(default_factory=list, description="Empty means all users")


class ImportOptions(BaseModel):
    overwrite_files: bool = False
    # Accepted for compatibility; tables are always replaced
    overwrite_database: bool = True
    user_ids: List[uuid.UUID] = Field(default_factory=list, description="Empty means all users")
