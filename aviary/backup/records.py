"""Typed per-table records for the ``database/<table>.json`` archive entries.

Rows are decoded into these models instead of being inserted as raw maps, so
unknown keys from newer or older releases are dropped and values are coerced
to the column types. The ``users`` record has no ``password``
field: the hash is copied from the decoded JSON string as-is.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import DateTime
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from .._utils import to_naive_utc, utc_now
from ..database.models import (
    Base,
    User,
    APIKey,
    UserSession,
    FolderCache,
    Document,
    SystemSetting,
    LoginAttempt,
)


class TableRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _nulls_to_defaults(cls, data: Any) -> Any:
        # NULL in a column that has a non-null default takes the default
        if not isinstance(data, dict):
            return data
        cleaned = {}
        for key, value in data.items():
            field = cls.model_fields.get(key)
            if value is None and field is not None and not field.is_required() and field.default is not None:
                continue
            cleaned[key] = value
        return cleaned

    @field_validator("*", mode="after")
    @classmethod
    def _naive_utc(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return to_naive_utc(value)
        return value

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump()


class UserRecord(TableRecord):
    id: uuid.UUID
    username: str
    email: str
    is_admin: bool = False
    is_active: bool = True
    rmapi_host: str = ""
    default_rmdir: str = "/"
    folder_refresh_percent: int = 0
    coverpage_setting: str = ""
    conflict_resolution: str = "abort"
    folder_depth_limit: int = 0
    folder_exclusion_list: str = ""
    page_resolution: str = ""
    page_dpi: float = 0.0
    conversion_output_format: str = "epub"
    rmapi_config: str = ""
    pdf_background_removal: bool = False
    reset_token: str = ""
    reset_token_expires: Optional[datetime] = None
    oidc_subject: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


class APIKeyRecord(TableRecord):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    key_hash: str
    key_prefix: str
    is_active: bool = True
    last_used: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class UserSessionRecord(TableRecord):
    id: uuid.UUID
    user_id: uuid.UUID
    token_hash: str
    expires_at: datetime
    created_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    user_agent: str = ""
    ip_address: str = ""


class FolderCacheRecord(TableRecord):
    id: uuid.UUID
    user_id: uuid.UUID
    folder_path: str
    folder_data: str = ""
    last_updated: Optional[datetime] = None


class DocumentRecord(TableRecord):
    id: uuid.UUID
    user_id: uuid.UUID
    document_name: str
    local_path: str = ""
    remote_path: str = ""
    document_type: str = ""
    file_size: int = 0
    status: str = "uploaded"
    upload_date: Optional[datetime] = None


class SystemSettingRecord(TableRecord):
    key: str
    value: str = ""
    description: str = ""
    updated_at: Optional[datetime] = None
    updated_by: Optional[uuid.UUID] = None


class LoginAttemptRecord(TableRecord):
    id: uuid.UUID
    ip_address: str
    username: str = ""
    success: bool = False
    attempted_at: Optional[datetime] = None
    user_agent: str = ""


def _fill_unset_timestamps(model: Type[Base], row: Dict[str, Any]) -> Dict[str, Any]:
    """Stamp NOT NULL timestamp columns that were absent from the archive."""
    now = utc_now()
    for column in model.__table__.columns:
        if column.key in row and row[column.key] is None and not column.nullable:
            if isinstance(column.type, DateTime):
                row[column.key] = now
    return row


@dataclass(frozen=True)
class TableSpec:
    """How one archived table maps onto the relational store.

    `scope_column` names the column filtered by a user-scoped restore or
    export; None means the table is always copied whole.
    """
    name: str
    model: Type[Base]
    record: Type[TableRecord]
    scope_column: Optional[str] = "user_id"

    def decode(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Decode one archived row into insertable column values."""
        row = self.record.model_validate(raw).to_row()
        if self.model is User:
            # Hash is copied verbatim; never routed through a model or hook
            if "password" not in raw or not isinstance(raw["password"], str):
                raise ValueError(f"user {raw.get('id')} has no password hash")
            row["password"] = raw["password"]
        return _fill_unset_timestamps(self.model, row)


USERS = TableSpec("users", User, UserRecord, scope_column="id")
SYSTEM_SETTINGS = TableSpec("system_settings", SystemSetting, SystemSettingRecord, scope_column=None)
API_KEYS = TableSpec("api_keys", APIKey, APIKeyRecord)
USER_SESSIONS = TableSpec("user_sessions", UserSession, UserSessionRecord)
DOCUMENTS = TableSpec("documents", Document, DocumentRecord)
FOLDER_CACHE = TableSpec("user_folders_cache", FolderCache, FolderCacheRecord)
LOGIN_ATTEMPTS = TableSpec("login_attempts", LoginAttempt, LoginAttemptRecord, scope_column=None)

# Parents before children
IMPORT_ORDER: List[TableSpec] = [
    USERS,
    SYSTEM_SETTINGS,
    API_KEYS,
    USER_SESSIONS,
    DOCUMENTS,
    FOLDER_CACHE,
    LOGIN_ATTEMPTS,
]

TABLES_BY_NAME: Dict[str, TableSpec] = {spec.name: spec for spec in IMPORT_ORDER}


def serialize_row(instance: Base) -> Dict[str, Any]:
    """Column-name keyed dict of an ORM row, as stored in the archive."""
    return {
        column.name: getattr(instance, column.key)
        for column in instance.__table__.columns
    }
