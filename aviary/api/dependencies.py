"""Dependency injection for FastAPI."""

import uuid
from typing import TYPE_CHECKING

from fastapi import Request

from .exceptions import AdminRequiredError

if TYPE_CHECKING:
    from aviary.backup.manager import BackupManager


async def get_backup_manager(request: Request) -> "BackupManager":
    """Get BackupManager instance from app state."""
    return request.app.state.backup_manager


async def get_current_admin(request: Request) -> uuid.UUID:
    """Admin user id placed on the request by the authentication middleware."""
    admin_user_id = getattr(request.state, "admin_user_id", None)
    if admin_user_id is None:
        raise AdminRequiredError()
    if isinstance(admin_user_id, uuid.UUID):
        return admin_user_id
    try:
        return uuid.UUID(str(admin_user_id))
    except ValueError:
        raise AdminRequiredError()
