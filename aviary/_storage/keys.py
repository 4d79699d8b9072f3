"""Storage key layout.

Per-user objects live under ``users/<uuid>/``: documents below ``pdfs/`` and
the device config at ``rmapi/rmapi.conf``. Server backups live under
``backups/``.
"""

import uuid

USERS_PREFIX = "users/"
BACKUPS_PREFIX = "backups/"
CONFIG_FILENAME = "rmapi.conf"


def user_prefix(user_id: uuid.UUID) -> str:
    return f"users/{user_id}/"


def user_document_prefix(user_id: uuid.UUID) -> str:
    return f"users/{user_id}/pdfs/"


def user_config_key(user_id: uuid.UUID) -> str:
    return f"users/{user_id}/rmapi/{CONFIG_FILENAME}"


def backup_key(filename: str) -> str:
    return f"{BACKUPS_PREFIX}{filename}"
