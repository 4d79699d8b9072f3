"""API routers."""

from . import backup, restore

__all__ = ["backup", "restore"]
