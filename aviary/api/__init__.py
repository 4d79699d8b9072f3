"""Admin HTTP API for backup and restore."""
