"""Restore an installation from a backup archive or extracted directory."""

import asyncio
import uuid
from pathlib import Path
from typing import Any, Dict, Iterator, List, Sequence, Set, Tuple, Union

from pydantic import ValidationError
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .._storage import BaseStorageBackend
from .._storage.keys import BACKUPS_PREFIX, CONFIG_FILENAME, USERS_PREFIX, user_document_prefix, user_prefix
from .._storage.utils import cleanup_storage_by_prefix
from .._utils import logger, parse_uuid, scoped_directory
from ..database import BackupJob, Database, SystemSetting, User
from ..security import PathValidationError, validate_storage_key
from .models import ExportMetadata, ImportOptions
from .records import IMPORT_ORDER, SYSTEM_SETTINGS, USERS, TableSpec
from .utils import (
    DATABASE_DIR,
    FILESYSTEM_DIR,
    METADATA_FILENAME,
    ArchiveFormatError,
    extract_archive,
    read_json,
)

BATCH_SIZE = 100


class BackupImportError(Exception):
    """Restore failed; the database import was rolled back."""
    pass


def _batches(rows: Sequence[Dict[str, Any]], size: int = BATCH_SIZE) -> Iterator[Sequence[Dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


class BackupImporter:
    """Apply an archive to the relational store and the storage backend.

    The database import runs in one transaction and always completes before
    any file is written to storage.
    """

    def __init__(
        self,
        db: Database,
        storage: BaseStorageBackend,
        temp_dir: Union[str, Path],
    ):
        self.db = db
        self.storage = storage
        self.temp_dir = Path(temp_dir)

    async def import_archive(self, archive_path: Union[str, Path], options: ImportOptions) -> ExportMetadata:
        """Extract `archive_path` into a scratch directory and import it.

        The scratch directory is removed whether or not the import succeeds.
        """
        async with scoped_directory(self.temp_dir / f"import-{uuid.uuid4().hex}") as work_dir:
            await extract_archive(archive_path, work_dir)
            return await self.import_from_extracted_directory(work_dir, options)

    async def import_from_extracted_directory(
        self,
        directory: Union[str, Path],
        options: ImportOptions,
    ) -> ExportMetadata:
        """Import from an already-extracted archive tree.

        Returns:
            The archive's metadata
        """
        directory = Path(directory)
        metadata = await asyncio.to_thread(self._read_metadata, directory)
        self._validate_metadata(metadata)

        fs_dir = directory / FILESYSTEM_DIR
        documents = []
        if (fs_dir / "documents").is_dir():
            documents = await asyncio.to_thread(self._collect_documents, fs_dir / "documents", options)

        db_dir = directory / DATABASE_DIR
        if db_dir.is_dir():
            await self._import_database(db_dir, options)

        if fs_dir.is_dir():
            await self._import_filesystem(fs_dir, documents, options)

        logger.info(f"[RESTORE] Import complete from {directory}")
        return metadata

    def _read_metadata(self, directory: Path) -> ExportMetadata:
        try:
            return ExportMetadata.model_validate(read_json(directory / METADATA_FILENAME))
        except (OSError, ValueError, ValidationError) as e:
            raise ArchiveFormatError(f"failed to read metadata: {e}") from e

    def _validate_metadata(self, metadata: ExportMetadata) -> None:
        if metadata.aviary_version and metadata.aviary_version != "dev":
            logger.info(f"[RESTORE] Importing backup from Aviary version {metadata.aviary_version}")
        if metadata.database_type and metadata.database_type != self.db.database_type:
            logger.warning(
                f"[RESTORE] Backup database type ({metadata.database_type}) "
                f"differs from current ({self.db.database_type})"
            )

    # Database

    def _load_tables(self, db_dir: Path, options: ImportOptions) -> List[Tuple[TableSpec, List[Dict[str, Any]]]]:
        """Read and decode every archived table before touching the store."""
        scope: Set[uuid.UUID] = set(options.user_ids)
        tables = []
        for spec in IMPORT_ORDER:
            path = db_dir / f"{spec.name}.json"
            if not path.exists():
                continue

            try:
                raw_rows = read_json(path)
            except (OSError, ValueError) as e:
                raise ArchiveFormatError(f"failed to read {path.name}: {e}") from e
            if not isinstance(raw_rows, list):
                raise ArchiveFormatError(f"{path.name} is not a JSON array")

            if scope and spec.scope_column:
                raw_rows = [
                    raw for raw in raw_rows
                    if isinstance(raw, dict) and parse_uuid(raw.get(spec.scope_column)) in scope
                ]

            rows = []
            for index, raw in enumerate(raw_rows):
                if not isinstance(raw, dict):
                    raise ArchiveFormatError(f"{path.name} row {index} is not an object")
                try:
                    rows.append(spec.decode(raw))
                except (ValueError, ValidationError) as e:
                    raise ArchiveFormatError(f"{path.name} row {index}: {e}") from e
            tables.append((spec, rows))
        return tables

    async def _import_database(self, db_dir: Path, options: ImportOptions) -> None:
        tables = await asyncio.to_thread(self._load_tables, db_dir, options)
        scope = list(options.user_ids)

        try:
            async with self.db.transaction() as session:
                for spec, rows in tables:
                    await self._clear_table(session, spec, scope)
                    if spec is SYSTEM_SETTINGS:
                        rows = await self._resolve_setting_authors(session, rows)
                    for batch in _batches(rows):
                        await session.execute(insert(spec.model), list(batch))
                    logger.info(f"[RESTORE] Imported {len(rows)} rows into {spec.name}")
        except SQLAlchemyError as e:
            raise BackupImportError(f"failed to import database: {e}") from e

    async def _clear_table(self, session: AsyncSession, spec: TableSpec, scope: List[uuid.UUID]) -> None:
        if spec is USERS:
            # updated_by has no cascade; clear it before the referenced users go
            author_filter = SystemSetting.updated_by.is_not(None)
            if scope:
                author_filter = SystemSetting.updated_by.in_(scope)
            await session.execute(update(SystemSetting).where(author_filter).values(updated_by=None))

        if scope and spec.scope_column:
            column = getattr(spec.model, spec.scope_column)
            await session.execute(delete(spec.model).where(column.in_(scope)))
        else:
            await session.execute(delete(spec.model))

    async def _resolve_setting_authors(
        self,
        session: AsyncSession,
        rows: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        """Keep `updated_by` only where it names a user that now exists."""
        authors = {row["updated_by"] for row in rows if row.get("updated_by") is not None}
        if not authors:
            return rows
        result = await session.execute(select(User.id).where(User.id.in_(authors)))
        present = set(result.scalars().all())
        for row in rows:
            if row.get("updated_by") is not None and row["updated_by"] not in present:
                row["updated_by"] = None
        return rows

    # Filesystem

    async def _import_filesystem(
        self,
        fs_dir: Path,
        documents: List[Tuple[uuid.UUID, List[Tuple[str, Path]]]],
        options: ImportOptions,
    ) -> None:
        if options.overwrite_files:
            await self._cleanup_user_files(options)

        await self._cleanup_backups()

        await self._import_documents(documents)

        configs_dir = fs_dir / "configs"
        if configs_dir.is_dir():
            await self._import_configs(configs_dir, options)

    async def _cleanup_user_files(self, options: ImportOptions) -> None:
        if options.user_ids:
            for user_id in options.user_ids:
                await cleanup_storage_by_prefix(self.storage, user_prefix(user_id))
        else:
            await cleanup_storage_by_prefix(self.storage, USERS_PREFIX)

    async def _cleanup_backups(self) -> None:
        """Drop server-side backups and their job rows; they describe the replaced state."""
        purged = []
        for key in await self.storage.list(BACKUPS_PREFIX):
            try:
                await self.storage.delete(key)
                purged.append(key)
            except Exception as e:
                logger.warning(f"[RESTORE] Failed to delete backup file {key}: {e}")

        if not purged:
            return

        async with self.db.transaction() as session:
            await session.execute(delete(BackupJob).where(BackupJob.file_path.in_(purged)))
        logger.info(f"[RESTORE] Cleaned up {len(purged)} backup files from storage backend")

    def _user_dirs(self, parent: Path, options: ImportOptions) -> List[Tuple[uuid.UUID, Path]]:
        scope = set(options.user_ids)
        found = []
        for entry in sorted(parent.iterdir()):
            if not entry.is_dir():
                continue
            user_id = parse_uuid(entry.name)
            if user_id is None:
                logger.debug(f"[RESTORE] Skipping non-user directory {entry.name}")
                continue
            if scope and user_id not in scope:
                continue
            found.append((user_id, entry))
        return found

    def _collect_documents(
        self,
        docs_dir: Path,
        options: ImportOptions,
    ) -> List[Tuple[uuid.UUID, List[Tuple[str, Path]]]]:
        """Map archived documents to storage keys, rejecting any invalid key up front."""
        documents = []
        for user_id, user_dir in self._user_dirs(docs_dir, options):
            prefix = user_document_prefix(user_id)
            files = []
            for path in sorted(p for p in user_dir.rglob("*") if p.is_file()):
                key = prefix + path.relative_to(user_dir).as_posix()
                try:
                    validate_storage_key(key)
                except PathValidationError as e:
                    raise ArchiveFormatError(f"invalid document path {path.relative_to(docs_dir)}: {e}") from e
                files.append((key, path))
            documents.append((user_id, files))
        return documents

    async def _import_documents(self, documents: List[Tuple[uuid.UUID, List[Tuple[str, Path]]]]) -> None:
        for user_id, files in documents:
            count = 0
            for key, path in files:
                with open(path, "rb") as reader:
                    await self.storage.put(key, reader)
                count += 1
                if count % 10 == 0:
                    logger.info(f"[RESTORE] Imported {count} files for user {user_id}")
            logger.info(f"[RESTORE] Successfully imported {count} files for user {user_id}")

    async def _import_configs(self, configs_dir: Path, options: ImportOptions) -> None:
        populated = 0
        for user_id, user_dir in self._user_dirs(configs_dir, options):
            config_path = user_dir / CONFIG_FILENAME
            if not config_path.is_file():
                continue
            try:
                content = config_path.read_bytes().decode("utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"[RESTORE] Failed to read config from backup for user {user_id}: {e}")
                continue

            try:
                async with self.db.transaction() as session:
                    result = await session.execute(
                        update(User).where(User.id == user_id).values(rmapi_config=content)
                    )
                if result.rowcount == 0:
                    logger.warning(f"[RESTORE] Config in backup for unknown user {user_id}, skipped")
                    continue
            except SQLAlchemyError as e:
                logger.warning(f"[RESTORE] Failed to save config to database for user {user_id}: {e}")
                continue
            populated += 1

        if populated:
            logger.info(f"[RESTORE] Populated {populated} rmapi configs from backup")

