"""Build a backup archive from the relational store and storage backend."""

import asyncio
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

from sqlalchemy import select

from .. import __git_commit__, __version__
from .._storage import BaseStorageBackend
from .._storage.keys import CONFIG_FILENAME, user_config_key, user_document_prefix
from .._storage.utils import copy_file_from_storage
from .._utils import logger, scoped_directory
from ..database import Database, User
from .models import ExportMetadata, ExportOptions
from .records import IMPORT_ORDER, TableSpec, serialize_row
from .utils import DATABASE_DIR, FILESYSTEM_DIR, METADATA_FILENAME, create_archive, write_json


class BackupExporter:
    """Write ``metadata.json``, ``database/`` and ``filesystem/`` into an archive."""

    def __init__(
        self,
        db: Database,
        storage: BaseStorageBackend,
        staging_dir: Union[str, Path],
        version: str = __version__,
        git_commit: str = __git_commit__,
    ):
        self.db = db
        self.storage = storage
        self.staging_dir = Path(staging_dir)
        self.version = version
        self.git_commit = git_commit

    async def export(self, output_path: Union[str, Path], options: ExportOptions) -> ExportMetadata:
        """Export to `output_path`.

        Args:
            output_path: Destination .tar.gz path on local disk
            options: What to include and which users

        Returns:
            Metadata written into the archive
        """
        output_path = Path(output_path)
        logger.info(f"Starting export to {output_path.name}")

        async with scoped_directory(self.staging_dir / f"export-{uuid.uuid4().hex}") as work_dir:
            metadata = ExportMetadata(
                aviary_version=self.version,
                git_commit=self.git_commit,
                database_type=self.db.database_type,
            )

            if options.include_database:
                await self._export_database(work_dir / DATABASE_DIR, metadata, options)

            if options.include_files or options.include_configs:
                await self._export_filesystem(work_dir / FILESYSTEM_DIR, metadata, options)

            metadata.export_timestamp = datetime.now(timezone.utc)
            write_json(work_dir / METADATA_FILENAME, metadata.model_dump(mode="json"))

            await create_archive(work_dir, output_path)

        logger.info(
            f"Export complete: {len(metadata.users_exported)} users, "
            f"{metadata.total_documents} documents, {metadata.total_size_bytes:,} bytes"
        )
        return metadata

    async def _fetch_rows(self, spec: TableSpec, options: ExportOptions) -> List[Dict[str, Any]]:
        query = select(spec.model)
        if options.user_ids and spec.scope_column:
            query = query.where(getattr(spec.model, spec.scope_column).in_(options.user_ids))
        async with self.db.session() as session:
            result = await session.execute(query)
            return [serialize_row(row) for row in result.scalars().all()]

    async def _export_database(self, db_dir: Path, metadata: ExportMetadata, options: ExportOptions) -> None:
        db_dir.mkdir(parents=True, exist_ok=True)
        exported = []
        for spec in IMPORT_ORDER:
            rows = await self._fetch_rows(spec, options)
            await asyncio.to_thread(write_json, db_dir / f"{spec.name}.json", rows)
            exported.append(spec.name)

            if spec.name == "users":
                metadata.total_users = len(rows)
            elif spec.name == "api_keys":
                metadata.total_api_keys = len(rows)
            logger.debug(f"Exported {len(rows)} rows from {spec.name}")

        metadata.exported_tables = exported

    async def _export_users(self, options: ExportOptions) -> List[Tuple[uuid.UUID, str]]:
        query = select(User.id, User.rmapi_config).order_by(User.username)
        if options.user_ids:
            query = query.where(User.id.in_(options.user_ids))
        async with self.db.session() as session:
            result = await session.execute(query)
            return [(row.id, row.rmapi_config or "") for row in result.all()]

    async def _export_filesystem(self, fs_dir: Path, metadata: ExportMetadata, options: ExportOptions) -> None:
        total_size = 0
        total_documents = 0
        exported_users = []

        for user_id, rmapi_config in await self._export_users(options):
            exported_users.append(str(user_id))

            if options.include_files:
                prefix = user_document_prefix(user_id)
                dest_dir = fs_dir / "documents" / str(user_id)
                for info in await self.storage.list_with_info(prefix):
                    relative = info.key[len(prefix):]
                    await copy_file_from_storage(self.storage, info.key, dest_dir / relative)
                    total_size += info.size
                    total_documents += 1

            if options.include_configs:
                config_path = fs_dir / "configs" / str(user_id) / CONFIG_FILENAME
                if rmapi_config:
                    config_path.parent.mkdir(parents=True, exist_ok=True)
                    config_bytes = rmapi_config.encode("utf-8")
                    config_path.write_bytes(config_bytes)
                    total_size += len(config_bytes)
                elif await self.storage.exists(user_config_key(user_id)):
                    await copy_file_from_storage(self.storage, user_config_key(user_id), config_path)
                    total_size += config_path.stat().st_size

        metadata.users_exported = exported_users
        metadata.total_documents = total_documents
        metadata.total_size_bytes = total_size
