"""Inspect an uploaded backup archive without restoring it."""

import asyncio
import time
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from .._utils import logger, remove_tree
from .models import BackupAnalysis, ExportMetadata
from .utils import (
    DATABASE_DIR,
    METADATA_FILENAME,
    count_json_records,
    extract_tar_gz,
    read_first_entry_json,
    read_json,
)


class BackupAnalyzer:
    """Produce a `BackupAnalysis` for an archive.

    New-format archives carry ``metadata.json`` as their first entry, so the
    analysis only reads the head of the stream. Anything else is fully
    extracted into a durable directory below `extractions_dir`, which the
    restore flow can later import from instead of extracting again.
    """

    def __init__(self, extractions_dir: Union[str, Path]):
        self.extractions_dir = Path(extractions_dir)

    async def analyze_backup(self, archive_path: Union[str, Path]) -> BackupAnalysis:
        return await asyncio.to_thread(self.analyze_backup_sync, Path(archive_path))

    def analyze_backup_sync(self, archive_path: Path) -> BackupAnalysis:
        logger.info(f"[ANALYZE] Attempting fast analysis for archive: {archive_path}")

        try:
            analysis = self._try_fast_analysis(archive_path)
        except Exception as e:
            logger.info(f"[ANALYZE] Fast analysis failed, falling back to full extraction: {e}")
            analysis = None

        if analysis is not None:
            logger.info("[ANALYZE] Fast analysis succeeded")
            return analysis

        return self._full_analysis(archive_path)

    def _try_fast_analysis(self, archive_path: Path) -> Optional[BackupAnalysis]:
        data = read_first_entry_json(archive_path, METADATA_FILENAME)
        if data is None:
            return None

        metadata = ExportMetadata.model_validate(data)

        # Archives from before the count fields report zero for both
        if metadata.total_users == 0 and metadata.total_api_keys == 0 and metadata.exported_tables:
            logger.info("[ANALYZE] Old backup format detected (missing user/API key counts)")
            return None

        return BackupAnalysis.from_metadata(metadata, valid=True)

    def _full_analysis(self, archive_path: Path) -> BackupAnalysis:
        self.extractions_dir.mkdir(parents=True, exist_ok=True)
        extraction_dir = self.extractions_dir / f"analyze-{time.time_ns()}"

        try:
            extract_tar_gz(archive_path, extraction_dir)
        except BaseException:
            remove_tree(extraction_dir)
            raise

        try:
            metadata = ExportMetadata.model_validate(read_json(extraction_dir / METADATA_FILENAME))
        except (OSError, ValueError, ValidationError) as e:
            remove_tree(extraction_dir)
            return BackupAnalysis(valid=False, errors=[f"Failed to read metadata.json: {e}"])

        analysis = BackupAnalysis.from_metadata(
            metadata,
            valid=True,
            extraction_path=str(extraction_dir),
        )

        db_dir = extraction_dir / DATABASE_DIR
        if db_dir.is_dir():
            self._count_database_records(db_dir, analysis)
        else:
            analysis.warnings.append("No database directory found in backup")

        self._validate_structure(extraction_dir, analysis)

        if not analysis.valid:
            remove_tree(extraction_dir)
            analysis.extraction_path = None
        else:
            logger.info(f"[ANALYZE] Full extraction completed, preserved at: {extraction_dir}")

        return analysis

    def _count_database_records(self, db_dir: Path, analysis: BackupAnalysis) -> None:
        try:
            analysis.user_count = count_json_records(db_dir / "users.json")
        except (OSError, ValueError) as e:
            analysis.warnings.append(f"Could not count users: {e}")

        try:
            analysis.api_key_count = count_json_records(db_dir / "api_keys.json")
        except (OSError, ValueError) as e:
            analysis.warnings.append(f"Could not count API keys: {e}")

    def _validate_structure(self, extraction_dir: Path, analysis: BackupAnalysis) -> None:
        for required in (METADATA_FILENAME,):
            if not (extraction_dir / required).exists():
                analysis.errors.append(f"Missing required file: {required}")

        if not (extraction_dir / DATABASE_DIR).is_dir():
            analysis.warnings.append("No database directory found")

        if analysis.errors:
            analysis.valid = False
