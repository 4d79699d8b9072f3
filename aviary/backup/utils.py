"""Archive codec and file helpers for backup/restore operations."""

import asyncio
import gzip
import io
import json
import os
import shutil
import tarfile
import zlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional, Union

from .._utils import json_default, logger

METADATA_FILENAME = "metadata.json"
DATABASE_DIR = "database"
FILESYSTEM_DIR = "filesystem"
ARCHIVE_SUFFIXES = (".tar.gz", ".tgz")

COPY_BUFFER_SIZE = 1024 * 1024

ProgressCallback = Callable[[int, str], None]


class ArchiveFormatError(ValueError):
    """Archive is not a readable backup (bad gzip/tar or metadata)."""
    pass


class UnsafeArchiveEntryError(ArchiveFormatError):
    """An entry would be written outside the extraction directory."""

    def __init__(self, name: str):
        super().__init__(f"invalid file path in archive: {name}")
        self.name = name


def is_archive_filename(filename: str) -> bool:
    return filename.lower().endswith(ARCHIVE_SUFFIXES)


def generate_backup_filename(now: Optional[datetime] = None) -> str:
    """Backup filename in format aviary_backup_YYYYMMDD_HHMMSS.tar.gz"""
    now = now or datetime.now(timezone.utc)
    return f"aviary_backup_{now.strftime('%Y%m%d_%H%M%S')}.tar.gz"


class ProgressReader(io.RawIOBase):
    """Wrap a binary reader and report how far through it the consumer is."""

    def __init__(self, raw: BinaryIO, total_size: int, callback: Optional[ProgressCallback] = None):
        self.raw = raw
        self.total_size = max(total_size, 1)
        self.callback = callback
        self.bytes_read = 0
        self._last_percent = -1

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        data = self.raw.read(len(buffer))
        n = len(data)
        buffer[:n] = data
        self.bytes_read += n
        self._report()
        return n

    def _report(self) -> None:
        if self.callback is None:
            return
        percent = min(100, int(self.bytes_read * 100 / self.total_size))
        if percent != self._last_percent:
            self._last_percent = percent
            self.callback(percent, "Extracting archive...")


def _entry_name(member: tarfile.TarInfo) -> str:
    name = member.name
    while name.startswith("./"):
        name = name[2:]
    return name


def _safe_target(dest_root: Path, name: str) -> Path:
    """Resolve an entry name below `dest_root` or raise."""
    if not name or "\x00" in name:
        raise UnsafeArchiveEntryError(name)
    target = (dest_root / name).resolve()
    if target == dest_root or dest_root not in target.parents:
        raise UnsafeArchiveEntryError(name)
    return target


def extract_tar_gz(
    archive_path: Union[str, Path],
    dest_dir: Union[str, Path],
    progress_callback: Optional[ProgressCallback] = None,
) -> int:
    """Stream-extract a gzip/tar archive into `dest_dir`.

    Every entry is checked against `dest_dir` before anything is written for
    it. Regular files and directories are extracted; links and special files
    are skipped.

    Args:
        archive_path: Path to .tar.gz archive
        dest_dir: Directory to extract to (created if missing)
        progress_callback: Called with (percent, message) as compressed bytes are consumed

    Returns:
        Number of regular files written

    Raises:
        UnsafeArchiveEntryError: If an entry escapes `dest_dir`
        ArchiveFormatError: If the archive is not valid gzip/tar
    """
    archive_path = Path(archive_path)
    dest_root = Path(dest_dir)
    dest_root.mkdir(parents=True, exist_ok=True)
    dest_root = dest_root.resolve()

    total_size = archive_path.stat().st_size
    files_written = 0

    with open(archive_path, "rb") as raw:
        reader = io.BufferedReader(ProgressReader(raw, total_size, progress_callback), COPY_BUFFER_SIZE)
        try:
            with tarfile.open(fileobj=reader, mode="r|gz") as tar:
                for member in tar:
                    name = _entry_name(member)
                    if name in ("", "."):
                        continue
                    target = _safe_target(dest_root, name)

                    if member.isdir():
                        target.mkdir(parents=True, exist_ok=True)
                        os.chmod(target, (member.mode & 0o777) | 0o700)
                    elif member.isfile():
                        target.parent.mkdir(parents=True, exist_ok=True)
                        source = tar.extractfile(member)
                        with open(target, "wb") as out:
                            shutil.copyfileobj(source, out, COPY_BUFFER_SIZE)
                        os.chmod(target, member.mode & 0o777)
                        files_written += 1
                    else:
                        logger.debug(f"Skipping unsupported archive entry: {name}")
        except (tarfile.TarError, EOFError, gzip.BadGzipFile, zlib.error) as e:
            raise ArchiveFormatError(f"failed to read archive {archive_path.name}: {e}") from e

    if progress_callback is not None:
        progress_callback(100, "Extraction completed")
    return files_written


async def extract_archive(
    archive_path: Union[str, Path],
    dest_dir: Union[str, Path],
    progress_callback: Optional[ProgressCallback] = None,
) -> int:
    """Extract tar.gz archive to directory without blocking the event loop."""
    logger.info(f"Extracting archive: {archive_path} to {dest_dir}")
    files = await asyncio.to_thread(extract_tar_gz, archive_path, dest_dir, progress_callback)
    logger.info(f"Archive extracted successfully ({files} files)")
    return files


def create_tar_gz(source_dir: Union[str, Path], output_path: Union[str, Path]) -> int:
    """Write `source_dir` as a gzip/tar with ``metadata.json`` as the first entry.

    Returns:
        Size of created archive in bytes
    """
    source_dir = Path(source_dir)
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with tarfile.open(output_path, "w:gz") as tar:
        metadata_path = source_dir / METADATA_FILENAME
        if metadata_path.is_file():
            tar.add(metadata_path, arcname=METADATA_FILENAME, recursive=False)

        for dirpath, dirnames, filenames in os.walk(source_dir):
            dirnames.sort()
            current = Path(dirpath)
            relative_dir = current.relative_to(source_dir)
            if current != source_dir:
                tar.add(current, arcname=relative_dir.as_posix(), recursive=False)
            for filename in sorted(filenames):
                relative = (relative_dir / filename).as_posix()
                if relative == METADATA_FILENAME:
                    continue
                tar.add(current / filename, arcname=relative, recursive=False)

    return output_path.stat().st_size


async def create_archive(source_dir: Union[str, Path], output_path: Union[str, Path]) -> int:
    """Create tar.gz archive from directory.

    Args:
        source_dir: Directory to archive
        output_path: Output .tar.gz file path

    Returns:
        Size of created archive in bytes
    """
    logger.info(f"Creating archive: {output_path}")
    archive_size = await asyncio.to_thread(create_tar_gz, source_dir, output_path)
    logger.info(f"Archive created: {archive_size:,} bytes")
    return archive_size


def read_first_entry_json(archive_path: Union[str, Path], name: str = METADATA_FILENAME) -> Optional[Any]:
    """Decode the first real entry of an archive if it is `name`.

    AppleDouble ``._*`` entries are skipped. Only the archive head is read.

    Returns:
        The decoded JSON, or None if the first entry is something else
    """
    with tarfile.open(archive_path, mode="r|gz") as tar:
        for member in tar:
            entry = _entry_name(member)
            if entry in ("", ".") or Path(entry).name.startswith("._"):
                continue
            if entry != name or not member.isfile():
                logger.info(f"Archive uses old format (first file: {entry})")
                return None
            return json.load(tar.extractfile(member))
    return None


def write_json(path: Union[str, Path], data: Any) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, default=json_default)


def read_json(path: Union[str, Path]) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def count_json_records(path: Union[str, Path]) -> int:
    """Length of the JSON array at `path`; a missing file counts as 0."""
    path = Path(path)
    if not path.exists():
        return 0
    records = read_json(path)
    if not isinstance(records, list):
        raise ArchiveFormatError(f"{path.name} is not a JSON array")
    return len(records)

