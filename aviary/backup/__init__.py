from .analyzer import BackupAnalyzer
from .exporter import BackupExporter
from .importer import BackupImportError, BackupImporter
from .models import BackupAnalysis, ExportMetadata, ExportOptions, ImportOptions
from .utils import ArchiveFormatError, UnsafeArchiveEntryError

__all__ = [
    "BackupAnalyzer",
    "BackupExporter",
    "BackupImporter",
    "BackupImportError",
    "BackupAnalysis",
    "ExportMetadata",
    "ExportOptions",
    "ImportOptions",
    "ArchiveFormatError",
    "UnsafeArchiveEntryError",
]
