from .scheduler import JobScheduler, PeriodicTask, PollingWorker
from .backup_worker import BackupJobStore, BackupWorker
from .extraction_worker import ExtractionJobStore, ExtractionWorker

__all__ = [
    "JobScheduler",
    "PeriodicTask",
    "PollingWorker",
    "BackupJobStore",
    "BackupWorker",
    "ExtractionJobStore",
    "ExtractionWorker",
]
