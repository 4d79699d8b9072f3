from .models import (
    Base,
    User,
    APIKey,
    UserSession,
    FolderCache,
    Document,
    SystemSetting,
    LoginAttempt,
    BackupJob,
    RestoreUpload,
    RestoreExtractionJob,
)
from .session import Database
