"""Configuration management for aviary."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


DEFAULT_DATA_DIR = "/data"


@dataclass(frozen=True)
class StorageConfig:
    """Object storage backend configuration."""
    backend: str = "filesystem"  # filesystem, s3
    data_dir: str = DEFAULT_DATA_DIR
    s3_bucket: Optional[str] = None
    s3_region: Optional[str] = None
    s3_endpoint: Optional[str] = None
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    s3_force_path_style: bool = False
    s3_multipart_chunksize: int = 5 * 1024 * 1024
    s3_max_concurrency: int = 5

    @classmethod
    def from_env(cls) -> 'StorageConfig':
        """Create config from environment variables."""
        return cls(
            backend=os.getenv("STORAGE_BACKEND", "filesystem").lower(),
            data_dir=os.getenv("DATA_DIR", DEFAULT_DATA_DIR),
            s3_bucket=os.getenv("S3_BUCKET") or None,
            s3_region=os.getenv("S3_REGION") or None,
            s3_endpoint=os.getenv("S3_ENDPOINT") or None,
            s3_access_key_id=os.getenv("S3_ACCESS_KEY_ID") or None,
            s3_secret_access_key=os.getenv("S3_SECRET_ACCESS_KEY") or None,
            s3_force_path_style=os.getenv("S3_FORCE_PATH_STYLE", "false").lower() == "true",
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.backend not in ("filesystem", "s3"):
            raise ValueError(f"Unknown storage backend: {self.backend}")
        if self.s3_multipart_chunksize < 5 * 1024 * 1024:
            raise ValueError(f"s3_multipart_chunksize must be at least 5 MiB, got {self.s3_multipart_chunksize}")
        if self.s3_max_concurrency <= 0:
            raise ValueError(f"s3_max_concurrency must be positive, got {self.s3_max_concurrency}")

    @property
    def storage_root(self) -> Path:
        """Root directory of the filesystem backend."""
        return Path(self.data_dir)


@dataclass(frozen=True)
class DatabaseConfig:
    """Relational store configuration."""
    db_type: str = "sqlite"  # sqlite, postgres
    host: str = "localhost"
    port: int = 5432
    user: str = "aviary"
    password: str = ""
    name: str = "aviary"
    ssl_mode: str = "disable"
    data_dir: str = DEFAULT_DATA_DIR
    echo: bool = False

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Create config from environment variables."""
        return cls(
            db_type=os.getenv("DB_TYPE", "sqlite").lower(),
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            user=os.getenv("DB_USER", "aviary"),
            password=os.getenv("DB_PASSWORD", ""),
            name=os.getenv("DB_NAME", "aviary"),
            ssl_mode=os.getenv("DB_SSLMODE", "disable"),
            data_dir=os.getenv("DATA_DIR", DEFAULT_DATA_DIR),
            echo=os.getenv("DB_ECHO", "false").lower() == "true",
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.db_type not in ("sqlite", "postgres"):
            raise ValueError(f"Unknown database type: {self.db_type}")
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be between 1 and 65535, got {self.port}")

    @property
    def url(self) -> str:
        if self.db_type == "sqlite":
            return f"sqlite+aiosqlite:///{Path(self.data_dir) / 'aviary.db'}"
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"


@dataclass(frozen=True)
class WorkerConfig:
    """Background worker timing configuration (seconds unless noted)."""
    backup_poll_interval: float = 5.0
    backup_idle_polls: int = 6
    extraction_poll_interval: float = 2.0
    extraction_idle_polls: int = 15
    cleanup_interval: float = 3600.0
    extraction_wait_timeout: float = 300.0
    extraction_wait_poll: float = 1.0
    retention_hours: int = 24

    @classmethod
    def from_env(cls) -> 'WorkerConfig':
        """Create config from environment variables."""
        return cls(
            backup_poll_interval=float(os.getenv("BACKUP_POLL_INTERVAL", "5")),
            backup_idle_polls=int(os.getenv("BACKUP_IDLE_POLLS", "6")),
            extraction_poll_interval=float(os.getenv("EXTRACTION_POLL_INTERVAL", "2")),
            extraction_idle_polls=int(os.getenv("EXTRACTION_IDLE_POLLS", "15")),
            cleanup_interval=float(os.getenv("CLEANUP_INTERVAL", "3600")),
            extraction_wait_timeout=float(os.getenv("EXTRACTION_WAIT_TIMEOUT", "300")),
            extraction_wait_poll=float(os.getenv("EXTRACTION_WAIT_POLL", "1")),
            retention_hours=int(os.getenv("BACKUP_RETENTION_HOURS", "24")),
        )

    def __post_init__(self):
        """Validate configuration."""
        for name in ("backup_poll_interval", "extraction_poll_interval", "cleanup_interval", "extraction_wait_poll"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        if self.extraction_wait_timeout < 0:
            raise ValueError(f"extraction_wait_timeout must be non-negative, got {self.extraction_wait_timeout}")
        if self.retention_hours <= 0:
            raise ValueError(f"retention_hours must be positive, got {self.retention_hours}")


@dataclass(frozen=True)
class AviaryConfig:
    """Main aviary configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    data_dir: str = DEFAULT_DATA_DIR

    @classmethod
    def from_env(cls) -> 'AviaryConfig':
        """Create complete config from environment variables."""
        return cls(
            storage=StorageConfig.from_env(),
            database=DatabaseConfig.from_env(),
            workers=WorkerConfig.from_env(),
            data_dir=os.getenv("DATA_DIR", DEFAULT_DATA_DIR),
        )

    @property
    def temp_dir(self) -> Path:
        return Path(self.data_dir) / "temp"

    @property
    def extractions_dir(self) -> Path:
        return self.temp_dir / "extractions"

    @property
    def uploads_dir(self) -> Path:
        return self.temp_dir / "uploads"

    @property
    def staging_dir(self) -> Path:
        """Local scratch space for archives being built or imported."""
        return self.temp_dir / "staging"
