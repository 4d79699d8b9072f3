"""FastAPI application for the Aviary backup and restore API."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import sys
import os

from aviary import __version__
from aviary._storage import StorageFactory
from aviary.backup.manager import BackupManager
from aviary.config import AviaryConfig
from aviary.database import Database
from aviary.jobs import JobScheduler
from .config import settings
from .routers import backup, restore

# App-managed pattern: attach our own handler and don't propagate
# This makes us independent of uvicorn's root logger configuration
aviary_logger = logging.getLogger("aviary")
aviary_logger.setLevel(logging.INFO)
aviary_logger.propagate = False
aviary_logger.handlers.clear()

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.INFO)
formatter = logging.Formatter(
    '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
console_handler.setFormatter(formatter)
aviary_logger.addHandler(console_handler)

# Allow disabling app-managed logging via env var for production
if os.getenv("DISABLE_APP_LOGGING", "false").lower() == "true":
    aviary_logger.handlers.clear()
    aviary_logger.propagate = True  # Fall back to server-managed pattern

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage database, storage and background worker lifecycle."""
    logger.info(f"Initializing Aviary backup service {__version__}...")

    config = AviaryConfig.from_env()

    try:
        db = Database.from_config(config.database)
        await db.run_migrations("STARTUP")
        storage = StorageFactory.create(config.storage)
        if config.storage.backend == "s3":
            await storage.check_bucket()
    except Exception as e:
        logger.error(f"Failed to initialize backup service: {e}")
        raise

    scheduler = JobScheduler()
    manager = BackupManager(db, storage, scheduler, config)
    app.state.config = config
    app.state.db = db
    app.state.storage = storage
    app.state.scheduler = scheduler
    app.state.backup_manager = manager

    # Cleanup runs for the life of the process; job workers start on demand
    scheduler.start(names=["cleanup"])
    # Pick up jobs left pending by a previous process
    scheduler.ensure_running("backup")
    scheduler.ensure_running("extraction")
    logger.info("Backup service initialized successfully")

    yield

    logger.info("Shutting down backup service...")
    await scheduler.stop()
    await storage.close()
    await db.close()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(backup.router, prefix=settings.api_prefix)
    app.include_router(restore.router, prefix=settings.api_prefix)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": settings.api_title,
            "version": settings.api_version,
            "docs": f"{settings.api_prefix}/docs"
        }

    return app


# Create default app instance
app = create_app()
