"""FastAPI application factory and lifecycle"""

import time
from typing import Any, Dict, Optional

import psutil
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from megabridge import __version__
from megabridge.config import Settings, settings
from megabridge.database import DatabaseService
from megabridge.jobs.rate_limit_retry import retry_rate_limited_folders_job
from megabridge.middleware.error_handlers import register_error_handlers
from megabridge.middleware.request_logging import body_size_limit_middleware, request_logging_middleware
from megabridge.routes import folder
from megabridge.scheduler import SchedulerService
from megabridge.services.download_service import DownloadService
from megabridge.services.state_store import StateStore
from megabridge.sources.base import FolderSource
from megabridge.sources.mega import MegaSource
from megabridge.utils.logger import get_logger

logger = get_logger(__name__)

RETRY_JOB_ID = "retry_rate_limited"


def create_app(app_settings: Optional[Settings] = None, source: Optional[FolderSource] = None) -> FastAPI:
    """Build the application; services are created on startup and kept on app.state"""
    app_settings = app_settings or settings
    source = source or MegaSource(timeout_seconds=app_settings.source_timeout_seconds)

    app = FastAPI(
        title="mega-bridge",
        description="Background downloader for MEGA folder links",
        version=__version__,
    )
    app.state.settings = app_settings
    app.state.source = source
    app.state.started_at = None
    app.state.downloads = None
    app.state.database = None
    app.state.scheduler = None

    # Registered last runs first: logging wraps the size check
    app.middleware("http")(body_size_limit_middleware)
    app.middleware("http")(request_logging_middleware)
    register_error_handlers(app)

    app.include_router(folder.router)

    @app.on_event("startup")
    async def startup_event():
        """Initialize services on startup"""
        app.state.started_at = time.time()
        logger.info(
            f"Starting mega-bridge v{__version__}",
            environment=app_settings.environment,
            max_concurrent=app_settings.max_concurrent,
            download_dir=app_settings.download_dir,
        )

        app_settings.ensure_directories()

        database = DatabaseService(app_settings.database_url)
        database.initialize()
        app.state.database = database

        store = StateStore(database)
        downloads = DownloadService(app_settings, store, source)
        app.state.downloads = downloads

        scheduler = SchedulerService()
        scheduler.initialize()
        scheduler.start()
        app.state.scheduler = scheduler

        # Resumed jobs are queued before the server accepts new folders
        await _resume_and_schedule(downloads, scheduler, app_settings)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown"""
        logger.info("Shutting down mega-bridge")

        if app.state.scheduler:
            app.state.scheduler.stop()

        if app.state.downloads:
            app.state.downloads.shutdown()

        try:
            await source.close()
        except Exception as e:
            logger.error(f"Error closing remote source: {e}")

        if app.state.database:
            app.state.database.close()

    @app.get("/health")
    async def health_check(request: Request) -> Dict[str, Any]:
        """Liveness check with process uptime, memory and database status"""
        started_at = request.app.state.started_at
        uptime = (time.time() - started_at) if started_at else 0
        rss = psutil.Process().memory_info().rss

        database = request.app.state.database
        database_ok = await database.health_check() if database else False

        checks: Dict[str, Any] = {
            "status": "ok" if database_ok else "error",
            "uptime": uptime,
            "memoryMB": round(rss / 1024 / 1024),
            "database": database_ok,
        }

        if not database_ok:
            logger.warning("Health check failed", checks=checks)
            return JSONResponse(status_code=503, content=checks)
        return checks

    return app


async def _resume_and_schedule(downloads: DownloadService, scheduler: SchedulerService, app_settings: Settings):
    """Re-queue interrupted work, then start the periodic rate-limit sweep"""
    try:
        queued = await downloads.resume_downloads()
        logger.info("Resume complete", queued=queued)
    except Exception as e:
        logger.error(f"Failed to resume downloads: {e}", exc_info=True)

    scheduler.add_interval_job(
        retry_rate_limited_folders_job,
        minutes=app_settings.retry_interval_minutes,
        job_id=RETRY_JOB_ID,
        args=[downloads],
    )
    logger.debug("Rate-limit retry job scheduled", minutes=app_settings.retry_interval_minutes)
