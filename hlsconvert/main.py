"""HLS playlist converter - FastAPI application."""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from hlsconvert.config import Settings, settings as default_settings
from hlsconvert.api.v1.router import v1_router, convert_router_compat
from hlsconvert.api.v1.health import router as health_root_router
from hlsconvert.api.v1 import jobs as jobs_api
from hlsconvert.core.exceptions import install_exception_handlers
from hlsconvert.core.logging import get_logger, setup_logging
from hlsconvert.jobs.runner import ProcessRunner
from hlsconvert.jobs.scheduler import JobScheduler
from hlsconvert.jobs.store import JobStore
from hlsconvert.storage.artifacts import ArtifactManager
from hlsconvert.storage.backends import ArtifactBackend

logger = get_logger(__name__)


def build_scheduler(
    settings: Settings,
    runner=None,
    backend: Optional[ArtifactBackend] = None,
) -> JobScheduler:
    """Wire store, runner and artifact manager into a scheduler."""
    artifacts = ArtifactManager.from_settings(settings, backend=backend)
    store = JobStore(reserve_path=artifacts.reserve_path)
    return JobScheduler(
        store=store,
        runner=runner or ProcessRunner.from_settings(settings),
        artifacts=artifacts,
        max_concurrent=settings.max_concurrent_jobs,
        sweep_interval_seconds=settings.sweep_interval_seconds,
    )


def create_app(
    settings: Optional[Settings] = None,
    runner=None,
    backend: Optional[ArtifactBackend] = None,
) -> FastAPI:
    settings = settings or default_settings
    scheduler = build_scheduler(settings, runner=runner, backend=backend)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        logger.info(
            "Starting converter",
            port=settings.port,
            storage_backend=settings.storage_backend,
            downloads_dir=settings.downloads_dir,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            ffmpeg_path=scheduler.runner.ffmpeg_path,
        )
        await scheduler.start()
        jobs_api.set_dispatcher(scheduler)

        yield

        logger.info("Shutting down converter")
        await scheduler.stop()
        await scheduler.sweep()

    app = FastAPI(
        title="HLS Converter",
        description="Remux HLS playlists into downloadable files with ffmpeg",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.scheduler = scheduler
    install_exception_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_root_router, tags=["health"])  # GET /health at root
    app.include_router(v1_router)  # All /api/v1/* endpoints
    app.include_router(convert_router_compat)  # POST /api/convert-m3u8

    if settings.storage_backend == "local":
        app.mount(
            settings.public_downloads_path,
            StaticFiles(directory=settings.downloads_dir),
            name="downloads",
        )

    return app


def run() -> None:
    setup_logging(default_settings.log_level, json_format=default_settings.log_json)
    uvicorn.run(
        "hlsconvert.main:create_app",
        factory=True,
        host=default_settings.host,
        port=default_settings.port,
        reload=False,
    )


if __name__ == "__main__":
    run()
