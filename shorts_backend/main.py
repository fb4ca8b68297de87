import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shorts_backend.app.api import routes_downloads, routes_shorts
from shorts_backend.config import Settings, get_settings
from shorts_backend.domain.errors import InvalidInputError, NotFoundError
from shorts_backend.domain.services.download_service import DownloadCoordinator
from shorts_backend.domain.services.job_service import ShortsJobService
from shorts_backend.infrastructure.content_store import LocalContentStore
from shorts_backend.infrastructure.downloaders import YtDlpDownloader
from shorts_backend.infrastructure.ffmpeg_adapter import FfmpegTrimmer
from shorts_backend.infrastructure.persistence.in_memory_repo import (
    InMemorySessionStore,
    SessionStore,
)
from shorts_backend.infrastructure.youtube_uploader import YouTubeUploader
from shorts_backend.logging_setup import LOGGER_NAME, setup_logging

logger = logging.getLogger("uvicorn.access")


@dataclass
class Services:
    downloads: DownloadCoordinator
    jobs: ShortsJobService
    sessions: SessionStore


def build_services(settings: Settings) -> Services:
    service_logger = logging.getLogger(LOGGER_NAME)
    store = LocalContentStore(settings.BLOB_STORE_DIR)
    downloads = DownloadCoordinator(
        YtDlpDownloader(store, settings, logger=service_logger),
        store,
        logger=service_logger,
    )
    sessions = InMemorySessionStore()
    jobs = ShortsJobService(
        downloads,
        store,
        FfmpegTrimmer(settings, logger=service_logger),
        YouTubeUploader(settings, logger=service_logger),
        sessions,
        settings=settings,
        logger=service_logger,
    )
    return Services(downloads=downloads, jobs=jobs, sessions=sessions)


class LogRequestsMiddleware(BaseHTTPMiddleware):
    """Log when a request is received, before the handler runs."""

    async def dispatch(self, request, call_next):
        logger.info("Request started: %s %s", request.method, request.url.path)
        return await call_next(request)


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not hasattr(app.state, "jobs"):
            setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
            _install(app, build_services(settings))
        yield
        # jobs first: they hold waiters on downloads
        await app.state.jobs.shutdown()
        await app.state.downloads.shutdown()

    app = FastAPI(title="Shorts API", version="0.1.0", lifespan=lifespan)
    if services is not None:
        _install(app, services)

    app.add_middleware(LogRequestsMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InvalidInputError)
    async def invalid_input(request: Request, exc: InvalidInputError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    app.include_router(routes_downloads.router)
    app.include_router(routes_shorts.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def _install(app: FastAPI, services: Services) -> None:
    app.state.downloads = services.downloads
    app.state.jobs = services.jobs
    app.state.sessions = services.sessions


app = create_app()
