from fastapi import Request

from shorts_backend.domain.services.download_service import DownloadCoordinator
from shorts_backend.domain.services.job_service import ShortsJobService
from shorts_backend.infrastructure.persistence.in_memory_repo import SessionStore


def get_downloads(request: Request) -> DownloadCoordinator:
    return request.app.state.downloads


def get_jobs(request: Request) -> ShortsJobService:
    return request.app.state.jobs


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.sessions
