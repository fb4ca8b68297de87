from fastapi import APIRouter, Depends, HTTPException

from shorts_backend.app.api.deps import get_jobs, get_session_store
from shorts_backend.app.schemas.shorts import ShortCreateRequest, ShortDetail, ShortList
from shorts_backend.domain.services.job_service import ShortsJobService
from shorts_backend.infrastructure.persistence.in_memory_repo import SessionStore

router = APIRouter(prefix="/api/shorts", tags=["shorts"])


@router.post("", response_model=ShortDetail, status_code=202)
async def create_short(
    body: ShortCreateRequest,
    jobs: ShortsJobService = Depends(get_jobs),
    sessions: SessionStore = Depends(get_session_store),
):
    """
    Queue a short: wait for the download, trim the clip and upload it to
    YouTube with the OAuth tokens stored in the caller's session.
    """
    session = await sessions.get(body.session_id) or {}
    publication = await jobs.create_job(
        body.download_id,
        body.clip.model_dump(),
        video_ref=body.video_ref,
        video_title=body.video_title,
        tokens=session.get("tokens"),
        session_ref=body.session_id,
    )
    return ShortDetail.of(publication)


@router.get("", response_model=ShortList)
async def list_shorts(session_id: str, jobs: ShortsJobService = Depends(get_jobs)):
    return ShortList(jobs=[ShortDetail.of(p) for p in jobs.list_for_session(session_id)])


@router.get("/{job_id}", response_model=ShortDetail)
async def get_short(
    job_id: str,
    session_id: str | None = None,
    jobs: ShortsJobService = Depends(get_jobs),
):
    publication = jobs.get(job_id, session_id)
    if publication is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return ShortDetail.of(publication)


@router.delete("/{job_id}", response_model=ShortDetail)
async def cancel_short(
    job_id: str,
    session_id: str | None = None,
    jobs: ShortsJobService = Depends(get_jobs),
):
    if not await jobs.cancel(job_id, session_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return ShortDetail.of(jobs.get(job_id, session_id))
