from fastapi import APIRouter, Depends, HTTPException

from shorts_backend.app.api.deps import get_downloads
from shorts_backend.app.schemas.downloads import (
    DownloadCreateRequest,
    DownloadDetail,
    DownloadStartedResponse,
)
from shorts_backend.domain.services.download_service import DownloadCoordinator

router = APIRouter(prefix="/api/downloads", tags=["downloads"])


@router.post("", response_model=DownloadStartedResponse, status_code=202)
async def start_download(
    body: DownloadCreateRequest,
    downloads: DownloadCoordinator = Depends(get_downloads),
):
    """
    Start downloading a source video in the background. Poll the returned id
    until it is completed before creating shorts from it.
    """
    started = await downloads.start(body.video_ref, body.session_id)
    return DownloadStartedResponse(
        id=started.id,
        status=started.status,
        video_ref=started.video_ref,
        started_at=started.started_at,
    )


@router.get("/{download_id}", response_model=DownloadDetail)
async def get_download(download_id: str, downloads: DownloadCoordinator = Depends(get_downloads)):
    snapshot = downloads.get(download_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Download not found")
    return DownloadDetail.of(snapshot)


@router.delete("/{download_id}", response_model=DownloadDetail)
async def cancel_download(
    download_id: str,
    delete_blob: bool = False,
    downloads: DownloadCoordinator = Depends(get_downloads),
):
    """Cancel a running download; with delete_blob=true also drop the stored video."""
    if not await downloads.cancel(download_id, delete_blob=delete_blob):
        raise HTTPException(status_code=404, detail="Download not found")
    return DownloadDetail.of(downloads.get(download_id))
