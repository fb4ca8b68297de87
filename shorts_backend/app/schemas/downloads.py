from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from shorts_backend.domain.models import DownloadSnapshot, DownloadStatus


class DownloadCreateRequest(BaseModel):
    video_ref: str
    session_id: str


class DownloadStartedResponse(BaseModel):
    id: str
    status: DownloadStatus
    video_ref: str
    started_at: datetime


class DownloadDetail(BaseModel):
    id: str
    video_ref: str
    session_ref: str
    status: DownloadStatus
    blob_id: Optional[str] = None
    filename: Optional[str] = None
    length: Optional[int] = None
    error: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def of(cls, snapshot: DownloadSnapshot) -> "DownloadDetail":
        return cls(
            id=snapshot.id,
            video_ref=snapshot.video_ref,
            session_ref=snapshot.session_ref,
            status=snapshot.status,
            blob_id=snapshot.blob_id,
            filename=snapshot.filename,
            length=snapshot.length,
            error=snapshot.error,
            started_at=snapshot.started_at,
            completed_at=snapshot.completed_at,
        )
