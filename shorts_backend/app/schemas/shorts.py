from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from shorts_backend.domain.models import JobPublication


class ClipIn(BaseModel):
    start: float = Field(ge=0)
    end: float = Field(gt=0)
    title: Optional[str] = None
    hook: Optional[str] = None
    reason: Optional[str] = None


class ShortCreateRequest(BaseModel):
    download_id: str
    session_id: str
    clip: ClipIn
    video_ref: Optional[str] = None
    video_title: str = ""


class ShortMetadata(BaseModel):
    video_ref: str
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    title: Optional[str] = None
    hook: Optional[str] = None
    reason: Optional[str] = None


class ShortDetail(BaseModel):
    job_id: str
    status: Literal["queued", "processing", "completed", "failed"]
    message: str
    share_url: Optional[str] = None
    metadata: ShortMetadata

    @classmethod
    def of(cls, publication: JobPublication) -> "ShortDetail":
        meta = publication.metadata
        return cls(
            job_id=publication.job_id,
            status=publication.status,
            message=publication.message,
            share_url=publication.share_url,
            metadata=ShortMetadata(
                video_ref=meta.video_ref,
                start_time=meta.start_time,
                end_time=meta.end_time,
                title=meta.title,
                hook=meta.hook,
                reason=meta.reason,
            ),
        )


class ShortList(BaseModel):
    jobs: List[ShortDetail] = []
