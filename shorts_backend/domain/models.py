from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from shorts_backend.domain.cancellation import CancellationToken


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DownloadStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DownloadStatus.COMPLETED, DownloadStatus.CANCELLED, DownloadStatus.FAILED)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    @property
    def public(self) -> str:
        """Status as seen by API consumers; cancelled folds into failed."""
        if self is JobStatus.CANCELLED:
            return JobStatus.FAILED.value
        return self.value


class JobStep(str, Enum):
    QUEUED = "queued"
    WAITING_FOR_DOWNLOAD = "waiting_for_download"
    TRIMMING = "trimming"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class ClipSpec:
    start: float
    end: float
    title: Optional[str] = None
    hook: Optional[str] = None
    reason: Optional[str] = None

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class StoredBlob:
    blob_id: str
    name: str
    length: int
    content_type: str = "video/mp4"
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class OAuthTokens:
    """Opaque credential bag handed to the uploader and written back to the session."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    expiry_date: Optional[int] = None  # epoch milliseconds
    id_token: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "OAuthTokens":
        """Accepts both snake_case and the camelCase keys older sessions carry."""
        data = data or {}

        def pick(snake: str, camel: str) -> Any:
            value = data.get(snake)
            return value if value is not None else data.get(camel)

        expiry = pick("expiry_date", "expiryDate")
        if isinstance(expiry, datetime):
            expiry = int(expiry.timestamp() * 1000)
        elif expiry is not None:
            expiry = int(expiry)

        return cls(
            access_token=pick("access_token", "accessToken"),
            refresh_token=pick("refresh_token", "refreshToken"),
            scope=pick("scope", "scope"),
            token_type=pick("token_type", "tokenType"),
            expiry_date=expiry,
            id_token=pick("id_token", "idToken"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
            "token_type": self.token_type,
            "expiry_date": self.expiry_date,
            "id_token": self.id_token,
        }


@dataclass
class DownloadRecord:
    id: str
    video_ref: str
    session_ref: str
    status: DownloadStatus = DownloadStatus.PENDING
    blob_id: Optional[str] = None
    filename: Optional[str] = None
    length: Optional[int] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)
    cancel_token: CancellationToken = field(default_factory=CancellationToken, repr=False)


@dataclass(frozen=True)
class DownloadStarted:
    id: str
    status: DownloadStatus
    video_ref: str
    started_at: datetime


@dataclass(frozen=True)
class DownloadSnapshot:
    id: str
    video_ref: str
    session_ref: str
    status: DownloadStatus
    blob_id: Optional[str]
    filename: Optional[str]
    length: Optional[int]
    error: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]

    @classmethod
    def of(cls, record: DownloadRecord) -> "DownloadSnapshot":
        return cls(
            id=record.id,
            video_ref=record.video_ref,
            session_ref=record.session_ref,
            status=record.status,
            blob_id=record.blob_id,
            filename=record.filename,
            length=record.length,
            error=record.error,
            started_at=record.started_at,
            completed_at=record.completed_at,
        )


@dataclass(frozen=True)
class UploadRequest:
    file_path: str
    title: Optional[str] = None
    description: str = ""
    tags: List[str] = field(default_factory=list)
    privacy_status: str = "private"
    made_for_kids: bool = False
    default_language: Optional[str] = None
    category_id: str = "22"
    notify_subscribers: bool = False


@dataclass(frozen=True)
class UploadResult:
    remote_id: str
    refreshed_tokens: OAuthTokens
    response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ShortJobRecord:
    id: str
    download_id: str
    video_ref: str
    clip: ClipSpec
    session_ref: Optional[str] = None
    video_title: str = ""
    tokens: OAuthTokens = field(default_factory=OAuthTokens, repr=False)
    status: JobStatus = JobStatus.QUEUED
    step: JobStep = JobStep.QUEUED
    message: str = "Short creation queued."
    trimmed_path: Optional[str] = None
    remote_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PublicationMetadata:
    video_ref: str
    start_time: Optional[float]
    end_time: Optional[float]
    title: Optional[str]
    hook: Optional[str]
    reason: Optional[str]


@dataclass(frozen=True)
class JobPublication:
    job_id: str
    status: str
    message: str
    metadata: PublicationMetadata
    share_url: Optional[str] = None

    @classmethod
    def of(cls, record: ShortJobRecord) -> "JobPublication":
        share_url = (
            f"https://www.youtube.com/watch?v={record.remote_id}" if record.remote_id else None
        )
        return cls(
            job_id=record.id,
            status=record.status.public,
            message=record.message,
            share_url=share_url,
            metadata=PublicationMetadata(
                video_ref=record.video_ref,
                start_time=record.clip.start,
                end_time=record.clip.end,
                title=record.clip.title,
                hook=record.clip.hook,
                reason=record.clip.reason,
            ),
        )
