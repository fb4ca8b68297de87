"""
Shorts jobs: wait for a source download, cut one clip out of it and publish
the clip to YouTube.

Each job is driven by one background task. A user cancel flips the job to
cancelled right away; whatever the task is doing at that moment runs to its
end and its result is discarded.
"""
import asyncio
import logging
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from shorts_backend.config import Settings, get_settings
from shorts_backend.domain.errors import (
    DownloadNotFoundError,
    InvalidInputError,
    JobNotFoundError,
    is_abort,
)
from shorts_backend.domain.events import Listener, StatusBroadcaster, Unsubscribe
from shorts_backend.domain.models import (
    ClipSpec,
    JobPublication,
    JobStatus,
    JobStep,
    OAuthTokens,
    ShortJobRecord,
    UploadRequest,
    utcnow,
)
from shorts_backend.domain.services.download_service import DownloadCoordinator
from shorts_backend.infrastructure.content_store import LocalContentStore
from shorts_backend.infrastructure.ffmpeg_adapter import FfmpegTrimmer
from shorts_backend.infrastructure.persistence.in_memory_repo import (
    InMemoryRepository,
    SessionStore,
)
from shorts_backend.infrastructure.youtube_uploader import YouTubeUploader
from shorts_backend.logging_setup import bind

WORK_DIR_PREFIX = "shorts-job-"
DEFAULT_TAGS = ["shorts", "youtube", "clip"]

MSG_WAITING = "Waiting for source video download to finish…"
MSG_TRIMMING = "Trimming clip from source video…"
MSG_UPLOADING = "Uploading short to YouTube…"
MSG_COMPLETED = "Short uploaded successfully."
MSG_DOWNLOAD_INTERRUPTED = "Short creation cancelled because the download was interrupted."
MSG_CANCELLED_BY_USER = "Short creation cancelled by user."
MSG_SHUTDOWN = "Short creation cancelled because the service is shutting down."
MSG_DOWNLOAD_MISSING = "Associated video download could not be found."
MSG_FAILED = "Short creation failed."


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def coerce_clip(clip: Union[ClipSpec, Mapping[str, Any], None]) -> ClipSpec:
    """Accept a ClipSpec or a mapping with start/end (or startTime/endTime)."""
    if isinstance(clip, ClipSpec):
        start, end = clip.start, clip.end
        if _is_number(start) and _is_number(end):
            return clip
    elif isinstance(clip, Mapping):
        start = clip.get("start", clip.get("startTime"))
        end = clip.get("end", clip.get("endTime"))
        if _is_number(start) and _is_number(end):
            return ClipSpec(
                start=float(start),
                end=float(end),
                title=clip.get("title"),
                hook=clip.get("hook"),
                reason=clip.get("reason"),
            )
    raise InvalidInputError("clip with valid start and end times is required.")


class ShortsJobService:
    def __init__(
        self,
        downloads: DownloadCoordinator,
        store: LocalContentStore,
        trimmer: FfmpegTrimmer,
        uploader: YouTubeUploader,
        session_store: Optional[SessionStore] = None,
        repository: Optional[InMemoryRepository[ShortJobRecord]] = None,
        *,
        settings: Optional[Settings] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._downloads = downloads
        self._store = store
        self._trimmer = trimmer
        self._uploader = uploader
        self._sessions = session_store
        self._repo: InMemoryRepository[ShortJobRecord] = repository or InMemoryRepository()
        self._events: StatusBroadcaster[JobPublication] = StatusBroadcaster()
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}
        self.settings = settings or get_settings()
        self._logger = logger

    async def create_job(
        self,
        download_id: str,
        clip: Union[ClipSpec, Mapping[str, Any]],
        *,
        video_ref: Optional[str] = None,
        video_title: str = "",
        tokens: Union[OAuthTokens, Mapping[str, Any], None] = None,
        session_ref: Optional[str] = None,
    ) -> JobPublication:
        if not download_id:
            raise InvalidInputError("download_id is required to create a short job.")
        clip_spec = coerce_clip(clip)

        if not video_ref:
            download = self._downloads.get(download_id)
            video_ref = download.video_ref if download else ""
        if not isinstance(tokens, OAuthTokens):
            tokens = OAuthTokens.from_mapping(tokens)

        record = ShortJobRecord(
            id=str(uuid.uuid4()),
            download_id=download_id,
            video_ref=video_ref,
            clip=clip_spec,
            session_ref=session_ref,
            video_title=video_title or "",
            tokens=tokens,
        )
        self._repo.save(record)

        task = asyncio.create_task(self._run_job(record), name=f"short-job-{record.id}")
        self._tasks[record.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(record.id, None))

        self._log(record).info("Short job queued")
        return JobPublication.of(record)

    def get(self, job_id: str, session_ref: Optional[str] = None) -> Optional[JobPublication]:
        record = self._owned(job_id, session_ref)
        return JobPublication.of(record) if record else None

    def list_for_session(self, session_ref: str) -> List[JobPublication]:
        return [
            JobPublication.of(record)
            for record in self._repo.values()
            if record.session_ref == session_ref
        ]

    def subscribe(self, job_id: str, listener: Listener) -> Unsubscribe:
        if self._repo.get(job_id) is None:
            raise JobNotFoundError(job_id)
        return self._events.subscribe(job_id, listener)

    async def cancel(self, job_id: str, session_ref: Optional[str] = None) -> bool:
        """
        Cancel a job and its source download (the stored blob is kept).
        Returns False for unknown jobs or jobs of another session; a job that
        already finished is left as it is.
        """
        record = self._owned(job_id, session_ref)
        if record is None:
            return False
        if record.status.is_terminal:
            return True

        self._update(
            record,
            status=JobStatus.CANCELLED,
            step=JobStep.CANCELLED,
            message=MSG_CANCELLED_BY_USER,
        )
        self._log(record).info("Short job cancelled by user")
        await self._downloads.cancel(record.download_id, delete_blob=False)
        return True

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_job(self, record: ShortJobRecord) -> None:
        log = self._log(record)
        work_dir: Optional[Path] = None
        disposed = False

        async def dispose() -> None:
            nonlocal disposed
            if not disposed:
                disposed = True
                await self._dispose_artifacts(record, work_dir, log)

        try:
            self._update(
                record,
                status=JobStatus.PROCESSING,
                step=JobStep.WAITING_FOR_DOWNLOAD,
                message=MSG_WAITING,
            )
            if self._downloads.get(record.download_id) is None:
                raise DownloadNotFoundError(record.download_id, MSG_DOWNLOAD_MISSING)

            blob = await self._downloads.wait_for(record.download_id)
            if record.status.is_terminal:
                return

            work_dir = Path(await asyncio.to_thread(self._make_work_dir))
            source = await self._store.materialize_to_file(blob.blob_id, work_dir)
            if record.status.is_terminal:
                return

            self._update(record, step=JobStep.TRIMMING, message=MSG_TRIMMING)
            outputs = await self._trimmer.trim(
                source,
                [(record.clip.start, record.clip.end)],
                output_dir=self.settings.TRIM_OUTPUT_DIR,
                overwrite=True,
            )
            record.trimmed_path = str(outputs[0])
            if record.status.is_terminal:
                return

            self._update(record, step=JobStep.UPLOADING, message=MSG_UPLOADING)
            result = await self._uploader.upload(self._upload_request(record), record.tokens)
            if record.status.is_terminal:
                log.info("Discarding upload %s of a cancelled job", result.remote_id)
                return

            record.remote_id = result.remote_id
            await dispose()
            self._update(
                record,
                status=JobStatus.COMPLETED,
                step=JobStep.COMPLETED,
                message=MSG_COMPLETED,
            )
            log.info("Short job completed: video %s", result.remote_id)
            await self._persist_tokens(record, result.refreshed_tokens)
        except asyncio.CancelledError:
            await dispose()
            self._update(
                record,
                status=JobStatus.CANCELLED,
                step=JobStep.CANCELLED,
                message=MSG_SHUTDOWN,
            )
            raise
        except Exception as exc:
            await dispose()
            if is_abort(exc):
                log.warning("Short job cancelled: %s", exc)
                self._update(
                    record,
                    status=JobStatus.CANCELLED,
                    step=JobStep.ERROR,
                    message=MSG_DOWNLOAD_INTERRUPTED,
                    error=str(exc),
                )
            else:
                log.error("Short job failed: %s", exc, exc_info=True)
                self._update(
                    record,
                    status=JobStatus.FAILED,
                    step=JobStep.ERROR,
                    message=str(exc) or MSG_FAILED,
                    error=str(exc),
                )
        finally:
            await dispose()

    def _upload_request(self, record: ShortJobRecord) -> UploadRequest:
        clip = record.clip
        source_name = record.video_title or "video"
        if clip.reason:
            description = (
                f"{clip.reason}\n\nOriginal video: https://www.youtube.com/watch?v={record.video_ref}"
            )
        else:
            description = f"Auto-generated short from {source_name}."
        return UploadRequest(
            file_path=record.trimmed_path,
            title=clip.title if clip.title is not None else f"Short from {source_name}",
            description=description,
            tags=DEFAULT_TAGS + ([clip.hook] if clip.hook else []),
            privacy_status="private",
            made_for_kids=False,
        )

    def _make_work_dir(self) -> str:
        parent = self.settings.WORK_DIR
        if parent:
            Path(parent).mkdir(parents=True, exist_ok=True)
        return tempfile.mkdtemp(prefix=WORK_DIR_PREFIX, dir=parent)

    async def _dispose_artifacts(self, record: ShortJobRecord, work_dir: Optional[Path], log) -> None:
        trimmed = record.trimmed_path
        if trimmed:
            try:
                await asyncio.to_thread(Path(trimmed).unlink, True)
            except OSError as exc:
                log.warning("Failed to clean up trimmed file %s: %s", trimmed, exc)
            record.trimmed_path = None
        if work_dir is not None:
            try:
                await asyncio.to_thread(shutil.rmtree, work_dir)
            except FileNotFoundError:
                pass
            except OSError as exc:
                log.warning("Failed to clean up work dir %s: %s", work_dir, exc)

    async def _persist_tokens(self, record: ShortJobRecord, tokens: OAuthTokens) -> None:
        if self._sessions is None or not record.session_ref:
            return
        log = self._log(record)
        try:
            session = await self._sessions.get(record.session_ref)
            if session is None:
                log.warning("Unable to retrieve session for token update")
                return
            merged = dict(session.get("tokens") or {})
            merged.update({key: value for key, value in tokens.to_dict().items() if value is not None})
            session["tokens"] = merged
            await self._sessions.set(record.session_ref, session)
        except Exception as exc:  # noqa: BLE001 - the upload already succeeded
            log.warning("Failed to persist updated tokens to session store: %s", exc)

    def _owned(self, job_id: str, session_ref: Optional[str]) -> Optional[ShortJobRecord]:
        record = self._repo.get(job_id)
        if record is None:
            return None
        if session_ref and record.session_ref != session_ref:
            return None
        return record

    def _update(self, record: ShortJobRecord, **changes) -> None:
        if record.status.is_terminal:
            return
        for key, value in changes.items():
            setattr(record, key, value)
        record.updated_at = utcnow()
        self._repo.save(record)
        self._events.publish(record.id, JobPublication.of(record))

    def _log(self, record: ShortJobRecord):
        return bind(
            self._logger,
            __name__,
            job_id=record.id,
            download_id=record.download_id,
            video_ref=record.video_ref,
        )
