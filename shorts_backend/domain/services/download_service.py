"""
Registry and lifecycle authority for source-video downloads.

Every download runs as one background task that is the only writer of its
record; callers get snapshots and can await, cancel or subscribe by id.
"""
import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Protocol

from shorts_backend.domain.cancellation import CancellationToken
from shorts_backend.domain.errors import (
    DownloadAbortedError,
    DownloadFailedError,
    DownloadNotFoundError,
    InvalidInputError,
)
from shorts_backend.domain.events import Listener, StatusBroadcaster, Unsubscribe
from shorts_backend.domain.models import (
    DownloadRecord,
    DownloadSnapshot,
    DownloadStarted,
    DownloadStatus,
    StoredBlob,
    utcnow,
)
from shorts_backend.infrastructure.content_store import LocalContentStore
from shorts_backend.infrastructure.persistence.in_memory_repo import InMemoryRepository
from shorts_backend.logging_setup import bind


class Downloader(Protocol):
    async def download(
        self,
        video_ref: str,
        *,
        cancel_token: Optional[CancellationToken] = None,
        download_id: Optional[str] = None,
    ) -> StoredBlob:
        ...


class DownloadCoordinator:
    def __init__(
        self,
        downloader: Downloader,
        store: LocalContentStore,
        repository: Optional[InMemoryRepository[DownloadRecord]] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._downloader = downloader
        self._store = store
        self._repo: InMemoryRepository[DownloadRecord] = repository or InMemoryRepository()
        self._events: StatusBroadcaster[DownloadSnapshot] = StatusBroadcaster()
        # kept after settling so wait_for can replay the outcome; lives as
        # long as the records, which are never evicted either
        self._tasks: Dict[str, "asyncio.Task[StoredBlob]"] = {}
        self._logger = logger

    async def start(self, video_ref: str, session_ref: str) -> DownloadStarted:
        """Register a download and launch it in the background; does not wait for it."""
        if not session_ref:
            raise InvalidInputError("session_ref is required to start a download.")
        video_ref = (video_ref or "").strip()
        if not video_ref:
            raise InvalidInputError("video_ref is required to start a download.")

        record = DownloadRecord(id=str(uuid.uuid4()), video_ref=video_ref, session_ref=session_ref)
        self._repo.save(record)
        self._events.publish(record.id, DownloadSnapshot.of(record))

        self._update(record, status=DownloadStatus.DOWNLOADING)
        task = asyncio.create_task(self._run(record), name=f"download-{record.id}")
        task.add_done_callback(_consume_result)
        self._tasks[record.id] = task

        self._log(record).info("Download started")
        return DownloadStarted(
            id=record.id,
            status=record.status,
            video_ref=record.video_ref,
            started_at=record.started_at,
        )

    def get(self, download_id: str) -> Optional[DownloadSnapshot]:
        record = self._repo.get(download_id)
        return DownloadSnapshot.of(record) if record else None

    async def wait_for(self, download_id: str) -> StoredBlob:
        """
        Resolve with the stored blob once the download completes.

        Raises DownloadAbortedError if it was cancelled, DownloadFailedError
        (chaining the underlying error) if it failed. Cancelling the waiter
        never cancels the download itself.
        """
        task = self._tasks.get(download_id)
        if task is None:
            raise DownloadNotFoundError(download_id)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise DownloadAbortedError("Download task cancelled") from None
            raise

    async def cancel(self, download_id: str, *, delete_blob: bool = False) -> bool:
        """
        Cancel a running download and wait for it to settle. On a finished
        download this only deletes the stored blob, and only if asked to.
        Returns False for unknown ids.
        """
        record = self._repo.get(download_id)
        if record is None:
            return False

        if not record.status.is_terminal:
            record.cancel_token.cancel()
            try:
                await self.wait_for(download_id)
            except DownloadAbortedError:
                pass
            except DownloadFailedError as exc:
                self._log(record).error(
                    "Download cancellation encountered an error: %s", exc.__cause__ or exc
                )

        if delete_blob:
            await self._delete_blob(record)
        return True

    async def delete_blob(self, download_id: str) -> bool:
        record = self._repo.get(download_id)
        if record is None or not record.blob_id:
            return False
        return await self._delete_blob(record)

    def subscribe(self, download_id: str, listener: Listener) -> Unsubscribe:
        if self._repo.get(download_id) is None:
            raise DownloadNotFoundError(download_id)
        return self._events.subscribe(download_id, listener)

    def active_for_session(self, session_ref: str) -> Optional[DownloadSnapshot]:
        """Most recent download of a session that is still running or holds a blob."""
        if not session_ref:
            return None
        candidates = [
            record
            for record in self._repo.values()
            if record.session_ref == session_ref
            and (not record.status.is_terminal or record.blob_id)
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda record: record.started_at)
        return DownloadSnapshot.of(latest)

    def list_for_session(self, session_ref: str) -> List[DownloadSnapshot]:
        return [
            DownloadSnapshot.of(record)
            for record in self._repo.values()
            if record.session_ref == session_ref
        ]

    async def shutdown(self) -> None:
        """Cancel every in-flight download and wait for the tasks to finish."""
        in_flight = []
        for record in self._repo.values():
            if not record.status.is_terminal:
                record.cancel_token.cancel()
            task = self._tasks.get(record.id)
            if task is not None and not task.done():
                in_flight.append(task)
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)

    async def _run(self, record: DownloadRecord) -> StoredBlob:
        try:
            blob = await self._downloader.download(
                record.video_ref,
                cancel_token=record.cancel_token,
                download_id=record.id,
            )
        except (DownloadAbortedError, asyncio.CancelledError):
            self._update(
                record,
                status=DownloadStatus.CANCELLED,
                error="Download cancelled",
                completed_at=utcnow(),
            )
            raise
        except Exception as exc:
            self._log(record).error("Download failed: %s", exc)
            self._update(
                record,
                status=DownloadStatus.FAILED,
                error=str(exc),
                completed_at=utcnow(),
            )
            raise DownloadFailedError(record.video_ref) from exc

        if record.cancel_token.cancelled:
            # cancel landed after the downloader's last check; it still wins
            await self._store.delete(blob.blob_id)
            self._update(
                record,
                status=DownloadStatus.CANCELLED,
                error="Download cancelled",
                completed_at=utcnow(),
            )
            raise DownloadAbortedError()

        self._update(
            record,
            status=DownloadStatus.COMPLETED,
            blob_id=blob.blob_id,
            filename=blob.name,
            length=blob.length,
            completed_at=utcnow(),
        )
        return blob

    async def _delete_blob(self, record: DownloadRecord) -> bool:
        if not record.blob_id:
            return False
        await self._store.delete(record.blob_id)
        self._log(record).info("Deleted stored blob %s", record.blob_id)
        self._update(record, blob_id=None, filename=None, length=None)
        return True

    def _update(self, record: DownloadRecord, **changes) -> None:
        # status is frozen once terminal
        if record.status.is_terminal:
            changes.pop("status", None)
            changes.pop("error", None)
        for key, value in changes.items():
            setattr(record, key, value)
        record.updated_at = utcnow()
        self._repo.save(record)
        self._events.publish(record.id, DownloadSnapshot.of(record))

    def _log(self, record: DownloadRecord):
        return bind(
            self._logger,
            __name__,
            download_id=record.id,
            video_ref=record.video_ref,
            session_ref=record.session_ref,
        )


def _consume_result(task: "asyncio.Task[StoredBlob]") -> None:
    # results are delivered through wait_for; keep unawaited failures quiet
    if not task.cancelled():
        task.exception()
