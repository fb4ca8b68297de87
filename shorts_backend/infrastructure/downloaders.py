"""
Download source videos from YouTube with yt-dlp, streaming straight into the
content store.

yt-dlp runs as a child process writing the media to stdout, so the video is
never buffered whole in memory and the download can be killed mid-flight.

If YouTube asks to "sign in to confirm you're not a bot" (common on
datacenter IPs), set YT_COOKIES_FILE to a Netscape-format cookies file
exported from your browser.
"""
import asyncio
import logging
import re
import sys
import time
from asyncio.subprocess import PIPE, Process
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional, Sequence

from shorts_backend.config import Settings, get_settings
from shorts_backend.domain.cancellation import CancellationToken
from shorts_backend.domain.errors import (
    DownloadAbortedError,
    InvalidInputError,
    ProcessFailureError,
    StorageError,
)
from shorts_backend.domain.models import StoredBlob
from shorts_backend.infrastructure.content_store import BlobUpload, LocalContentStore
from shorts_backend.logging_setup import ContextAdapter, bind

STDERR_TAIL_LINES = 20
_VIDEO_REF_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def build_watch_url(video_ref: str) -> str:
    """Accept a bare video id or a full URL; bare ids become watch URLs."""
    ref = (video_ref or "").strip()
    if not ref:
        raise InvalidInputError("video_ref is required")
    if ref.startswith(("http://", "https://")):
        return ref
    if not _VIDEO_REF_RE.match(ref):
        raise InvalidInputError(f"Invalid video reference: {video_ref!r}")
    return f"https://www.youtube.com/watch?v={ref}"


def _safe_name(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in value)
    return cleaned[-64:] or "video"


class YtDlpDownloader:
    def __init__(
        self,
        store: LocalContentStore,
        settings: Optional[Settings] = None,
        *,
        command: Optional[Sequence[str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self._command: List[str] = list(
            command or self.settings.YTDLP_COMMAND or [sys.executable, "-m", "yt_dlp"]
        )
        self._logger = logger

    def build_command(self, url: str) -> List[str]:
        args = [
            *self._command,
            "-f",
            self.settings.YTDLP_FORMAT,
            "-o",
            "-",
            "--no-playlist",
            "--no-progress",
            "--quiet",
        ]
        cookies_file = self.settings.YT_COOKIES_FILE
        if cookies_file and Path(cookies_file).is_file():
            args += ["--cookies", cookies_file]
        args.append(url)
        return args

    async def download(
        self,
        video_ref: str,
        *,
        cancel_token: Optional[CancellationToken] = None,
        download_id: Optional[str] = None,
    ) -> StoredBlob:
        """
        Fetch ``video_ref`` into a new blob.

        Settles only once yt-dlp exited 0 and the blob is fully written. Raises
        DownloadAbortedError if ``cancel_token`` fires first, ProcessFailureError
        for spawn failures / non-zero exits and StorageError for store failures.
        """
        url = build_watch_url(video_ref)
        log = bind(self._logger, __name__, download_id=download_id, video_ref=video_ref)
        token = cancel_token or CancellationToken()
        if token.cancelled:
            raise DownloadAbortedError()

        command = self.build_command(url)
        log.info("Downloading %s", url)
        try:
            process = await asyncio.create_subprocess_exec(*command, stdout=PIPE, stderr=PIPE)
        except OSError as exc:
            raise ProcessFailureError(f"Failed to start yt-dlp: {exc}") from exc

        try:
            upload = await self.store.begin_upload(
                f"{_safe_name(video_ref)}-{int(time.time() * 1000)}.mp4",
                metadata={"video_ref": video_ref, "download_id": download_id},
            )
        except BaseException:
            if process.returncode is None:
                process.kill()
            await process.wait()
            raise

        scope = _DownloadScope(
            process, upload, self.store, token, log, self.settings.DOWNLOAD_CHUNK_SIZE
        )
        blob = await scope.run()
        log.info("Download complete: blob %s (%d bytes)", blob.blob_id, blob.length)
        return blob


class _DownloadScope:
    """
    Owns one yt-dlp process and the blob upload it feeds. Every failure path
    (non-zero exit, stream or store error, cancellation) goes through
    :meth:`abort`, and only the first trigger decides the outcome.
    """

    def __init__(
        self,
        process: Process,
        upload: BlobUpload,
        store: LocalContentStore,
        token: CancellationToken,
        log: ContextAdapter,
        chunk_size: int,
    ) -> None:
        self.process = process
        self.upload = upload
        self.store = store
        self.token = token
        self.log = log
        self.chunk_size = chunk_size
        self._error: Optional[BaseException] = None
        self._stderr: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    async def run(self) -> StoredBlob:
        pump = asyncio.create_task(self.upload.pipe_from(self.process.stdout, self.chunk_size))
        stderr = asyncio.create_task(self._drain_stderr())
        exited = asyncio.create_task(self.process.wait())
        cancelled = asyncio.create_task(self.token.wait())
        waiting = {pump, exited, cancelled}
        try:
            while self._error is None and not (pump.done() and exited.done()):
                done, waiting = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if self.token.cancelled:
                    await self.abort(DownloadAbortedError())
                elif pump in done and pump.exception() is not None:
                    await self.abort(pump.exception())
                elif exited in done and exited.result() != 0:
                    await asyncio.wait({stderr}, timeout=1.0)
                    await self.abort(self._process_failure(exited.result()))

            # A cancellation requested before success is reported always wins.
            if self._error is None and self.token.cancelled:
                await self.abort(DownloadAbortedError())
            if self._error is not None:
                raise self._error
            return pump.result()
        except asyncio.CancelledError:
            await self.abort(DownloadAbortedError("Download task cancelled"))
            raise
        finally:
            # the process is dead or killed by now; let the exit waiter reap it
            for task in (pump, stderr, cancelled):
                if not task.done():
                    task.cancel()
            await asyncio.gather(pump, stderr, exited, cancelled, return_exceptions=True)

    async def abort(self, error: BaseException) -> None:
        if self._error is not None:
            return
        self._error = error
        if isinstance(error, DownloadAbortedError):
            self.log.info("Download cancelled")
        else:
            self.log.warning("Download failed: %s", error)

        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

        if not await self.upload.abort(error):
            completion = self.upload.completion
            if completion.done() and not completion.cancelled() and completion.exception() is None:
                # the blob finished writing before the abort; drop it
                try:
                    await self.store.delete(self.upload.blob_id)
                except StorageError:
                    self.log.warning("Could not delete blob %s after abort", self.upload.blob_id)

    async def _drain_stderr(self) -> None:
        while True:
            line = await self.process.stderr.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if text:
                self._stderr.append(text)
                self.log.debug("yt-dlp: %s", text)

    def _process_failure(self, returncode: int) -> ProcessFailureError:
        tail = "\n".join(self._stderr)
        return ProcessFailureError(
            f"yt-dlp exited with code {returncode}: {tail or 'no output'}",
            returncode=returncode,
            stderr=tail,
        )
