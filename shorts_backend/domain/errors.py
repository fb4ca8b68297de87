"""
Error taxonomy for the shorts pipeline.

Lower layers (content store, downloader, trimmer, uploader) raise these and
never swallow them; the coordinators decide how each one maps onto a
download or job status.
"""
from typing import Optional


class ShortsError(Exception):
    """Base class for every error raised by the shorts pipeline."""


class ConfigurationError(ShortsError):
    pass


class InvalidInputError(ShortsError):
    """Bad ids, malformed windows or missing required fields."""


class InvalidWindowError(InvalidInputError):
    def __init__(self, index: int, message: Optional[str] = None) -> None:
        self.index = index
        super().__init__(
            message or f"Segment at index {index} must have start >= 0 and end > start."
        )


class NotFoundError(ShortsError):
    pass


class BlobNotFoundError(NotFoundError):
    def __init__(self, blob_id: str) -> None:
        self.blob_id = blob_id
        super().__init__(f"Blob {blob_id} not found")


class DownloadNotFoundError(NotFoundError):
    def __init__(self, download_id: str, message: str = "Download not found.") -> None:
        self.download_id = download_id
        super().__init__(message)


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__("Job not found.")


class SourceFileNotFoundError(NotFoundError):
    pass


class UploadFileNotFoundError(NotFoundError):
    pass


class DownloadAbortedError(ShortsError):
    """Raised when a caller cancelled a download. Always terminal."""

    def __init__(self, message: str = "Download aborted") -> None:
        super().__init__(message)


class ProcessFailureError(ShortsError):
    """An external tool could not be spawned or exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class TrimError(ProcessFailureError):
    def __init__(self, index: int, message: str, *, stderr: str = "") -> None:
        self.index = index
        super().__init__(message, stderr=stderr)


class StorageError(ShortsError):
    """Wraps an underlying storage failure; the original error is chained as __cause__."""


class RemoteRejectedError(ShortsError):
    """The destination platform refused the upload or returned no identifier."""


class DownloadFailedError(ShortsError):
    def __init__(self, video_ref: str) -> None:
        self.video_ref = video_ref
        super().__init__(f"Failed to download video {video_ref}")


def is_abort(error: BaseException) -> bool:
    """True when ``error`` is, or directly wraps, a download abort."""
    return isinstance(error, DownloadAbortedError) or isinstance(
        error.__cause__, DownloadAbortedError
    )
