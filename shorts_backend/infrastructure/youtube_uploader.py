"""
Publish a local video file to YouTube through the Data API v3.

The upload is resumable and chunked (UPLOAD_CHUNK_SIZE), so the file is never
held in memory whole. The client library is blocking; every call runs in a
worker thread.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload

from shorts_backend.config import Settings, get_settings
from shorts_backend.domain.errors import (
    InvalidInputError,
    RemoteRejectedError,
    UploadFileNotFoundError,
)
from shorts_backend.domain.models import OAuthTokens, UploadRequest, UploadResult
from shorts_backend.infrastructure.google_auth import build_credentials, tokens_from_credentials
from shorts_backend.logging_setup import bind

SUPPORTED_MIME_TYPES = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "m4v": "video/x-m4v",
    "webm": "video/webm",
    "mpeg": "video/mpeg",
    "mpg": "video/mpeg",
    "ogg": "video/ogg",
    "ogv": "video/ogg",
}

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 5000
MAX_TAGS = 30
MAX_TAG_LENGTH = 100
DEFAULT_TITLE = "Untitled Short"
DEFAULT_CATEGORY_ID = "22"
ALLOWED_PRIVACY_STATUSES = {"private", "unlisted", "public"}


def sanitize_title(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        return DEFAULT_TITLE
    return value.strip()[:MAX_TITLE_LENGTH]


def sanitize_description(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:MAX_DESCRIPTION_LENGTH]


def sanitize_tags(value: Optional[Iterable[Any]]) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    tags: List[str] = []
    for tag in value:
        if not isinstance(tag, str) or not tag.strip():
            continue
        tags.append(tag.strip()[:MAX_TAG_LENGTH])
        if len(tags) >= MAX_TAGS:
            break
    return tags


def normalize_privacy(value: Any) -> str:
    return value if value in ALLOWED_PRIVACY_STATUSES else "private"


def resolve_mime_type(file_path: Path) -> str:
    return SUPPORTED_MIME_TYPES.get(file_path.suffix[1:].lower(), "video/*")


def build_request_body(request: UploadRequest) -> Dict[str, Any]:
    category_id = request.category_id.strip() if isinstance(request.category_id, str) else ""
    body: Dict[str, Any] = {
        "snippet": {
            "title": sanitize_title(request.title),
            "description": sanitize_description(request.description),
            "categoryId": category_id or DEFAULT_CATEGORY_ID,
        },
        "status": {
            "privacyStatus": normalize_privacy(request.privacy_status),
            "selfDeclaredMadeForKids": bool(request.made_for_kids),
        },
    }
    tags = sanitize_tags(request.tags)
    if tags:
        body["snippet"]["tags"] = tags
    if isinstance(request.default_language, str) and request.default_language.strip():
        body["snippet"]["defaultLanguage"] = request.default_language.strip()
    return body


class YouTubeUploader:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._logger = logger

    async def upload(self, request: UploadRequest, tokens: OAuthTokens) -> UploadResult:
        """
        Upload ``request.file_path`` and return the new video id along with
        the (possibly refreshed) OAuth tokens.
        """
        if not request.file_path or not isinstance(request.file_path, str):
            raise InvalidInputError("file_path is required to upload a video.")
        path = Path(request.file_path).resolve()
        if not path.is_file():
            raise UploadFileNotFoundError(f"Video file not found at path: {request.file_path}")

        credentials = build_credentials(tokens, self.settings)
        body = build_request_body(request)
        log = bind(self._logger, __name__, file=path.name)
        log.info(
            "Uploading %s (%d bytes) as %s",
            body["snippet"]["title"],
            path.stat().st_size,
            body["status"]["privacyStatus"],
        )

        response = await asyncio.to_thread(
            self._insert, credentials, path, body, bool(request.notify_subscribers)
        )

        remote_id = (response or {}).get("id")
        if not remote_id:
            raise RemoteRejectedError("YouTube API did not return a video ID after upload.")

        log.info("Upload complete: video %s", remote_id)
        return UploadResult(
            remote_id=remote_id,
            refreshed_tokens=tokens_from_credentials(credentials, tokens),
            response=response,
        )

    def _insert(self, credentials, path: Path, body: Dict[str, Any], notify_subscribers: bool) -> Dict[str, Any]:
        media = MediaFileUpload(
            str(path),
            mimetype=resolve_mime_type(path),
            chunksize=self.settings.UPLOAD_CHUNK_SIZE,
            resumable=True,
        )
        try:
            youtube = build("youtube", "v3", credentials=credentials, cache_discovery=False)
            insert = youtube.videos().insert(
                part="snippet,status",
                notifySubscribers=notify_subscribers,
                body=body,
                media_body=media,
            )
            response = None
            while response is None:
                _, response = insert.next_chunk()
            return response
        except HttpError as exc:
            raise RemoteRejectedError(f"Failed to upload video to YouTube: {exc}") from exc
