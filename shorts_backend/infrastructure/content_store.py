"""
Filesystem-backed blob store for downloaded source videos.

Layout under the store root::

    <blob_id>.part   bytes still being written
    <blob_id>        finished blob (renamed from .part on clean close)
    <blob_id>.json   sidecar with name, length, content type and metadata

Blobs are append-only while being written and never change once the writer
has closed them.
"""
import asyncio
import json
import logging
import os
import re
import shutil
import tempfile
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional, Union

from shorts_backend.domain.errors import BlobNotFoundError, InvalidInputError, StorageError
from shorts_backend.domain.models import StoredBlob, utcnow

logger = logging.getLogger(__name__)

TEMP_DIR_PREFIX = "shorts-source-"
COPY_CHUNK_SIZE = 1024 * 1024
_BLOB_ID_RE = re.compile(r"^[0-9a-f]{32}$")


def _storage_error(message: str, cause: BaseException) -> StorageError:
    error = StorageError(f"{message}: {cause}")
    error.__cause__ = cause
    return error


def _mark_retrieved(future: "asyncio.Future[StoredBlob]") -> None:
    # Aborted uploads nobody awaits would otherwise warn on garbage collection
    if not future.cancelled():
        future.exception()


class BlobUpload:
    """
    Write channel for a single blob.

    ``completion`` resolves with the stored blob once :meth:`close` succeeds,
    or fails with the abort reason / upstream error. Whichever of close and
    abort runs first wins; the other one is a no-op.
    """

    def __init__(
        self,
        store: "LocalContentStore",
        blob_id: str,
        name: str,
        metadata: Dict[str, Any],
        content_type: str,
        handle: BinaryIO,
    ) -> None:
        self.blob_id = blob_id
        self.name = name
        self.metadata = metadata
        self.content_type = content_type
        self.length = 0
        self._store = store
        self._handle = handle
        self._settled = False
        self._lock = asyncio.Lock()
        self.completion: "asyncio.Future[StoredBlob]" = asyncio.get_running_loop().create_future()
        self.completion.add_done_callback(_mark_retrieved)

    @property
    def settled(self) -> bool:
        return self._settled

    async def write(self, chunk: bytes) -> None:
        async with self._lock:
            if self._settled:
                raise StorageError(f"Upload for blob {self.blob_id} is already closed")
            try:
                await asyncio.to_thread(self._handle.write, chunk)
            except OSError as exc:
                error = _storage_error(f"Failed to write blob {self.blob_id}", exc)
                await self._discard(error)
                raise error from exc
            self.length += len(chunk)

    async def close(self) -> StoredBlob:
        async with self._lock:
            if self._settled:
                return await self.completion
            self._settled = True
            try:
                blob = await asyncio.to_thread(self._finalize)
            except OSError as exc:
                error = _storage_error(f"Failed to finalize blob {self.blob_id}", exc)
                await asyncio.to_thread(self._remove_partial)
                self.completion.set_exception(error)
                raise error from exc
            self.completion.set_result(blob)
            logger.debug("Stored blob %s (%d bytes)", blob.blob_id, blob.length)
            return blob

    async def abort(self, reason: Optional[BaseException] = None) -> bool:
        """Stop writing and delete the partial blob. Returns False if already settled."""
        async with self._lock:
            if self._settled:
                return False
            await self._discard(reason or StorageError("Upload aborted"))
            return True

    async def fail(self, error: BaseException) -> bool:
        """The upstream source broke; same teardown as abort, failing with ``error``."""
        return await self.abort(error)

    async def pipe_from(
        self, reader: asyncio.StreamReader, chunk_size: int = COPY_CHUNK_SIZE
    ) -> StoredBlob:
        """Copy ``reader`` into the blob until EOF, then close it."""
        try:
            while True:
                chunk = await reader.read(chunk_size)
                if not chunk or self._settled:
                    break
                await self.write(chunk)
        except StorageError:
            raise
        except Exception as exc:
            await self.fail(exc)
            raise
        return await self.close()

    async def _discard(self, error: BaseException) -> None:
        self._settled = True
        await asyncio.to_thread(self._remove_partial)
        self.completion.set_exception(error)

    def _finalize(self) -> StoredBlob:
        self._handle.close()
        os.replace(self._store._part_path(self.blob_id), self._store._data_path(self.blob_id))
        blob = StoredBlob(
            blob_id=self.blob_id,
            name=self.name,
            length=self.length,
            content_type=self.content_type,
            metadata=dict(self.metadata),
            created_at=utcnow(),
        )
        self._store._write_sidecar(blob)
        return blob

    def _remove_partial(self) -> None:
        try:
            self._handle.close()
        except OSError:
            logger.warning("Could not close partial blob %s", self.blob_id)
        for path in (self._store._part_path(self.blob_id), self._store._data_path(self.blob_id)):
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not remove partial blob file %s", path)


class LocalContentStore:
    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    async def begin_upload(
        self,
        name: str,
        metadata: Optional[Dict[str, Any]] = None,
        content_type: str = "video/mp4",
    ) -> BlobUpload:
        blob_id = uuid.uuid4().hex
        try:
            await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)
            handle = await asyncio.to_thread(open, self._part_path(blob_id), "wb")
        except OSError as exc:
            raise _storage_error("Failed to open blob for writing", exc) from exc
        return BlobUpload(self, blob_id, name, dict(metadata or {}), content_type, handle)

    async def delete(self, blob_id: Optional[str]) -> bool:
        """Remove a blob; unknown ids are not an error. Returns True if anything was removed."""
        if not blob_id:
            return False
        self._check_id(blob_id)
        removed = False
        for path in (self._data_path(blob_id), self._sidecar_path(blob_id), self._part_path(blob_id)):
            try:
                if await asyncio.to_thread(path.exists):
                    await asyncio.to_thread(path.unlink, True)
                    removed = True
            except OSError as exc:
                raise _storage_error(f"Failed to delete blob {blob_id}", exc) from exc
        if removed:
            logger.debug("Deleted blob %s", blob_id)
        return removed

    def open_read(self, blob_id: str) -> BinaryIO:
        self._check_id(blob_id)
        try:
            return open(self._data_path(blob_id), "rb")
        except FileNotFoundError:
            raise BlobNotFoundError(blob_id) from None
        except OSError as exc:
            raise _storage_error(f"Failed to open blob {blob_id}", exc) from exc

    async def stat(self, blob_id: str) -> StoredBlob:
        self._check_id(blob_id)
        try:
            raw = await asyncio.to_thread(self._sidecar_path(blob_id).read_text, "utf-8")
        except FileNotFoundError:
            raise BlobNotFoundError(blob_id) from None
        except OSError as exc:
            raise _storage_error(f"Failed to read blob metadata {blob_id}", exc) from exc
        data = json.loads(raw)
        created_at = data.get("created_at")
        return StoredBlob(
            blob_id=data["blob_id"],
            name=data["name"],
            length=int(data["length"]),
            content_type=data.get("content_type", "video/mp4"),
            metadata=data.get("metadata") or {},
            created_at=datetime.fromisoformat(created_at) if created_at else None,
        )

    async def materialize_to_file(
        self, blob_id: str, target_dir: Optional[Union[str, Path]] = None
    ) -> Path:
        """
        Copy a finished blob into a fresh local file for tools that need a path.
        Without ``target_dir`` a private temp directory is created.
        """
        self._check_id(blob_id)
        if not await asyncio.to_thread(self._data_path(blob_id).exists):
            raise BlobNotFoundError(blob_id)

        try:
            if target_dir is None:
                directory = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix=TEMP_DIR_PREFIX))
            else:
                directory = Path(target_dir)
                await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise _storage_error("Failed to prepare materialization directory", exc) from exc

        try:
            suffix = Path((await self.stat(blob_id)).name).suffix or ".mp4"
        except BlobNotFoundError:
            suffix = ".mp4"

        file_path = directory / f"{uuid.uuid4()}{suffix}"
        await asyncio.to_thread(self._copy_to, blob_id, file_path)
        return file_path

    def _copy_to(self, blob_id: str, file_path: Path) -> None:
        with self.open_read(blob_id) as source:
            try:
                with open(file_path, "wb") as target:
                    shutil.copyfileobj(source, target, COPY_CHUNK_SIZE)
            except OSError as exc:
                file_path.unlink(missing_ok=True)
                raise _storage_error(f"Failed to materialize blob {blob_id}", exc) from exc

    def _write_sidecar(self, blob: StoredBlob) -> None:
        payload = {
            "blob_id": blob.blob_id,
            "name": blob.name,
            "length": blob.length,
            "content_type": blob.content_type,
            "metadata": blob.metadata,
            "created_at": blob.created_at.isoformat() if blob.created_at else None,
        }
        self._sidecar_path(blob.blob_id).write_text(json.dumps(payload, default=str), "utf-8")

    def _check_id(self, blob_id: str) -> None:
        if not isinstance(blob_id, str) or not _BLOB_ID_RE.match(blob_id):
            raise InvalidInputError(f"Invalid blob id: {blob_id!r}")

    def _data_path(self, blob_id: str) -> Path:
        return self.root / blob_id

    def _part_path(self, blob_id: str) -> Path:
        return self.root / f"{blob_id}.part"

    def _sidecar_path(self, blob_id: str) -> Path:
        return self.root / f"{blob_id}.json"
