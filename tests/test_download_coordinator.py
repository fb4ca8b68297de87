import asyncio

import pytest

from fakes import FakeDownloader, wait_until
from shorts_backend.domain.errors import (
    DownloadAbortedError,
    DownloadFailedError,
    DownloadNotFoundError,
    InvalidInputError,
    ProcessFailureError,
)
from shorts_backend.domain.models import DownloadStatus
from shorts_backend.domain.services.download_service import DownloadCoordinator


def _coordinator(store, **kwargs):
    downloader = FakeDownloader(store, **kwargs)
    return DownloadCoordinator(downloader, store), downloader


@pytest.mark.asyncio
async def test_start_returns_downloading_summary(store):
    coordinator, downloader = _coordinator(store, gate=asyncio.Event())

    started = await coordinator.start("abc123", "session-1")

    assert started.status == DownloadStatus.DOWNLOADING
    assert started.video_ref == "abc123"
    assert coordinator.get(started.id).session_ref == "session-1"
    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_start_requires_session_and_ref(store):
    coordinator, _ = _coordinator(store)
    with pytest.raises(InvalidInputError):
        await coordinator.start("abc123", "")
    with pytest.raises(InvalidInputError):
        await coordinator.start("  ", "session-1")


@pytest.mark.asyncio
async def test_completed_download_exposes_blob(store):
    coordinator, _ = _coordinator(store, payload=b"abcdef")
    started = await coordinator.start("abc123", "session-1")

    blob = await coordinator.wait_for(started.id)

    snapshot = coordinator.get(started.id)
    assert snapshot.status == DownloadStatus.COMPLETED
    assert snapshot.blob_id == blob.blob_id
    assert snapshot.length == 6
    assert snapshot.completed_at is not None


@pytest.mark.asyncio
async def test_failed_download_wraps_cause(store):
    error = ProcessFailureError("yt-dlp exited with code 1", returncode=1)
    coordinator, _ = _coordinator(store, error=error)
    started = await coordinator.start("abc123", "session-1")

    with pytest.raises(DownloadFailedError) as excinfo:
        await coordinator.wait_for(started.id)

    assert excinfo.value.__cause__ is error
    snapshot = coordinator.get(started.id)
    assert snapshot.status == DownloadStatus.FAILED
    assert "code 1" in snapshot.error
    assert snapshot.blob_id is None


@pytest.mark.asyncio
async def test_cancel_before_settle_never_completes(store):
    gate = asyncio.Event()
    coordinator, _ = _coordinator(store, gate=gate)
    started = await coordinator.start("abc123", "session-1")
    seen = []
    coordinator.subscribe(started.id, lambda snap: seen.append(snap.status))

    assert await coordinator.cancel(started.id) is True
    gate.set()

    assert coordinator.get(started.id).status == DownloadStatus.CANCELLED
    with pytest.raises(DownloadAbortedError):
        await coordinator.wait_for(started.id)
    assert DownloadStatus.COMPLETED not in seen
    assert not store.root.exists()


@pytest.mark.asyncio
async def test_cancel_completed_with_delete_blob(store):
    coordinator, _ = _coordinator(store)
    started = await coordinator.start("abc123", "session-1")
    blob = await coordinator.wait_for(started.id)

    assert await coordinator.cancel(started.id, delete_blob=True) is True

    snapshot = coordinator.get(started.id)
    assert snapshot.status == DownloadStatus.COMPLETED
    assert snapshot.blob_id is None
    assert snapshot.filename is None
    assert snapshot.length is None
    assert not (store.root / blob.blob_id).exists()


@pytest.mark.asyncio
async def test_cancel_completed_without_delete_keeps_blob(store):
    coordinator, _ = _coordinator(store)
    started = await coordinator.start("abc123", "session-1")
    blob = await coordinator.wait_for(started.id)

    assert await coordinator.cancel(started.id) is True
    assert coordinator.get(started.id).blob_id == blob.blob_id


@pytest.mark.asyncio
async def test_unknown_ids(store):
    coordinator, _ = _coordinator(store)
    assert coordinator.get("missing") is None
    assert await coordinator.cancel("missing") is False
    assert await coordinator.delete_blob("missing") is False
    with pytest.raises(DownloadNotFoundError):
        await coordinator.wait_for("missing")
    with pytest.raises(DownloadNotFoundError):
        coordinator.subscribe("missing", lambda snap: None)


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_download(store):
    gate = asyncio.Event()
    coordinator, _ = _coordinator(store, gate=gate)
    started = await coordinator.start("abc123", "session-1")
    seen = []

    def broken(snapshot):
        raise RuntimeError("listener bug")

    coordinator.subscribe(started.id, broken)
    coordinator.subscribe(started.id, lambda snap: seen.append(snap))
    gate.set()
    await coordinator.wait_for(started.id)

    assert seen[-1].status == DownloadStatus.COMPLETED
    assert seen[-1].blob_id is not None


@pytest.mark.asyncio
async def test_waiter_cancellation_leaves_download_running(store):
    gate = asyncio.Event()
    coordinator, _ = _coordinator(store, gate=gate)
    started = await coordinator.start("abc123", "session-1")

    waiter = asyncio.create_task(coordinator.wait_for(started.id))
    await asyncio.sleep(0)
    waiter.cancel()
    await asyncio.gather(waiter, return_exceptions=True)

    gate.set()
    await coordinator.wait_for(started.id)
    assert coordinator.get(started.id).status == DownloadStatus.COMPLETED


@pytest.mark.asyncio
async def test_active_for_session(store):
    gate = asyncio.Event()
    coordinator, _ = _coordinator(store, gate=gate)
    started = await coordinator.start("abc123", "session-1")

    assert coordinator.active_for_session("session-1").id == started.id
    assert coordinator.active_for_session("other") is None
    await coordinator.cancel(started.id)
    assert coordinator.active_for_session("session-1") is None


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight(store):
    coordinator, _ = _coordinator(store, gate=asyncio.Event())
    started = await coordinator.start("abc123", "session-1")

    await coordinator.shutdown()

    await wait_until(lambda: coordinator.get(started.id).status.is_terminal)
    assert coordinator.get(started.id).status == DownloadStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_landing_after_last_check_still_cancels(store):
    finish_gate = asyncio.Event()
    downloader = FakeDownloader(store, finish_gate=finish_gate)
    coordinator = DownloadCoordinator(downloader, store)
    started = await coordinator.start("abc123", "session-1")
    await asyncio.wait_for(downloader.written.wait(), timeout=5)

    cancelling = asyncio.create_task(coordinator.cancel(started.id))
    await asyncio.sleep(0)
    finish_gate.set()
    assert await cancelling is True

    snapshot = coordinator.get(started.id)
    assert snapshot.status == DownloadStatus.CANCELLED
    assert snapshot.blob_id is None
    assert [p for p in store.root.iterdir()] == []
    with pytest.raises(DownloadAbortedError):
        await coordinator.wait_for(started.id)
