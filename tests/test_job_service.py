import asyncio
from pathlib import Path

import pytest

from fakes import FakeDownloader, FakeTrimmer, FakeUploader, wait_until
from shorts_backend.domain.errors import InvalidInputError, JobNotFoundError, RemoteRejectedError
from shorts_backend.domain.models import ClipSpec, DownloadStatus
from shorts_backend.domain.services.download_service import DownloadCoordinator
from shorts_backend.domain.services.job_service import ShortsJobService
from shorts_backend.infrastructure.persistence.in_memory_repo import InMemorySessionStore

SESSION = "session-1"


@pytest.fixture
def gate():
    return asyncio.Event()


@pytest.fixture
def pipeline(settings, store):
    def make(*, gate=None, trimmer=None, uploader=None):
        downloads = DownloadCoordinator(FakeDownloader(store, gate=gate), store)
        sessions = InMemorySessionStore()
        trimmer = trimmer or FakeTrimmer()
        uploader = uploader or FakeUploader()
        jobs = ShortsJobService(
            downloads, store, trimmer, uploader, sessions, settings=settings
        )
        return downloads, jobs, trimmer, uploader, sessions

    return make


async def _finished(jobs, job_id):
    await wait_until(lambda: jobs.get(job_id).status in ("completed", "failed"))
    return jobs.get(job_id)


@pytest.mark.asyncio
async def test_successful_job_publishes_share_url(pipeline, settings):
    downloads, jobs, trimmer, uploader, _ = pipeline()
    started = await downloads.start("abc123", SESSION)

    created = await jobs.create_job(
        started.id,
        {"start": 10, "end": 40, "title": "Clip"},
        video_ref="abc123",
        tokens={"access_token": "a"},
        session_ref=SESSION,
    )
    assert created.status == "queued"
    assert created.message == "Short creation queued."

    done = await _finished(jobs, created.job_id)

    assert done.status == "completed"
    assert done.message == "Short uploaded successfully."
    assert done.share_url == "https://www.youtube.com/watch?v=remote123"
    assert done.metadata.start_time == 10
    assert done.metadata.end_time == 40
    assert done.metadata.title == "Clip"

    assert len(trimmer.outputs) == 1
    assert not trimmer.outputs[0].exists()
    assert uploader.file_existed == [True]
    assert trimmer.calls[0][1] == [(10.0, 40.0)]
    assert trimmer.calls[0][2] == settings.TRIM_OUTPUT_DIR
    assert list(Path(settings.WORK_DIR).iterdir()) == []


@pytest.mark.asyncio
async def test_upload_request_is_built_from_clip(pipeline):
    downloads, jobs, _, uploader, _ = pipeline()
    started = await downloads.start("abc123", SESSION)

    created = await jobs.create_job(
        started.id,
        ClipSpec(start=0, end=30, hook="Wait for it", reason="Big reveal"),
        video_title="My vlog",
        session_ref=SESSION,
    )
    await _finished(jobs, created.job_id)

    request = uploader.requests[0]
    assert request.title == "Short from My vlog"
    assert request.description == "Big reveal\n\nOriginal video: https://www.youtube.com/watch?v=abc123"
    assert request.tags == ["shorts", "youtube", "clip", "Wait for it"]
    assert request.privacy_status == "private"


@pytest.mark.asyncio
async def test_refreshed_tokens_are_merged_into_session(pipeline):
    downloads, jobs, _, _, sessions = pipeline()
    await sessions.set(SESSION, {"user": "u1", "tokens": {"access_token": "old", "scope": "s"}})
    started = await downloads.start("abc123", SESSION)

    created = await jobs.create_job(started.id, {"start": 0, "end": 5}, session_ref=SESSION)
    await _finished(jobs, created.job_id)

    session = await sessions.get(SESSION)
    assert session["user"] == "u1"
    assert session["tokens"]["access_token"] == "refreshed-access"
    assert session["tokens"]["scope"] == "s"
    assert session["tokens"]["expiry_date"] == 1_700_000_000_000


@pytest.mark.asyncio
async def test_unknown_download_fails_job(pipeline):
    _, jobs, trimmer, uploader, _ = pipeline()

    created = await jobs.create_job("no-such-download", {"start": 0, "end": 5}, video_ref="abc123")
    done = await _finished(jobs, created.job_id)

    assert done.status == "failed"
    assert "could not be found" in done.message
    assert trimmer.calls == []
    assert uploader.requests == []


@pytest.mark.asyncio
async def test_cancelled_download_cancels_job(pipeline, gate, settings):
    downloads, jobs, trimmer, uploader, _ = pipeline(gate=gate)
    started = await downloads.start("abc123", SESSION)
    created = await jobs.create_job(started.id, {"start": 0, "end": 5}, session_ref=SESSION)
    await wait_until(lambda: jobs.get(created.job_id).status == "processing")

    await downloads.cancel(started.id)
    done = await _finished(jobs, created.job_id)

    assert done.status == "failed"
    assert done.message == "Short creation cancelled because the download was interrupted."
    assert trimmer.calls == []
    assert uploader.requests == []
    assert not Path(settings.TRIM_OUTPUT_DIR).exists()


@pytest.mark.asyncio
async def test_user_cancel(pipeline, gate):
    downloads, jobs, trimmer, uploader, _ = pipeline(gate=gate)
    started = await downloads.start("abc123", SESSION)
    created = await jobs.create_job(started.id, {"start": 0, "end": 5}, session_ref=SESSION)

    assert await jobs.cancel(created.job_id, "other-session") is False
    assert await jobs.cancel(created.job_id, SESSION) is True

    publication = jobs.get(created.job_id)
    assert publication.status == "failed"
    assert publication.message == "Short creation cancelled by user."
    assert downloads.get(started.id).status == DownloadStatus.CANCELLED

    await asyncio.sleep(0.05)
    assert jobs.get(created.job_id).message == "Short creation cancelled by user."
    assert trimmer.calls == []
    assert uploader.requests == []


@pytest.mark.asyncio
async def test_upload_failure_fails_job_and_cleans_up(pipeline):
    uploader = FakeUploader(error=RemoteRejectedError("quota exceeded"))
    downloads, jobs, trimmer, _, _ = pipeline(uploader=uploader)
    started = await downloads.start("abc123", SESSION)

    created = await jobs.create_job(started.id, {"start": 0, "end": 5})
    done = await _finished(jobs, created.job_id)

    assert done.status == "failed"
    assert done.message == "quota exceeded"
    assert not trimmer.outputs[0].exists()


@pytest.mark.asyncio
async def test_terminal_status_published_after_cleanup(pipeline):
    downloads, jobs, trimmer, _, _ = pipeline()
    started = await downloads.start("abc123", SESSION)
    created = await jobs.create_job(started.id, {"start": 0, "end": 5})
    leftovers = []

    def on_status(publication):
        if publication.status == "completed":
            leftovers.extend(path for path in trimmer.outputs if path.exists())

    jobs.subscribe(created.job_id, on_status)
    await _finished(jobs, created.job_id)

    assert leftovers == []


@pytest.mark.asyncio
async def test_create_job_validation(pipeline):
    _, jobs, _, _, _ = pipeline()
    with pytest.raises(InvalidInputError):
        await jobs.create_job("", {"start": 0, "end": 5})
    with pytest.raises(InvalidInputError):
        await jobs.create_job("d1", {"start": "0", "end": 5})
    with pytest.raises(InvalidInputError):
        await jobs.create_job("d1", None)


@pytest.mark.asyncio
async def test_session_scoping_and_listing(pipeline):
    downloads, jobs, _, _, _ = pipeline()
    started = await downloads.start("abc123", SESSION)
    created = await jobs.create_job(started.id, {"start": 0, "end": 5}, session_ref=SESSION)

    assert jobs.get(created.job_id, "other-session") is None
    assert jobs.get(created.job_id, SESSION).job_id == created.job_id
    assert [p.job_id for p in jobs.list_for_session(SESSION)] == [created.job_id]
    assert jobs.list_for_session("other-session") == []
    with pytest.raises(JobNotFoundError):
        jobs.subscribe("missing", lambda publication: None)
    await _finished(jobs, created.job_id)


@pytest.mark.asyncio
async def test_shutdown_cancels_running_jobs(pipeline, gate):
    downloads, jobs, _, _, _ = pipeline(gate=gate)
    started = await downloads.start("abc123", SESSION)
    created = await jobs.create_job(started.id, {"start": 0, "end": 5})
    await asyncio.sleep(0)

    await jobs.shutdown()
    await downloads.shutdown()

    assert jobs.get(created.job_id).status == "failed"
    assert downloads.get(started.id).status == DownloadStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_while_trimming_never_uploads(pipeline, gate):
    downloads, jobs, trimmer, uploader, _ = pipeline(trimmer=FakeTrimmer(gate=gate))
    started = await downloads.start("abc123", SESSION)
    created = await jobs.create_job(started.id, {"start": 0, "end": 5}, session_ref=SESSION)
    await asyncio.wait_for(trimmer.started.wait(), timeout=5)

    assert await jobs.cancel(created.job_id, SESSION) is True
    gate.set()
    await wait_until(lambda: trimmer.outputs and not trimmer.outputs[0].exists())

    publication = jobs.get(created.job_id)
    assert publication.status == "failed"
    assert publication.message == "Short creation cancelled by user."
    assert uploader.requests == []


@pytest.mark.asyncio
async def test_cancel_while_uploading_discards_result(pipeline, gate):
    downloads, jobs, trimmer, uploader, _ = pipeline(uploader=FakeUploader(gate=gate))
    started = await downloads.start("abc123", SESSION)
    created = await jobs.create_job(started.id, {"start": 0, "end": 5}, session_ref=SESSION)
    await asyncio.wait_for(uploader.started.wait(), timeout=5)

    assert await jobs.cancel(created.job_id, SESSION) is True
    gate.set()
    await wait_until(lambda: not trimmer.outputs[0].exists())

    publication = jobs.get(created.job_id)
    assert publication.message == "Short creation cancelled by user."
    assert publication.share_url is None
    assert len(uploader.requests) == 1
