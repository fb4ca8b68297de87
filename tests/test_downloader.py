"""
The downloader is driven with short Python scripts standing in for yt-dlp;
the extra yt-dlp arguments simply land in the script's sys.argv.
"""
import asyncio
import sys

import pytest

from shorts_backend.domain.cancellation import CancellationToken
from shorts_backend.domain.errors import (
    DownloadAbortedError,
    InvalidInputError,
    ProcessFailureError,
)
from shorts_backend.infrastructure.downloaders import YtDlpDownloader, build_watch_url

WRITE_VIDEO = "import sys; sys.stdout.buffer.write(b'v' * 300000)"
FAIL = "import sys; sys.stderr.write('ERROR: Video unavailable\\n'); sys.exit(3)"
HANG = (
    "import sys, time; sys.stdout.buffer.write(b'v' * 1000); "
    "sys.stdout.flush(); time.sleep(30)"
)


def _downloader(store, settings, script):
    return YtDlpDownloader(store, settings, command=[sys.executable, "-c", script])


def test_build_watch_url():
    assert build_watch_url("abc123") == "https://www.youtube.com/watch?v=abc123"
    assert build_watch_url("https://youtu.be/abc123") == "https://youtu.be/abc123"
    with pytest.raises(InvalidInputError):
        build_watch_url("")
    with pytest.raises(InvalidInputError):
        build_watch_url("not a ref; rm -rf /")


def test_build_command_streams_to_stdout(store, settings, tmp_path):
    cookies = tmp_path / "cookies.txt"
    cookies.write_text("# Netscape HTTP Cookie File\n")
    settings.YT_COOKIES_FILE = str(cookies)
    downloader = YtDlpDownloader(store, settings, command=["yt-dlp"])

    args = downloader.build_command("https://www.youtube.com/watch?v=abc123")

    assert args[0] == "yt-dlp"
    assert args[args.index("-o") + 1] == "-"
    assert args[args.index("--cookies") + 1] == str(cookies)
    assert args[-1] == "https://www.youtube.com/watch?v=abc123"


@pytest.mark.asyncio
async def test_download_stores_stdout_as_blob(store, settings):
    blob = await _downloader(store, settings, WRITE_VIDEO).download("abc123", download_id="d1")

    assert blob.length == 300000
    assert blob.name.startswith("abc123-")
    with store.open_read(blob.blob_id) as handle:
        assert handle.read() == b"v" * 300000
    stat = await store.stat(blob.blob_id)
    assert stat.metadata == {"video_ref": "abc123", "download_id": "d1"}


@pytest.mark.asyncio
async def test_non_zero_exit_raises_with_stderr_tail(store, settings):
    with pytest.raises(ProcessFailureError) as excinfo:
        await _downloader(store, settings, FAIL).download("abc123")

    assert excinfo.value.returncode == 3
    assert "Video unavailable" in excinfo.value.stderr
    assert list(store.root.iterdir()) == []


@pytest.mark.asyncio
async def test_spawn_failure(store, settings):
    downloader = YtDlpDownloader(store, settings, command=["/nonexistent/yt-dlp-binary"])
    with pytest.raises(ProcessFailureError):
        await downloader.download("abc123")


@pytest.mark.asyncio
async def test_cancel_kills_process_and_removes_partial(store, settings):
    token = CancellationToken()
    task = asyncio.create_task(_downloader(store, settings, HANG).download("abc123", cancel_token=token))

    for _ in range(200):
        if store.root.exists() and any(store.root.glob("*.part")):
            break
        await asyncio.sleep(0.02)
    token.cancel()

    with pytest.raises(DownloadAbortedError):
        await asyncio.wait_for(task, timeout=10)
    assert list(store.root.iterdir()) == []


@pytest.mark.asyncio
async def test_already_cancelled_token_never_spawns(store, settings):
    token = CancellationToken()
    token.cancel()

    with pytest.raises(DownloadAbortedError):
        await _downloader(store, settings, WRITE_VIDEO).download("abc123", cancel_token=token)
    assert not store.root.exists()
