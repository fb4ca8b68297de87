import pytest

from shorts_backend.config import Settings
from shorts_backend.infrastructure.content_store import LocalContentStore


@pytest.fixture
def settings(tmp_path):
    return Settings(
        BLOB_STORE_DIR=str(tmp_path / "blobs"),
        WORK_DIR=str(tmp_path / "work"),
        TRIM_OUTPUT_DIR=str(tmp_path / "trimmed"),
        GOOGLE_CLIENT_ID="client-id",
        GOOGLE_CLIENT_SECRET="client-secret",
        DOWNLOAD_CHUNK_SIZE=4096,
    )


@pytest.fixture
def store(settings):
    return LocalContentStore(settings.BLOB_STORE_DIR)
