"""
Application configuration using Pydantic Settings.
"""
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a local .env file)."""

    # Storage
    BLOB_STORE_DIR: str = "data/blobs"
    WORK_DIR: Optional[str] = None  # None -> system temp dir
    TRIM_OUTPUT_DIR: str = "trimmed_content"

    # yt-dlp; empty command means "python -m yt_dlp" from this interpreter
    YTDLP_COMMAND: List[str] = []
    YTDLP_FORMAT: str = "best"
    YT_COOKIES_FILE: Optional[str] = None
    DOWNLOAD_CHUNK_SIZE: int = 1024 * 1024

    # ffmpeg
    FFMPEG_PATH: str = "ffmpeg"

    # YouTube upload / Google OAuth
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_TOKEN_URI: str = "https://oauth2.googleapis.com/token"
    UPLOAD_CHUNK_SIZE: int = 8 * 1024 * 1024

    # API
    CORS_ORIGINS: List[str] = ["*"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
