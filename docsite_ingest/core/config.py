"""
Runtime configuration for docsite-ingest.

All values are read from the environment (or a local ``.env`` file) and
exposed through the module-level ``settings`` singleton:

    from docsite_ingest.core.config import settings
    settings.PAGE_UPSERT_CHUNK

Comma-separated list values are kept as plain strings so they can be set
from a shell; use the ``*_list`` helpers to read them split and trimmed.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str, *, lower: bool = False) -> list[str]:
    items = [part.strip() for part in value.split(",")]
    if lower:
        items = [part.lower() for part in items]
    return [part for part in items if part]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = "sqlite:///./docsite_ingest.db"
    DEBUG: bool = False

    # Target site
    SITE_PROJECT_URL: str = ""
    SITE_PROJECT_PASSWORD: str | None = None
    PAGE_PATH_PATTERN: str = "/p/"

    # Page fetching / extraction
    USER_AGENT: str = "Mozilla/5.0 (compatible; docsite-ingest/0.1)"
    REQUEST_TIMEOUT_SECONDS: float = 30.0
    CONTENT_SELECTORS: str = (
        ".zh-content, .content, main .content, "
        "[data-testid='page-content'], .page-content, #main-content"
    )
    CONTENT_MAX_CHARS: int = 10000
    LOGIN_WALL_MARKERS: str = "needsPassword,window.USER_INFO,hasStyleguidePassword"

    # Headless browser fallback
    BROWSER_PAGE_LOAD_TIMEOUT_SECONDS: float = 30.0
    BROWSER_LOGIN_WAIT_SECONDS: float = 2.0
    BROWSER_RENDER_WAIT_SECONDS: float = 2.0
    BROWSER_WINDOW_SIZE: str = "1280,1024"

    # Image pipeline
    IMAGE_NORMALIZE_HOSTS: str = "cdn.zeroheight.com,amazonaws.com,s3."
    IMAGE_EXCLUDE_FORMATS: str = "svg,gif"
    IMAGE_MAX_DIM: int = 600
    IMAGE_JPEG_QUALITY: int = 80
    IMAGE_DOWNLOAD_TIMEOUT_SECONDS: float = 10.0
    IMAGE_HASH_LENGTH: int = 16
    IMAGE_UPLOAD_RETRIES: int = 3
    IMAGE_UPLOAD_BACKOFF_SECONDS: float = 0.25
    IMAGE_UPLOAD_BACKOFF_FACTOR: float = 2.0

    # Object storage
    STORAGE_URL: str = ""
    STORAGE_SERVICE_KEY: str = ""
    STORAGE_ANON_KEY: str = ""
    STORAGE_BUCKET: str = "images"
    STORAGE_CACHE_CONTROL_SECONDS: int = 3600
    STORAGE_FILE_SIZE_LIMIT: int = 10 * 1024 * 1024
    STORAGE_ALLOWED_MIME_TYPES: str = "image/png,image/jpeg,image/jpg,image/webp"
    STORAGE_TIMEOUT_SECONDS: float = 30.0
    SERVER_UPLOAD_URL: str = ""
    SERVER_API_KEY: str = ""

    # Bulk commit
    PAGE_UPSERT_CHUNK: int = 200
    IMAGE_INSERT_CHUNK: int = 500
    COMMIT_MAX_ATTEMPTS: int = 3
    COMMIT_BACKOFF_SECONDS: float = 0.5
    COMMIT_MAX_BACKOFF_SECONDS: float = 2.0

    # Job store
    JOB_TTL_DEFAULT_MS: int = 60_000
    JOB_TTL_MIN_MS: int = 1_000
    JOB_TTL_MAX_MS: int = 60 * 60 * 1000
    JOB_POLL_INTERVAL_MS: int = 5_000
    JOB_RESULT_TIMEOUT_MS: int = 30_000
    JOB_ID_RANDOM_LENGTH: int = 6
    JOB_DELETE_QUEUED_ON_CANCEL: bool = False
    WORKER_IDLE_SECONDS: float = 1.0
    WORKER_API_KEY: str = ""

    @property
    def content_selector_list(self) -> list[str]:
        return _split_csv(self.CONTENT_SELECTORS)

    @property
    def login_wall_marker_list(self) -> list[str]:
        return _split_csv(self.LOGIN_WALL_MARKERS)

    @property
    def image_normalize_host_list(self) -> list[str]:
        return _split_csv(self.IMAGE_NORMALIZE_HOSTS, lower=True)

    @property
    def image_exclude_format_list(self) -> list[str]:
        return _split_csv(self.IMAGE_EXCLUDE_FORMATS, lower=True)

    @property
    def storage_allowed_mime_type_list(self) -> list[str]:
        return _split_csv(self.STORAGE_ALLOWED_MIME_TYPES)


settings = Settings()
