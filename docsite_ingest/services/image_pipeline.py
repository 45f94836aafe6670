"""
Per-image processing for a crawl run.

For every image reference on a page:
    normalize -> format filter -> dedup -> download -> ensure bucket ->
    transcode -> upload (with retry)

The pipeline only sees the ObjectStorage protocol. Falling back to the
authenticated server upload on a permission error is FallbackStorage's
job (core/storage.py); a bucket check the key is not allowed to make is
logged and skipped by ensure_bucket.

The pipeline never writes image rows. Successful uploads and dedup hits
both append a PendingImageRecord; the bulk commit stage turns those into
association rows once the owning page ids are known.

Cancellation is checked before the download, before the bucket check,
before the upload and after the upload. A cancelled image is reported as
ImageStatus.CANCELLED, never as a failure.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Callable, Optional, Protocol

from docsite_ingest.core.config import Settings, settings as default_settings
from docsite_ingest.core.errors import ImageValidationError, StorageError
from docsite_ingest.core.image_utils import (
    ImageDownloader,
    is_excluded_format,
    normalize_image_url,
    storage_key_for,
    transcode_image,
)
from docsite_ingest.core.page_fetcher import ImageRef
from docsite_ingest.core.retry import exponential_delay, retry_call
from docsite_ingest.core.storage import JPEG_CONTENT_TYPE, ObjectStorage, ensure_bucket

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]


def _never_cancelled() -> bool:
    return False


class ImageStatus(StrEnum):
    UPLOADED = "uploaded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNSUPPORTED = "unsupported"


@dataclass
class ImageResult:
    status: ImageStatus
    normalized_url: str = ""
    storage_path: Optional[str] = None
    error: Optional[str] = None

    @property
    def uploaded(self) -> bool:
        return self.status == ImageStatus.UPLOADED


@dataclass
class PendingImageRecord:
    owner_page_url: str
    original_url: str
    storage_path: str


@dataclass
class ImageStats:
    uploaded: int = 0
    skipped: int = 0
    failed: int = 0
    unsupported: int = 0
    total_refs: int = 0
    unique_all: set[str] = field(default_factory=set)
    unique_allowed: set[str] = field(default_factory=set)
    unique_unsupported: set[str] = field(default_factory=set)


class ImageRepositoryLike(Protocol):
    def existing_url_map(self) -> dict[str, str]: ...


class UploadedImageRegistry:
    """
    Normalized URL -> storage path for everything already uploaded.

    One instance per crawl run, seeded from the images table at run start
    and extended as the run uploads new images.
    """

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._paths: dict[str, str] = dict(initial or {})
        self.preexisting: frozenset[str] = frozenset(self._paths)

    @classmethod
    def from_repository(cls, image_repo: ImageRepositoryLike) -> "UploadedImageRegistry":
        return cls(image_repo.existing_url_map())

    def contains(self, normalized_url: str) -> bool:
        return normalized_url in self._paths

    def add(self, normalized_url: str, storage_path: str) -> None:
        self._paths[normalized_url] = storage_path

    def storage_path_for(self, normalized_url: str) -> Optional[str]:
        return self._paths.get(normalized_url)

    def __len__(self) -> int:
        return len(self._paths)


class ImagePipeline:
    """
    Processes the images of one crawl run.

    ``storage`` and ``downloader`` are blocking clients; their calls run in
    worker threads so the event loop stays responsive.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        registry: UploadedImageRegistry,
        *,
        downloader: Optional[ImageDownloader] = None,
        cfg: Optional[Settings] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.cfg = cfg or default_settings
        self.storage = storage
        self.registry = registry
        self.downloader = downloader or ImageDownloader(
            timeout=self.cfg.IMAGE_DOWNLOAD_TIMEOUT_SECONDS,
            exclude_formats=self.cfg.image_exclude_format_list,
        )
        self.bucket = self.cfg.STORAGE_BUCKET
        self.pending: list[PendingImageRecord] = []
        self.stats = ImageStats()
        self._bucket_ready = False
        self._retry_kwargs = {"sleep": sleep} if sleep is not None else {}

    def is_supported(self, ref: ImageRef) -> bool:
        normalized = normalize_image_url(ref.src, self.cfg.image_normalize_host_list)
        return not is_excluded_format(normalized, self.cfg.image_exclude_format_list)

    def classify(self, ref: ImageRef) -> tuple[str, bool]:
        """Normalized URL and whether its format is supported. Records stats."""
        normalized = normalize_image_url(ref.src, self.cfg.image_normalize_host_list)
        supported = not is_excluded_format(normalized, self.cfg.image_exclude_format_list)
        self.stats.total_refs += 1
        self.stats.unique_all.add(normalized)
        if supported:
            self.stats.unique_allowed.add(normalized)
        else:
            self.stats.unique_unsupported.add(normalized)
        return normalized, supported

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        ensure_bucket(self.storage, self.bucket, self.cfg)
        self._bucket_ready = True

    def _upload(self, key: str, data: bytes) -> str:
        return retry_call(
            lambda: self.storage.upload(self.bucket, key, data, JPEG_CONTENT_TYPE),
            attempts=self.cfg.IMAGE_UPLOAD_RETRIES,
            delay_for=lambda attempt: exponential_delay(
                attempt,
                self.cfg.IMAGE_UPLOAD_BACKOFF_SECONDS,
                self.cfg.IMAGE_UPLOAD_BACKOFF_FACTOR,
            ),
            retry_on=(StorageError, OSError),
            label=f"upload {key}",
            **self._retry_kwargs,
        )

    def _record(self, owner_page_url: str, normalized: str, storage_path: str) -> None:
        self.pending.append(
            PendingImageRecord(
                owner_page_url=owner_page_url,
                original_url=normalized,
                storage_path=storage_path,
            )
        )

    async def process(
        self,
        image_ref: ImageRef,
        owner_page_url: str,
        should_cancel: CancelCheck = _never_cancelled,
    ) -> ImageResult:
        normalized, supported = self.classify(image_ref)
        if not supported:
            self.stats.unsupported += 1
            return ImageResult(ImageStatus.UNSUPPORTED, normalized)

        existing_path = self.registry.storage_path_for(normalized)
        if existing_path is not None:
            self.stats.skipped += 1
            self._record(owner_page_url, normalized, existing_path)
            return ImageResult(ImageStatus.SKIPPED, normalized, storage_path=existing_path)

        if should_cancel():
            return ImageResult(ImageStatus.CANCELLED, normalized)

        try:
            data = await asyncio.to_thread(self.downloader.download, image_ref.src)
            if should_cancel():
                return ImageResult(ImageStatus.CANCELLED, normalized)

            await asyncio.to_thread(self._ensure_bucket)
            if should_cancel():
                return ImageResult(ImageStatus.CANCELLED, normalized)

            jpeg = await asyncio.to_thread(
                transcode_image, data, self.cfg.IMAGE_MAX_DIM, self.cfg.IMAGE_JPEG_QUALITY
            )
            key = storage_key_for(normalized, self.cfg.IMAGE_HASH_LENGTH)
            storage_path = await asyncio.to_thread(self._upload, key, jpeg)
        except (ImageValidationError, StorageError, OSError) as e:
            self.stats.failed += 1
            logger.warning("Image %s failed: %s", image_ref.src, e)
            return ImageResult(ImageStatus.FAILED, normalized, error=str(e))

        # The object exists even if we stop now; keep it deduplicated.
        self.registry.add(normalized, storage_path)
        if should_cancel():
            return ImageResult(ImageStatus.CANCELLED, normalized, storage_path=storage_path)

        self.stats.uploaded += 1
        self._record(owner_page_url, normalized, storage_path)
        return ImageResult(ImageStatus.UPLOADED, normalized, storage_path=storage_path)
