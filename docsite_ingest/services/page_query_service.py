"""
Read access to ingested pages and the destructive clear-all maintenance
operation.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from docsite_ingest.core.config import Settings, settings as default_settings
from docsite_ingest.core.errors import StorageError
from docsite_ingest.core.storage import ObjectStorage
from docsite_ingest.dtos.page_dto import ClearResult, PageRead
from docsite_ingest.entities.page import Page
from docsite_ingest.repositories.image_repo import ImageRepository
from docsite_ingest.repositories.page_repo import PageRepository

logger = logging.getLogger(__name__)

STORAGE_DELETE_BATCH = 100


class PageQueryService:
    def __init__(
        self,
        session: Session,
        *,
        storage: Optional[ObjectStorage] = None,
        cfg: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.storage = storage
        self.cfg = cfg or default_settings
        self.page_repo = PageRepository(session)
        self.image_repo = ImageRepository(session)

    def _public_url(self, storage_path: str) -> str:
        public_url = getattr(self.storage, "public_url", None)
        if callable(public_url):
            return public_url(self.cfg.STORAGE_BUCKET, storage_path)
        return storage_path

    def _to_read(self, page: Page, include_images: bool) -> PageRead:
        images = None
        if include_images:
            images = {img.original_url: self._public_url(img.storage_path) for img in page.images}
        return PageRead(
            id=page.id,
            url=page.url,
            title=page.title,
            content=page.content,
            scraped_at=page.scraped_at,
            images=images,
        )

    def search_pages(
        self,
        search: Optional[str] = None,
        url: Optional[str] = None,
        include_images: bool = False,
        limit: int = 50,
    ) -> list[PageRead]:
        """
        Pages matching ``search`` in title or content, or exactly ``url``.

        Args:
            search: Case-insensitive substring to look for
            url: Exact page URL
            include_images: Attach ``{original_url: public_url}`` per page
            limit: Maximum number of pages to return

        Returns:
            List of PageRead DTOs, one per page id
        """
        pages = self.page_repo.search(
            search=search, url=url, include_images=include_images, limit=limit
        )
        seen: set[int] = set()
        results = []
        for page in pages:
            if page.id in seen:
                continue
            seen.add(page.id)
            results.append(self._to_read(page, include_images))
        return results

    def clear_all(self) -> ClearResult:
        """
        Delete every image row, every page row and every object in the
        image bucket. Storage batches that fail are logged and counted.
        """
        result = ClearResult()
        result.images_deleted = self.image_repo.delete_all()
        result.pages_deleted = self.page_repo.delete_all()
        logger.info(
            "Deleted %d image row(s) and %d page row(s)",
            result.images_deleted,
            result.pages_deleted,
        )

        if self.storage is None:
            return result

        bucket = self.cfg.STORAGE_BUCKET
        offset = 0
        while True:
            try:
                keys = self.storage.list_objects(bucket, limit=STORAGE_DELETE_BATCH, offset=offset)
            except StorageError as e:
                logger.error("Listing objects in '%s' failed: %s", bucket, e)
                result.failed_batches += 1
                break
            if not keys:
                break
            try:
                self.storage.remove(bucket, keys)
                result.objects_deleted += len(keys)
            except StorageError as e:
                logger.error("Deleting %d object(s) from '%s' failed: %s", len(keys), bucket, e)
                result.failed_batches += 1
                # Skip past the batch we could not delete.
                offset += len(keys)
        logger.info("Deleted %d storage object(s)", result.objects_deleted)
        return result
