"""
Bulk persistence of one crawl's pages and image associations.

Runs once, after the crawl frontier is exhausted:

1. Deduplicate pages by URL (the last extract of a URL wins).
2. Check which URLs already exist, to tell inserts from updates.
3. Upsert pages in chunks. Each chunk is retried with capped linear
   backoff; a chunk that keeps failing is logged and its pages count as
   failed.
4. Resolve each pending image record's owner URL to a page id. Records
   whose page did not make it (failed chunk) are dropped.
5. Insert the remaining (page_id, original_url) rows in chunks with the
   same retry policy. Pairs that already exist are counted, not inserted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from docsite_ingest.core.config import Settings, settings as default_settings
from docsite_ingest.core.retry import capped_linear_delay, retry_call
from docsite_ingest.dtos.crawl_dto import CrawlSummary
from docsite_ingest.repositories.base_repo import chunked
from docsite_ingest.repositories.image_repo import ImageRepository
from docsite_ingest.repositories.page_repo import PageRepository
from docsite_ingest.services.image_pipeline import PendingImageRecord

if TYPE_CHECKING:
    from docsite_ingest.services.crawler_service import CrawlOutcome

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass
class CommitResult:
    pages_inserted: int = 0
    pages_updated: int = 0
    pages_failed: int = 0
    url_to_id: dict[str, int] = field(default_factory=dict)
    associations_new: int = 0
    associations_existing: int = 0
    associations_failed: int = 0
    images_dropped: int = 0

    @property
    def pages_upserted(self) -> int:
        return self.pages_inserted + self.pages_updated


class BulkCommitService:
    def __init__(
        self,
        session: Session,
        *,
        cfg: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.cfg = cfg or default_settings
        self.page_repo = PageRepository(session)
        self.image_repo = ImageRepository(session)
        self._sleep = sleep

    def _with_retry(self, fn: Callable[[], R], label: str) -> R:
        def attempt() -> R:
            try:
                return fn()
            except SQLAlchemyError:
                self.session.rollback()
                raise

        return retry_call(
            attempt,
            attempts=self.cfg.COMMIT_MAX_ATTEMPTS,
            delay_for=lambda n: capped_linear_delay(
                n, self.cfg.COMMIT_BACKOFF_SECONDS, self.cfg.COMMIT_MAX_BACKOFF_SECONDS
            ),
            retry_on=(SQLAlchemyError,),
            label=label,
            sleep=self._sleep,
        )

    def commit(
        self,
        pages: Iterable[dict[str, Any]],
        pending_images: Iterable[PendingImageRecord],
    ) -> CommitResult:
        """
        Persist pages, then their image associations.

        Args:
            pages: Dicts with ``url``, ``title`` and ``content``
            pending_images: Records produced by the image pipeline

        Returns:
            CommitResult with insert/update/failure counts
        """
        result = CommitResult()

        unique_pages: dict[str, dict[str, Any]] = {}
        for page in pages:
            unique_pages[page["url"]] = page
        if unique_pages:
            existing_urls = self.page_repo.existing_urls(unique_pages)
        else:
            existing_urls = set()

        page_chunks = list(chunked(list(unique_pages.values()), self.cfg.PAGE_UPSERT_CHUNK))
        for index, chunk in enumerate(page_chunks, start=1):
            label = f"page chunk {index}/{len(page_chunks)}"
            try:
                ids = self._with_retry(lambda: self.page_repo.upsert_chunk(chunk), label)
            except SQLAlchemyError as e:
                logger.error("Skipping %s (%d pages): %s", label, len(chunk), e)
                result.pages_failed += len(chunk)
                continue
            result.url_to_id.update(ids)

        for url in result.url_to_id:
            if url in existing_urls:
                result.pages_updated += 1
            else:
                result.pages_inserted += 1

        rows: dict[tuple[int, str], dict[str, Any]] = {}
        for record in pending_images:
            page_id = result.url_to_id.get(record.owner_page_url)
            if page_id is None:
                result.images_dropped += 1
                continue
            rows.setdefault(
                (page_id, record.original_url),
                {
                    "page_id": page_id,
                    "original_url": record.original_url,
                    "storage_path": record.storage_path,
                },
            )
        if result.images_dropped:
            logger.warning(
                "Dropped %d image record(s) whose page could not be resolved",
                result.images_dropped,
            )

        existing_pairs = self.image_repo.existing_pairs(rows) if rows else set()
        result.associations_existing = len(existing_pairs)
        to_insert = [row for key, row in rows.items() if key not in existing_pairs]

        image_chunks = list(chunked(to_insert, self.cfg.IMAGE_INSERT_CHUNK))
        for index, chunk in enumerate(image_chunks, start=1):
            label = f"image chunk {index}/{len(image_chunks)}"
            try:
                result.associations_new += self._with_retry(
                    lambda: self.image_repo.insert_chunk(chunk), label
                )
            except SQLAlchemyError as e:
                logger.error("Skipping %s (%d rows): %s", label, len(chunk), e)
                result.associations_failed += len(chunk)

        logger.info(
            "Committed pages: %d inserted, %d updated, %d failed; associations: %d new, %d existing",
            result.pages_inserted,
            result.pages_updated,
            result.pages_failed,
            result.associations_new,
            result.associations_existing,
        )
        return result


def build_summary(outcome: "CrawlOutcome", commit: Optional[CommitResult]) -> CrawlSummary:
    """Merge crawl and commit accounting into the user-facing report."""
    commit = commit or CommitResult()
    stats = outcome.image_stats
    skipped = outcome.pages_attempted - len(outcome.pages) - outcome.pages_failed
    return CrawlSummary(
        pages_provided=outcome.pages_provided,
        pages_analyzed=outcome.pages_attempted,
        pages_inserted=commit.pages_inserted,
        pages_updated=commit.pages_updated,
        pages_failed=outcome.pages_failed + commit.pages_failed,
        pages_skipped=max(0, skipped),
        images_total_unique=len(stats.unique_all),
        images_unsupported_unique=len(stats.unique_unsupported),
        images_allowed_unique=len(stats.unique_allowed),
        images_total_refs=stats.total_refs,
        images_uploaded=stats.uploaded,
        images_skipped=stats.skipped,
        images_failed=stats.failed,
        associations_new=commit.associations_new,
        associations_existing=commit.associations_existing,
        links_not_followed=outcome.links_not_followed,
        cancelled=outcome.cancelled,
    )
