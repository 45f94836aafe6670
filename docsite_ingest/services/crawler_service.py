"""
Crawl frontier management and the scrape job handler.

Architecture:
    run_scrape_job -> CrawlerService -> PageExtractor (static, browser fallback)
                                     -> ImagePipeline -> ObjectStorage
    run_scrape_job -> BulkCommitService -> PageRepository / ImageRepository

Two modes:
    discovery - start at the root URL and follow every same-host page link
    bounded   - attempt exactly the given URLs; links found on them are
                counted in links_not_followed but never queued

Pages are fetched one at a time. A page that fails is logged and counted;
the crawl carries on. Nothing is written to the database until the
frontier is exhausted.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from docsite_ingest.core.config import Settings, settings as default_settings
from docsite_ingest.core.errors import ConfigurationError
from docsite_ingest.core.page_fetcher import (
    FallbackPageExtractor,
    PageExtractor,
    StaticPageExtractor,
)
from docsite_ingest.core.progress import ProgressTracker
from docsite_ingest.core.storage import build_storage
from docsite_ingest.core.url_utils import hostname_of, normalize_page_url, url_path
from docsite_ingest.dtos.crawl_dto import CrawlRequest
from docsite_ingest.repositories.image_repo import ImageRepository
from docsite_ingest.services.bulk_commit_service import BulkCommitService, build_summary
from docsite_ingest.services.image_pipeline import (
    ImagePipeline,
    ImageResult,
    ImageStats,
    ImageStatus,
    PendingImageRecord,
    UploadedImageRegistry,
)

if TYPE_CHECKING:
    from docsite_ingest.services.job_worker import JobContext

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]
LogFn = Callable[[str], None]

SCRAPE_JOB_NAME = "scrape_site"

_IMAGE_ICONS = {
    ImageStatus.UPLOADED: "🖼️",
    ImageStatus.SKIPPED: "⏭️",
    ImageStatus.FAILED: "❌",
}


class Frontier:
    """Pending URLs in insertion order plus the set already visited."""

    def __init__(self, allowed_host: str) -> None:
        self.allowed_host = allowed_host.lower()
        self._pending: OrderedDict[str, None] = OrderedDict()
        self._visited: set[str] = set()

    def push(self, url: str) -> bool:
        """Queue ``url``; True only if it was neither pending nor visited."""
        url = normalize_page_url(url)
        if url in self._visited or url in self._pending:
            return False
        self._pending[url] = None
        return True

    def pop(self) -> Optional[str]:
        if not self._pending:
            return None
        url, _ = self._pending.popitem(last=False)
        return url

    def mark_visited(self, url: str) -> None:
        self._visited.add(normalize_page_url(url))

    def is_visited(self, url: str) -> bool:
        return normalize_page_url(url) in self._visited

    def pending(self) -> list[str]:
        return list(self._pending)

    @property
    def visited_count(self) -> int:
        return len(self._visited)

    def __len__(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending)


@dataclass
class CrawlOutcome:
    pages: list[dict[str, Any]] = field(default_factory=list)
    pending_images: list[PendingImageRecord] = field(default_factory=list)
    pages_failed: int = 0
    pages_attempted: int = 0
    pages_provided: int = 0
    progress: ProgressTracker = field(default_factory=ProgressTracker)
    cancelled: bool = False
    links_not_followed: int = 0
    image_stats: ImageStats = field(default_factory=ImageStats)


def _never_cancelled() -> bool:
    return False


class CrawlerService:
    """
    Drains a Frontier through a page extractor and the image pipeline.

    The extractor is a blocking client; each fetch runs in a worker thread
    and cancellation is checked on both sides of it.
    """

    def __init__(
        self,
        extractor: PageExtractor,
        pipeline: ImagePipeline,
        *,
        cfg: Optional[Settings] = None,
        strict_progress: bool = False,
    ) -> None:
        self.extractor = extractor
        self.pipeline = pipeline
        self.cfg = cfg or default_settings
        self.strict_progress = strict_progress

    def _seed(self, request: CrawlRequest, frontier: Frontier) -> Optional[int]:
        """Fill the frontier. Returns the attempt budget in bounded mode."""
        if not request.bounded:
            frontier.push(request.root_url)
            return None

        urls = [normalize_page_url(u) for u in request.page_urls or [] if u and u.strip()]
        foreign = [u for u in urls if hostname_of(u) != frontier.allowed_host]
        if foreign:
            raise ValueError(
                f"page_urls must share the root host '{frontier.allowed_host}': "
                + ", ".join(foreign[:5])
            )
        for url in urls:
            frontier.push(url)
        return len(frontier)

    async def crawl(
        self,
        request: CrawlRequest,
        should_cancel: CancelCheck = _never_cancelled,
        log: Optional[LogFn] = None,
    ) -> CrawlOutcome:
        """
        Run the crawl described by ``request``.

        Raises:
            ValueError: In bounded mode, a page URL is on another host.
                Raised before anything is fetched.
        """
        allowed_host = hostname_of(request.root_url)
        frontier = Frontier(allowed_host)
        budget = self._seed(request, frontier)

        progress = ProgressTracker(total=len(frontier), strict=self.strict_progress, log=log)
        outcome = CrawlOutcome(
            progress=progress,
            pages_provided=budget or 0,
            image_stats=self.pipeline.stats,
        )
        requested = set(frontier.pending()) if budget is not None else set()
        not_followed: set[str] = set()

        mode = f"bounded ({budget} pages)" if budget is not None else "discovery"
        progress.log_progress("🚀", f"Starting {mode} crawl of {request.root_url}")

        while frontier and (budget is None or outcome.pages_attempted < budget):
            if should_cancel():
                outcome.cancelled = True
                break

            url = frontier.pop()
            outcome.pages_attempted += 1

            if frontier.is_visited(url):
                progress.mark_attempt("visited", "⏭️", f"Already visited {url_path(url)}")
                continue

            try:
                extract = await asyncio.to_thread(self.extractor.extract, url)
            except Exception as e:
                frontier.mark_visited(url)
                outcome.pages_failed += 1
                logger.warning("Page %s failed: %s", url, e)
                progress.mark_attempt("page failed", "❌", f"Failed {url_path(url)}: {e}")
                continue

            if should_cancel():
                outcome.cancelled = True
                break

            frontier.mark_visited(url)
            identity = normalize_page_url(extract.final_url or url)
            if identity != url:
                if frontier.is_visited(identity):
                    progress.mark_attempt(
                        "redirect to visited",
                        "↪️",
                        f"{url_path(url)} redirected to visited {url_path(identity)}",
                    )
                    continue
                frontier.mark_visited(identity)

            new_links = 0
            for link in extract.page_links:
                if budget is not None:
                    if link not in requested and not frontier.is_visited(link):
                        not_followed.add(link)
                    continue
                if frontier.push(link):
                    new_links += 1

            supported = [ref for ref in extract.image_refs if self.pipeline.is_supported(ref)]
            progress.add_total(new_links + len(supported))

            outcome.pages.append(
                {"url": identity, "title": extract.title, "content": extract.content}
            )
            progress.mark_page()
            progress.mark_attempt(
                "page",
                "📄",
                f"{url_path(identity)} ({len(supported)} images, {new_links} new links)",
            )

            for ref in extract.image_refs:
                if should_cancel():
                    outcome.cancelled = True
                    break
                try:
                    result = await self.pipeline.process(ref, identity, should_cancel)
                except Exception as e:
                    self.pipeline.stats.failed += 1
                    logger.warning("Image %s on %s failed: %s", ref.src, identity, e)
                    result = ImageResult(ImageStatus.FAILED, ref.src, error=str(e))
                if result.status == ImageStatus.UNSUPPORTED:
                    continue
                if result.status == ImageStatus.CANCELLED:
                    outcome.cancelled = True
                    break
                progress.mark_image()
                progress.mark_attempt(
                    f"image {result.status}",
                    _IMAGE_ICONS.get(result.status, ""),
                    f"{result.status.capitalize()} {url_path(result.normalized_url)}",
                )
            if outcome.cancelled:
                break

        outcome.pending_images = list(self.pipeline.pending)
        outcome.links_not_followed = len(not_followed)
        if outcome.cancelled:
            progress.log_progress("🛑", "Crawl cancelled")
        else:
            progress.log_progress(
                "✅",
                f"Crawl finished: {len(outcome.pages)} pages, {outcome.pages_failed} failed",
            )
        return outcome


def _crawl_request_from_args(args: dict[str, Any], cfg: Settings) -> CrawlRequest:
    page_urls = args.get("page_urls") or args.get("pageUrls") or None
    root_url = args.get("root_url") or args.get("rootUrl") or cfg.SITE_PROJECT_URL
    if not root_url and page_urls:
        root_url = page_urls[0]
    if not root_url:
        raise ConfigurationError("No root URL: pass root_url or set SITE_PROJECT_URL")
    password = args.get("password") or cfg.SITE_PROJECT_PASSWORD
    return CrawlRequest(root_url=root_url, page_urls=page_urls, password=password)


def _default_extractor(request: CrawlRequest) -> PageExtractor:
    from docsite_ingest.core.browser_fetcher import BrowserPageExtractor

    host = hostname_of(request.root_url)
    return FallbackPageExtractor(
        StaticPageExtractor(host),
        lambda: BrowserPageExtractor(host, request.password),
    )


async def run_scrape_job(
    ctx: "JobContext",
    *,
    cfg: Optional[Settings] = None,
    storage=None,
    extractor_factory: Callable[[CrawlRequest], PageExtractor] = _default_extractor,
    downloader=None,
) -> dict[str, Any]:
    """
    Job handler for ``scrape_site``: crawl, then commit, then report.

    Configuration problems (no root URL, no storage) raise
    ConfigurationError before anything is fetched. A cancelled crawl
    commits nothing.
    """
    cfg = cfg or default_settings
    request = _crawl_request_from_args(ctx.args or {}, cfg)
    storage = storage if storage is not None else build_storage(cfg)

    with ctx.session_factory() as session:
        registry = UploadedImageRegistry.from_repository(ImageRepository(session))
    ctx.log(f"Loaded {len(registry)} previously uploaded image(s)")

    pipeline = ImagePipeline(storage, registry, downloader=downloader, cfg=cfg)
    extractor = extractor_factory(request)
    try:
        outcome = await CrawlerService(extractor, pipeline, cfg=cfg).crawl(
            request, ctx.is_cancelled, ctx.log
        )
    finally:
        extractor.close()

    if outcome.cancelled:
        summary = build_summary(outcome, None)
        return summary.model_dump()

    with ctx.session_factory() as session:
        commit_result = BulkCommitService(session, cfg=cfg).commit(
            outcome.pages, outcome.pending_images
        )
    summary = build_summary(outcome, commit_result)
    for line in summary.summary_lines():
        ctx.log(line)
    return summary.model_dump()
