"""
Tests for the crawl loop and the scrape_site job handler.

Page extraction, image download and storage are replaced by the fakes in
fakes.py; the database is a throwaway SQLite file.
"""

from unittest.mock import MagicMock, Mock

import pytest
import requests
from sqlalchemy import select

from docsite_ingest.core.errors import ConfigurationError
from docsite_ingest.core.image_utils import ImageDownloader
from docsite_ingest.dtos.crawl_dto import CrawlRequest
from docsite_ingest.entities.image import Image
from docsite_ingest.entities.page import Page
from docsite_ingest.services.crawler_service import (
    SCRAPE_JOB_NAME,
    CrawlerService,
    Frontier,
    _crawl_request_from_args,
    run_scrape_job,
)
from docsite_ingest.services.image_pipeline import ImagePipeline, UploadedImageRegistry
from docsite_ingest.services.job_service import JobService
from docsite_ingest.services.job_worker import JobContext
from fakes import FakeExtractor, make_extract, make_png_header

ROOT = "https://docs.example.com"


def p(slug):
    return f"{ROOT}/p/{slug}"


@pytest.fixture
def pipeline(cfg, fake_storage, fake_downloader):
    return ImagePipeline(
        fake_storage, UploadedImageRegistry(), downloader=fake_downloader, cfg=cfg,
        sleep=lambda _: None,
    )


def _context(session_factory, args, *, cancel=False):
    with session_factory() as session:
        service = JobService(session)
        job = service.create(SCRAPE_JOB_NAME, args)
        service.claim(job.id)
        if cancel:
            service.cancel(job.id)
        job_id = job.id
    return JobContext(job_id=job_id, name=SCRAPE_JOB_NAME, args=args, session_factory=session_factory)


class TestFrontier:
    def test_push_dedups_pending_and_visited(self):
        frontier = Frontier("docs.example.com")

        assert frontier.push(p("a"))
        assert not frontier.push(p("a") + "#section")
        frontier.mark_visited(frontier.pop())
        assert not frontier.push(p("a"))
        assert len(frontier) == 0
        assert frontier.visited_count == 1

    def test_trailing_slash_is_the_same_page(self):
        frontier = Frontier("docs.example.com")

        assert frontier.push(p("abc"))
        assert not frontier.push(p("abc") + "/")
        assert frontier.pending() == [p("abc")]

    def test_fifo_order(self):
        frontier = Frontier("docs.example.com")
        for slug in ("a", "b", "c"):
            frontier.push(p(slug))

        assert [frontier.pop(), frontier.pop()] == [p("a"), p("b")]
        assert frontier.pending() == [p("c")]
        assert frontier.pop() == p("c")
        assert frontier.pop() is None


class TestCrawlerService:
    @pytest.mark.asyncio
    async def test_discovery_follows_links_once(self, cfg, pipeline):
        extractor = FakeExtractor(
            {
                p("root"): make_extract(p("root"), links=[p("a"), p("b")]),
                p("a"): make_extract(p("a"), links=[p("root"), p("b")]),
                p("b"): make_extract(p("b"), links=[p("a")]),
            }
        )
        crawler = CrawlerService(extractor, pipeline, cfg=cfg, strict_progress=True)

        outcome = await crawler.crawl(CrawlRequest(root_url=p("root")))

        assert extractor.calls == [p("root"), p("a"), p("b")]
        assert [page["url"] for page in outcome.pages] == [p("root"), p("a"), p("b")]
        assert outcome.pages_attempted == 3
        assert outcome.progress.current == outcome.progress.total == 3
        assert not outcome.cancelled

    @pytest.mark.asyncio
    async def test_redirect_to_visited_page_is_skipped(self, cfg, pipeline):
        extractor = FakeExtractor(
            {
                p("root"): make_extract(p("root"), links=[p("a"), p("old-a")]),
                p("a"): make_extract(p("a")),
                p("old-a"): make_extract(p("old-a"), final_url=p("a")),
            }
        )
        crawler = CrawlerService(extractor, pipeline, cfg=cfg, strict_progress=True)

        outcome = await crawler.crawl(CrawlRequest(root_url=p("root")))

        assert [page["url"] for page in outcome.pages] == [p("root"), p("a")]
        assert outcome.pages_attempted == 3

    @pytest.mark.asyncio
    async def test_redirect_records_final_url(self, cfg, pipeline):
        extractor = FakeExtractor(
            {p("root"): make_extract(p("root"), final_url=p("home"), links=[p("home")])}
        )
        crawler = CrawlerService(extractor, pipeline, cfg=cfg, strict_progress=True)

        outcome = await crawler.crawl(CrawlRequest(root_url=p("root")))

        assert [page["url"] for page in outcome.pages] == [p("home")]
        assert extractor.calls == [p("root")]

    @pytest.mark.asyncio
    async def test_failed_page_does_not_stop_the_crawl(self, cfg, pipeline):
        extractor = FakeExtractor(
            {
                p("root"): make_extract(p("root"), links=[p("missing"), p("a")]),
                p("a"): make_extract(p("a")),
            }
        )
        crawler = CrawlerService(extractor, pipeline, cfg=cfg, strict_progress=True)

        outcome = await crawler.crawl(CrawlRequest(root_url=p("root")))

        assert outcome.pages_failed == 1
        assert [page["url"] for page in outcome.pages] == [p("root"), p("a")]

    @pytest.mark.asyncio
    async def test_trailing_slash_links_are_crawled_once(self, cfg, pipeline):
        extractor = FakeExtractor(
            {
                p("root"): make_extract(p("root"), links=[p("a"), p("a") + "/"]),
                p("a"): make_extract(p("a"), links=[p("root") + "/"]),
            }
        )
        crawler = CrawlerService(extractor, pipeline, cfg=cfg, strict_progress=True)

        outcome = await crawler.crawl(CrawlRequest(root_url=p("root") + "/"))

        assert extractor.calls == [p("root"), p("a")]
        assert [page["url"] for page in outcome.pages] == [p("root"), p("a")]

    @pytest.mark.asyncio
    async def test_oversized_image_does_not_stop_the_crawl(self, cfg, fake_storage):
        res = MagicMock()
        res.content = make_png_header(20000, 20000)
        session = MagicMock(spec=requests.Session)
        session.get.return_value = res
        pipeline = ImagePipeline(
            fake_storage,
            UploadedImageRegistry(),
            downloader=ImageDownloader(session=session, exclude_formats=[]),
            cfg=cfg,
            sleep=lambda _: None,
        )
        extractor = FakeExtractor(
            {
                p("a"): make_extract(p("a"), images=["https://cdn.example.com/huge.png"]),
                p("b"): make_extract(p("b")),
            }
        )
        crawler = CrawlerService(extractor, pipeline, cfg=cfg, strict_progress=True)

        outcome = await crawler.crawl(CrawlRequest(root_url=ROOT, page_urls=[p("a"), p("b")]))

        assert extractor.calls == [p("a"), p("b")]
        assert [page["url"] for page in outcome.pages] == [p("a"), p("b")]
        assert outcome.image_stats.failed == 1
        assert fake_storage.uploads == []
        assert not outcome.cancelled

    @pytest.mark.asyncio
    async def test_unexpected_image_error_counts_as_failed(self, cfg, fake_storage):
        downloader = Mock()
        downloader.download.side_effect = RuntimeError("decoder crashed")
        pipeline = ImagePipeline(
            fake_storage, UploadedImageRegistry(), downloader=downloader, cfg=cfg,
            sleep=lambda _: None,
        )
        extractor = FakeExtractor(
            {
                p("root"): make_extract(
                    p("root"),
                    images=["https://cdn.example.com/a.png", "https://cdn.example.com/b.png"],
                    links=[p("a")],
                ),
                p("a"): make_extract(p("a")),
            }
        )
        crawler = CrawlerService(extractor, pipeline, cfg=cfg, strict_progress=True)

        outcome = await crawler.crawl(CrawlRequest(root_url=p("root")))

        assert extractor.calls == [p("root"), p("a")]
        assert outcome.image_stats.failed == 2
        assert outcome.progress.current == outcome.progress.total == 4

    @pytest.mark.asyncio
    async def test_bounded_mode_never_follows_links(self, cfg, pipeline):
        extractor = FakeExtractor(
            {
                p("a"): make_extract(p("a"), links=[p("b"), p("c"), p("d")]),
                p("b"): make_extract(p("b"), links=[p("c"), p("a")]),
            }
        )
        crawler = CrawlerService(extractor, pipeline, cfg=cfg, strict_progress=True)

        outcome = await crawler.crawl(CrawlRequest(root_url=ROOT, page_urls=[p("a"), p("b")]))

        assert extractor.calls == [p("a"), p("b")]
        assert outcome.pages_provided == 2
        assert outcome.links_not_followed == 2

    @pytest.mark.asyncio
    async def test_bounded_mode_rejects_foreign_hosts(self, cfg, pipeline):
        extractor = FakeExtractor({})
        crawler = CrawlerService(extractor, pipeline, cfg=cfg)
        request = CrawlRequest(root_url=ROOT, page_urls=[p("a"), "https://evil.example.net/p/x"])

        with pytest.raises(ValueError, match="evil.example.net"):
            await crawler.crawl(request)
        assert extractor.calls == []

    @pytest.mark.asyncio
    async def test_images_count_towards_progress(self, cfg, pipeline, fake_storage):
        extractor = FakeExtractor(
            {
                p("root"): make_extract(
                    p("root"),
                    images=[
                        "https://cdn.example.com/a.png?sig=1",
                        "https://cdn.example.com/icon.svg",
                        "https://cdn.example.com/b.png",
                    ],
                ),
            }
        )
        crawler = CrawlerService(extractor, pipeline, cfg=cfg, strict_progress=True)

        outcome = await crawler.crawl(CrawlRequest(root_url=p("root")))

        assert outcome.progress.total == 3
        assert outcome.progress.current == 3
        assert outcome.progress.images_processed == 2
        assert len(fake_storage.uploads) == 2
        assert {r.owner_page_url for r in outcome.pending_images} == {p("root")}

    @pytest.mark.asyncio
    async def test_cancel_between_pages(self, cfg, pipeline):
        extractor = FakeExtractor(
            {
                p("root"): make_extract(p("root"), links=[p("a")]),
                p("a"): make_extract(p("a")),
            }
        )
        checks = iter([False, False, True])
        crawler = CrawlerService(extractor, pipeline, cfg=cfg)

        outcome = await crawler.crawl(CrawlRequest(root_url=p("root")), lambda: next(checks, True))

        assert outcome.cancelled
        assert extractor.calls == [p("root")]

    @pytest.mark.asyncio
    async def test_progress_lines_are_logged(self, cfg, pipeline):
        lines = []
        extractor = FakeExtractor({p("root"): make_extract(p("root"))})

        await CrawlerService(extractor, pipeline, cfg=cfg).crawl(
            CrawlRequest(root_url=p("root")), log=lines.append
        )

        assert any("Starting discovery crawl" in line for line in lines)
        assert any("/p/root" in line and "📄" in line for line in lines)
        assert any("Crawl finished" in line for line in lines)


class TestCrawlRequestFromArgs:
    def test_defaults_to_configured_site(self, cfg):
        request = _crawl_request_from_args({}, cfg)

        assert request.root_url == "https://docs.example.com"
        assert not request.bounded

    def test_camel_case_args(self, cfg):
        request = _crawl_request_from_args({"pageUrls": [p("a")]}, cfg)

        assert request.bounded
        assert request.page_urls == [p("a")]

    def test_no_root_url(self, cfg):
        cfg.SITE_PROJECT_URL = ""

        with pytest.raises(ConfigurationError):
            _crawl_request_from_args({}, cfg)


class TestRunScrapeJob:
    @pytest.mark.asyncio
    async def test_bounded_run_with_one_failing_page(
        self, cfg, file_session_factory, fake_storage, fake_downloader
    ):
        args = {"root_url": ROOT, "page_urls": [p("a"), p("gone")]}
        ctx = _context(file_session_factory, args)
        extractor = FakeExtractor({p("a"): make_extract(p("a"), title="A")})

        summary = await run_scrape_job(
            ctx,
            cfg=cfg,
            storage=fake_storage,
            extractor_factory=lambda request: extractor,
            downloader=fake_downloader,
        )

        assert summary["pages_inserted"] == 1
        assert summary["pages_failed"] == 1
        assert summary["pages_provided"] == 2
        assert extractor.closed
        with file_session_factory() as session:
            urls = session.execute(select(Page.url)).scalars().all()
            assert urls == [p("a")]
            logs = JobService(session).get(ctx.job_id).logs
        assert "Scraping completed" in logs
        assert "Pages inserted: 1" in logs

    @pytest.mark.asyncio
    async def test_signed_image_urls_share_one_upload(
        self, cfg, file_session_factory, fake_storage, fake_downloader
    ):
        args = {"root_url": ROOT, "page_urls": [p("a"), p("b")]}
        ctx = _context(file_session_factory, args)
        extractor = FakeExtractor(
            {
                p("a"): make_extract(p("a"), images=["https://cdn.example.com/a.png?sig=abc123"]),
                p("b"): make_extract(p("b"), images=["https://cdn.example.com/a.png?sig=xyz999"]),
            }
        )

        summary = await run_scrape_job(
            ctx,
            cfg=cfg,
            storage=fake_storage,
            extractor_factory=lambda request: extractor,
            downloader=fake_downloader,
        )

        assert len(fake_storage.uploads) == 1
        assert summary["images_uploaded"] == 1
        assert summary["images_skipped"] == 1
        assert summary["images_total_unique"] == 1
        assert summary["images_total_refs"] == 2
        assert summary["associations_new"] == 2
        with file_session_factory() as session:
            rows = session.execute(select(Image.original_url, Image.storage_path)).all()
        assert len(rows) == 2
        assert {url for url, _ in rows} == {"https://cdn.example.com/a.png"}
        assert len({path for _, path in rows}) == 1

    @pytest.mark.asyncio
    async def test_rerun_updates_and_reuses_uploads(
        self, cfg, file_session_factory, fake_storage, fake_downloader
    ):
        args = {"root_url": ROOT, "page_urls": [p("a")]}
        pages = {p("a"): make_extract(p("a"), images=["https://cdn.example.com/a.png?sig=1"])}

        for _ in range(2):
            summary = await run_scrape_job(
                _context(file_session_factory, args),
                cfg=cfg,
                storage=fake_storage,
                extractor_factory=lambda request: FakeExtractor(pages),
                downloader=fake_downloader,
            )

        assert summary["pages_inserted"] == 0
        assert summary["pages_updated"] == 1
        assert summary["images_skipped"] == 1
        assert summary["associations_new"] == 0
        assert summary["associations_existing"] == 1
        assert len(fake_storage.uploads) == 1

    @pytest.mark.asyncio
    async def test_cancelled_run_commits_nothing(
        self, cfg, file_session_factory, fake_storage, fake_downloader
    ):
        ctx = _context(file_session_factory, {"root_url": p("root")}, cancel=True)
        extractor = FakeExtractor({p("root"): make_extract(p("root"))})

        summary = await run_scrape_job(
            ctx,
            cfg=cfg,
            storage=fake_storage,
            extractor_factory=lambda request: extractor,
            downloader=fake_downloader,
        )

        assert summary["cancelled"] is True
        assert extractor.calls == []
        with file_session_factory() as session:
            assert session.execute(select(Page)).first() is None
