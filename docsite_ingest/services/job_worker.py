"""
Single-process job worker.

The worker claims one queued job at a time, runs the handler registered
for the job's name and records the terminal status. Handlers are async
callables taking a JobContext; they report progress through ctx.log() and
poll ctx.is_cancelled() at their own suspension points.

Terminal status rules:
    cancel flag set            -> cancelled (even if the handler returned)
    handler raised             -> failed, with the exception message
    otherwise                  -> completed, with the handler's return value
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from docsite_ingest.core.config import Settings, settings as default_settings
from docsite_ingest.core.database import SessionLocal
from docsite_ingest.entities.base import utcnow
from docsite_ingest.entities.scrape_job import ScrapeJob
from docsite_ingest.repositories.scrape_job_repo import ScrapeJobRepository
from docsite_ingest.services.job_service import JobService

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    job_id: str
    name: str
    args: Any
    session_factory: sessionmaker[Session]

    def log(self, line: str) -> None:
        """Log to the module logger and append a timestamped line to the job."""
        logger.info("[job %s] %s", self.job_id, line)
        stamped = f"[{utcnow().isoformat(timespec='seconds')}] {line}"
        with self.session_factory() as session:
            ScrapeJobRepository(session).append_log(self.job_id, stamped)

    def is_cancelled(self) -> bool:
        with self.session_factory() as session:
            return ScrapeJobRepository(session).is_cancel_requested(self.job_id)


Handler = Callable[[JobContext], Awaitable[Any]]


class JobWorker:
    def __init__(
        self,
        session_factory: sessionmaker[Session] = SessionLocal,
        *,
        cfg: Optional[Settings] = None,
    ) -> None:
        self.session_factory = session_factory
        self.cfg = cfg or default_settings
        self.handlers: dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        self.handlers[name] = handler

    async def run_once(self) -> Optional[ScrapeJob]:
        """
        Claim and run the oldest queued job.

        Returns:
            The finished job, or None if the queue was empty
        """
        with self.session_factory() as session:
            job = JobService(session, cfg=self.cfg).claim_next()
            if job is None:
                return None
            job_id, name, args = job.id, job.name, job.args
        return await self.execute(job_id, name, args)

    async def execute(self, job_id: str, name: str, args: Any) -> ScrapeJob:
        ctx = JobContext(job_id=job_id, name=name, args=args, session_factory=self.session_factory)
        handler = self.handlers.get(name)

        success = False
        result: Any = None
        error: Optional[str] = None

        if handler is None:
            error = f"No handler registered for job '{name}'"
            logger.error("Job %s: %s", job_id, error)
        else:
            ctx.log(f"Started {name}")
            try:
                result = await handler(ctx)
                success = True
            except asyncio.CancelledError:
                with self.session_factory() as session:
                    JobService(session, cfg=self.cfg).finish(
                        job_id, False, error="worker shut down"
                    )
                raise
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.exception("Job %s (%s) failed", job_id, name)
                ctx.log(f"Failed: {error}")

        with self.session_factory() as session:
            finished = JobService(session, cfg=self.cfg).finish(
                job_id, success, result=result, error=error
            )
        logger.info("Job %s (%s) ended as %s", job_id, name, finished.status)
        return finished

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Process jobs until ``stop_event`` is set, idling when the queue is empty."""
        stop_event = stop_event or asyncio.Event()
        logger.info("Worker started with handlers: %s", ", ".join(sorted(self.handlers)))
        while not stop_event.is_set():
            try:
                job = await self.run_once()
            except Exception:
                logger.exception("Worker iteration failed")
                job = None
            if job is not None:
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.cfg.WORKER_IDLE_SECONDS)
            except asyncio.TimeoutError:
                pass
        logger.info("Worker stopped")


def build_default_worker(
    session_factory: sessionmaker[Session] = SessionLocal,
) -> JobWorker:
    from docsite_ingest.services.crawler_service import SCRAPE_JOB_NAME, run_scrape_job

    worker = JobWorker(session_factory)
    worker.register(SCRAPE_JOB_NAME, run_scrape_job)
    return worker
