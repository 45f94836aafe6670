"""
Service layer for the durable job store.

Architecture:
    routers/jobs.py -> JobService -> ScrapeJobRepository -> scrape_jobs table
    JobWorker       -> JobService (claim / finish) and JobContext (log / cancel)

Job lifecycle:  queued -> running -> completed | failed | cancelled
    Cancelling a queued job ends it immediately (it never ran). Cancelling
    a running job only sets a flag; the worker observes it and finishes the
    job as cancelled, even if the work returns a result afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from docsite_ingest.core.config import Settings, settings as default_settings
from docsite_ingest.core.errors import JobNotFoundError, JobStateError
from docsite_ingest.dtos.scrape_job_dto import CancelResult, TailRead, TaskStatusRead
from docsite_ingest.entities.scrape_job import QUEUED, RUNNING, ScrapeJob
from docsite_ingest.repositories.scrape_job_repo import ScrapeJobRepository

logger = logging.getLogger(__name__)


def split_log_lines(logs: Optional[str]) -> list[str]:
    return logs.split("\n") if logs else []


class JobService:
    """
    Service for job creation, polling and cancellation.

    Handles:
    - Enqueuing and claiming jobs
    - Cancellation of queued and running jobs
    - TTL-annotated status reads and long polling
    - Log tailing by line cursor
    """

    def __init__(self, session: Session, *, cfg: Optional[Settings] = None) -> None:
        self.session = session
        self.cfg = cfg or default_settings
        self.job_repo = ScrapeJobRepository(session)

    def create(self, name: str, args: Any = None) -> ScrapeJob:
        """
        Enqueue a job.

        Args:
            name: Handler name the worker dispatches on
            args: Opaque JSON arguments

        Returns:
            The queued ScrapeJob

        Raises:
            ValueError: If name is empty
        """
        if not name or not name.strip():
            raise ValueError("Job name cannot be empty")
        job = self.job_repo.create_job(name.strip(), args)
        logger.info("Queued job %s (%s)", job.id, job.name)
        return job

    def get(self, job_id: str) -> ScrapeJob:
        job = self.job_repo.get_fresh(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def claim_next(self) -> Optional[ScrapeJob]:
        return self.job_repo.claim_next()

    def claim(self, job_id: str) -> ScrapeJob:
        """
        Claim a specific queued job.

        Raises:
            JobNotFoundError: No such job
            JobStateError: The job is no longer queued
        """
        job = self.job_repo.claim_by_id(job_id)
        if job is None:
            current = self.get(job_id)
            raise JobStateError(job_id, current.status)
        return job

    def append_log(self, job_id: str, line: str) -> None:
        if not self.job_repo.append_log(job_id, line):
            raise JobNotFoundError(job_id)

    def finish(
        self,
        job_id: str,
        success: bool,
        result: Any = None,
        error: Optional[str] = None,
    ) -> ScrapeJob:
        """
        Record the terminal transition. Repeating it on a finished job is a
        no-op that returns the job unchanged.
        """
        job = self.job_repo.finish(job_id, success, result=result, error=error)
        if job is None:
            raise JobNotFoundError(job_id)
        logger.info("Job %s finished with status=%s", job.id, job.status)
        return job

    def cancel(self, job_id: str) -> CancelResult:
        """
        Cancel a queued or running job.

        Args:
            job_id: ID of the job to cancel

        Returns:
            CancelResult describing what happened

        Raises:
            JobNotFoundError: No such job
            JobStateError: The job already finished; ``.status`` names how
        """
        job = self.get(job_id)

        if job.status == QUEUED:
            if self.cfg.JOB_DELETE_QUEUED_ON_CANCEL:
                if self.job_repo.delete_queued(job_id):
                    logger.info("Deleted queued job %s", job_id)
                    return CancelResult(job_id=job_id, action="deleted", previous_status=QUEUED)
            elif self.job_repo.mark_cancelled(job_id):
                logger.info("Cancelled queued job %s", job_id)
                return CancelResult(
                    job_id=job_id, action="marked_cancelled", previous_status=QUEUED
                )
            # A worker claimed it in the meantime.
            job = self.get(job_id)

        if job.status == RUNNING and self.job_repo.request_cancel(job_id):
            logger.info("Cancellation requested for running job %s", job_id)
            return CancelResult(job_id=job_id, action="marked_cancelled", previous_status=RUNNING)

        job = self.get(job_id)
        raise JobStateError(job_id, job.status)

    def effective_ttl(self, requested_ttl_ms: Optional[int] = None) -> int:
        """Requested TTL clamped to the configured bounds; the default when absent."""
        if requested_ttl_ms is None or requested_ttl_ms <= 0:
            return self.cfg.JOB_TTL_DEFAULT_MS
        return max(self.cfg.JOB_TTL_MIN_MS, min(self.cfg.JOB_TTL_MAX_MS, int(requested_ttl_ms)))

    def to_status(self, job: ScrapeJob, requested_ttl_ms: Optional[int] = None) -> TaskStatusRead:
        return TaskStatusRead(
            id=job.id,
            name=job.name,
            status=job.status,
            result=job.result,
            error=job.error,
            logs=split_log_lines(job.logs),
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            ttl=self.effective_ttl(requested_ttl_ms),
            poll_interval=self.cfg.JOB_POLL_INTERVAL_MS,
        )

    def get_with_ttl(self, job_id: str, requested_ttl_ms: Optional[int] = None) -> TaskStatusRead:
        return self.to_status(self.get(job_id), requested_ttl_ms)

    async def wait_for_result(
        self,
        job_id: str,
        timeout_ms: Optional[int] = None,
        requested_ttl_ms: Optional[int] = None,
        *,
        poll_interval_ms: Optional[int] = None,
    ) -> TaskStatusRead:
        """
        Poll until the job is terminal or ``timeout_ms`` elapses.

        Returns the latest status either way; callers check ``status`` to
        see whether the result is final.
        """
        timeout_ms = self.cfg.JOB_RESULT_TIMEOUT_MS if timeout_ms is None else timeout_ms
        interval_ms = poll_interval_ms or self.cfg.JOB_POLL_INTERVAL_MS
        deadline = time.monotonic() + timeout_ms / 1000

        job = self.get(job_id)
        while not job.is_terminal:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval_ms / 1000, remaining))
            job = self.get(job_id)
        return self.to_status(job, requested_ttl_ms)

    def tail(self, job_id: str, since_line: int = 0) -> TailRead:
        job = self.get(job_id)
        lines = split_log_lines(job.logs)
        start = max(0, since_line)
        return TailRead(id=job.id, status=job.status, lines=lines[start:], next_cursor=len(lines))

    def list_jobs(
        self,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ScrapeJob]:
        return self.job_repo.list_jobs(status=status, limit=limit, offset=offset)

    def clear_finished(self, older_than: Optional[datetime] = None) -> int:
        deleted = self.job_repo.delete_terminal(older_than)
        logger.info("Deleted %d finished job(s)", deleted)
        return deleted
