"""
Repository for handling scrape job operations.

This repository manages the durable job store. All SQL lives here --
services must call these methods rather than executing queries directly.

Concurrency note: every state transition is a single conditional
``UPDATE ... WHERE status IN (...)`` so the database, not the process,
decides races. claim_next() only wins when its update touched exactly one
row; log appends concatenate in SQL so concurrent writers never lose lines.
"""
from __future__ import annotations

import secrets
import string
import time
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import case, delete, select, update
from sqlalchemy.orm import Session

from docsite_ingest.core.config import settings
from docsite_ingest.entities.base import utcnow
from docsite_ingest.entities.scrape_job import (
    ACTIVE_STATUSES,
    CANCELLED,
    COMPLETED,
    FAILED,
    QUEUED,
    RUNNING,
    TERMINAL_STATUSES,
    ScrapeJob,
)
from docsite_ingest.repositories.base_repo import BaseRepository

BASE36_ALPHABET = string.digits + string.ascii_lowercase
CLAIM_CANDIDATES = 10


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(BASE36_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_job_id(random_length: Optional[int] = None) -> str:
    """Millisecond timestamp in base36 followed by a random base36 suffix."""
    if random_length is None:
        random_length = settings.JOB_ID_RANDOM_LENGTH
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(random_length))
    return to_base36(int(time.time() * 1000)) + suffix


class ScrapeJobRepository(BaseRepository[ScrapeJob]):
    """
    Repository for scrape job operations.

    Extends BaseRepository with the job lifecycle: create, claim,
    log append, finish and cancel.
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session=session, model=ScrapeJob)

    def create_job(self, name: str, args: Any = None) -> ScrapeJob:
        """
        Create a new job with queued status.

        Args:
            name: Operation identifier used to pick the handler
            args: Opaque JSON arguments passed to the handler

        Returns:
            Created ScrapeJob entity
        """
        job = ScrapeJob(
            id=generate_job_id(),
            name=name,
            status=QUEUED,
            args=args,
            logs="",
            cancel_requested=False,
        )
        return self.create(job, commit=True)

    def _try_claim(self, job_id: str) -> bool:
        stmt = (
            update(ScrapeJob)
            .where(ScrapeJob.id == job_id, ScrapeJob.status == QUEUED)
            .values(status=RUNNING, started_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def claim_next(self) -> Optional[ScrapeJob]:
        """
        Move the oldest queued job to running.

        Candidates are read oldest first; each is claimed with a conditional
        update. Losing the race for one candidate moves on to the next.

        Returns:
            The claimed job (now running), or None if nothing was claimable
        """
        while True:
            stmt = (
                select(ScrapeJob.id)
                .where(ScrapeJob.status == QUEUED)
                .order_by(ScrapeJob.created_at, ScrapeJob.id)
                .limit(CLAIM_CANDIDATES)
            )
            candidates = list(self.session.execute(stmt).scalars().all())
            if not candidates:
                return None
            for job_id in candidates:
                if self._try_claim(job_id):
                    return self.get_fresh(job_id)

    def claim_by_id(self, job_id: str) -> Optional[ScrapeJob]:
        """
        Claim one specific job.

        Returns:
            The job if it was queued and is now running, otherwise None
        """
        if self._try_claim(job_id):
            return self.get_fresh(job_id)
        return None

    def append_log(self, job_id: str, line: str) -> bool:
        """
        Append one line to the job's log in a single UPDATE.

        Returns:
            False if the job does not exist
        """
        new_logs = case(
            (ScrapeJob.logs == "", line),
            else_=ScrapeJob.logs + "\n" + line,
        )
        stmt = (
            update(ScrapeJob)
            .where(ScrapeJob.id == job_id)
            .values(logs=new_logs)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def finish(
        self,
        job_id: str,
        success: bool,
        result: Any = None,
        error: Optional[str] = None,
    ) -> Optional[ScrapeJob]:
        """
        Record the single terminal transition of a job.

        A set cancel flag wins over ``success``. Finishing a job that is
        already terminal changes nothing.

        Args:
            job_id: ID of the job to finish
            success: True for completed, False for failed
            result: Opaque result payload (kept on success only)
            error: Error message (kept on failure only)

        Returns:
            The job row after the call, or None if not found
        """
        while True:
            now = utcnow()
            cancelled = self.session.execute(
                update(ScrapeJob)
                .where(
                    ScrapeJob.id == job_id,
                    ScrapeJob.status.in_(ACTIVE_STATUSES),
                    ScrapeJob.cancel_requested.is_(True),
                )
                .values(status=CANCELLED, finished_at=now)
                .execution_options(synchronize_session=False)
            )
            if cancelled.rowcount == 1:
                break

            finished = self.session.execute(
                update(ScrapeJob)
                .where(
                    ScrapeJob.id == job_id,
                    ScrapeJob.status.in_(ACTIVE_STATUSES),
                    ScrapeJob.cancel_requested.is_(False),
                )
                .values(
                    status=COMPLETED if success else FAILED,
                    result=result if success else None,
                    error=None if success else (error or "failed"),
                    finished_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if finished.rowcount == 1:
                break

            # Neither matched: terminal or missing, unless a cancel landed
            # between the two statements.
            current = self.session.execute(
                select(ScrapeJob.status).where(ScrapeJob.id == job_id)
            ).scalar_one_or_none()
            if current is None or current in TERMINAL_STATUSES:
                break

        self.session.commit()
        return self.get_fresh(job_id)

    def mark_cancelled(self, job_id: str) -> bool:
        """
        Cancel a job that never started.

        Returns:
            True if the job was queued and is now cancelled
        """
        stmt = (
            update(ScrapeJob)
            .where(ScrapeJob.id == job_id, ScrapeJob.status == QUEUED)
            .values(status=CANCELLED, finished_at=utcnow(), cancel_requested=True)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def delete_queued(self, job_id: str) -> bool:
        stmt = (
            delete(ScrapeJob)
            .where(ScrapeJob.id == job_id, ScrapeJob.status == QUEUED)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def request_cancel(self, job_id: str) -> bool:
        """
        Set the cancel flag on a running job.

        Returns:
            True if the job was running and the flag is now set
        """
        stmt = (
            update(ScrapeJob)
            .where(ScrapeJob.id == job_id, ScrapeJob.status == RUNNING)
            .values(cancel_requested=True)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def is_cancel_requested(self, job_id: str) -> bool:
        stmt = select(ScrapeJob.cancel_requested, ScrapeJob.status).where(ScrapeJob.id == job_id)
        row = self.session.execute(stmt).first()
        if row is None:
            return False
        flag, status = row
        return bool(flag) or status == CANCELLED

    def get_jobs_by_status(
        self,
        status: str,
        limit: int = 100
    ) -> List[ScrapeJob]:
        """
        Get all jobs with a specific status.

        Args:
            status: Status to filter by
            limit: Maximum number of jobs to return

        Returns:
            List of ScrapeJob entities, oldest first
        """
        stmt = (
            select(ScrapeJob)
            .where(ScrapeJob.status == status)
            .order_by(ScrapeJob.created_at, ScrapeJob.id)
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars().all())

    def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ScrapeJob]:
        """Jobs newest first, optionally filtered by status."""
        stmt = select(ScrapeJob)
        if status:
            stmt = stmt.where(ScrapeJob.status == status)
        stmt = (
            stmt.order_by(ScrapeJob.created_at.desc(), ScrapeJob.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.execute(stmt).scalars().all())

    def delete_terminal(self, older_than: Optional[datetime] = None) -> int:
        """
        Delete finished jobs.

        Args:
            older_than: Only delete jobs finished before this time

        Returns:
            Number of rows deleted
        """
        stmt = delete(ScrapeJob).where(ScrapeJob.status.in_(TERMINAL_STATUSES))
        if older_than is not None:
            stmt = stmt.where(ScrapeJob.finished_at < older_than)
        result = self.session.execute(stmt.execution_options(synchronize_session=False))
        self.session.commit()
        return result.rowcount or 0
