"""
Unit tests for the job service: cancellation, TTL reads, polling and tailing.
"""

import asyncio

import pytest

from docsite_ingest.core.errors import JobNotFoundError, JobStateError
from docsite_ingest.entities.scrape_job import CANCELLED, COMPLETED, QUEUED, RUNNING
from docsite_ingest.services.job_service import JobService, split_log_lines


@pytest.fixture
def job_service(db_session, cfg):
    return JobService(db_session, cfg=cfg)


def test_split_log_lines():
    assert split_log_lines("") == []
    assert split_log_lines(None) == []
    assert split_log_lines("a\nb") == ["a", "b"]


class TestCreateAndGet:
    def test_create(self, job_service):
        job = job_service.create(" scrape_site ", {"page_urls": []})

        assert job.name == "scrape_site"
        assert job.status == QUEUED

    def test_create_empty_name(self, job_service):
        with pytest.raises(ValueError, match="cannot be empty"):
            job_service.create("  ")

    def test_get_missing(self, job_service):
        with pytest.raises(JobNotFoundError):
            job_service.get("missing")

    def test_claim_not_queued(self, job_service):
        job = job_service.create("a")
        job_service.claim(job.id)

        with pytest.raises(JobStateError) as exc_info:
            job_service.claim(job.id)
        assert exc_info.value.status == RUNNING

    def test_append_log_missing_job(self, job_service):
        with pytest.raises(JobNotFoundError):
            job_service.append_log("missing", "line")


class TestCancel:
    def test_queued_job_is_marked_cancelled(self, job_service):
        job = job_service.create("a")

        result = job_service.cancel(job.id)

        assert result.action == "marked_cancelled"
        assert result.previous_status == QUEUED
        cancelled = job_service.get(job.id)
        assert cancelled.status == CANCELLED
        assert cancelled.started_at is None
        assert job_service.claim_next() is None

    def test_queued_job_is_deleted_when_configured(self, db_session, cfg):
        cfg.JOB_DELETE_QUEUED_ON_CANCEL = True
        service = JobService(db_session, cfg=cfg)
        job = service.create("a")

        result = service.cancel(job.id)

        assert result.action == "deleted"
        with pytest.raises(JobNotFoundError):
            service.get(job.id)

    def test_running_job_gets_flag(self, job_service):
        job = job_service.create("a")
        job_service.claim(job.id)

        result = job_service.cancel(job.id)

        assert result.action == "marked_cancelled"
        assert result.previous_status == RUNNING
        running = job_service.get(job.id)
        assert running.status == RUNNING
        assert running.cancel_requested is True

    def test_running_job_then_finish_is_cancelled(self, job_service):
        job = job_service.create("a")
        job_service.claim(job.id)
        job_service.cancel(job.id)

        finished = job_service.finish(job.id, True, result={"late": 1})

        assert finished.status == CANCELLED

    def test_terminal_job_names_its_status(self, job_service):
        job = job_service.create("a")
        job_service.claim(job.id)
        job_service.finish(job.id, True)

        with pytest.raises(JobStateError) as exc_info:
            job_service.cancel(job.id)
        assert exc_info.value.status == COMPLETED

    def test_missing_job(self, job_service):
        with pytest.raises(JobNotFoundError):
            job_service.cancel("missing")


class TestTtl:
    @pytest.mark.parametrize(
        "requested,expected",
        [
            (None, 60_000),
            (0, 60_000),
            (-5, 60_000),
            (10, 1_000),
            (5_000, 5_000),
            (10 * 60 * 60 * 1000, 60 * 60 * 1000),
        ],
    )
    def test_effective_ttl(self, job_service, requested, expected):
        assert job_service.effective_ttl(requested) == expected

    def test_get_with_ttl(self, job_service, cfg):
        job = job_service.create("a")
        job_service.append_log(job.id, "hello")

        status = job_service.get_with_ttl(job.id, 2_000)

        assert status.ttl == 2_000
        assert status.poll_interval == cfg.JOB_POLL_INTERVAL_MS
        assert status.logs == ["hello"]
        assert status.status == QUEUED


class TestWaitForResult:
    @pytest.mark.asyncio
    async def test_returns_immediately_when_terminal(self, job_service):
        job = job_service.create("a")
        job_service.claim(job.id)
        job_service.finish(job.id, True, result={"ok": True})

        status = await job_service.wait_for_result(job.id, timeout_ms=1_000)

        assert status.status == COMPLETED
        assert status.result == {"ok": True}

    @pytest.mark.asyncio
    async def test_times_out_with_latest_state(self, job_service):
        job = job_service.create("a")
        job_service.append_log(job.id, "still going")

        status = await job_service.wait_for_result(job.id, timeout_ms=50, poll_interval_ms=10)

        assert status.status == QUEUED
        assert status.logs == ["still going"]

    @pytest.mark.asyncio
    async def test_sees_completion_from_another_session(self, file_session_factory, cfg):
        with file_session_factory() as setup:
            job_id = JobService(setup, cfg=cfg).create("a").id
            JobService(setup, cfg=cfg).claim(job_id)

        async def finish_later():
            await asyncio.sleep(0.05)
            with file_session_factory() as other:
                JobService(other, cfg=cfg).finish(job_id, True, result={"n": 2})

        with file_session_factory() as session:
            waiter = JobService(session, cfg=cfg).wait_for_result(
                job_id, timeout_ms=2_000, poll_interval_ms=10
            )
            status, _ = await asyncio.gather(waiter, finish_later())

        assert status.status == COMPLETED
        assert status.result == {"n": 2}


class TestTailAndMaintenance:
    def test_tail_cursor(self, job_service):
        job = job_service.create("a")
        for line in ("one", "two", "three"):
            job_service.append_log(job.id, line)

        first = job_service.tail(job.id)
        more = job_service.tail(job.id, since_line=first.next_cursor - 1)

        assert first.lines == ["one", "two", "three"]
        assert first.next_cursor == 3
        assert more.lines == ["three"]

    def test_tail_empty_log(self, job_service):
        job = job_service.create("a")

        tail = job_service.tail(job.id, since_line=5)

        assert tail.lines == []
        assert tail.next_cursor == 0

    def test_clear_finished(self, job_service):
        done = job_service.create("done")
        job_service.claim(done.id)
        job_service.finish(done.id, False, error="x")
        job_service.create("queued")

        assert job_service.clear_finished() == 1
        assert [j.name for j in job_service.list_jobs()] == ["queued"]
