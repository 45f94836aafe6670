from datetime import datetime

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from docsite_ingest.core.database import get_db
from docsite_ingest.dtos.scrape_job_dto import (
    CancelResult,
    FinishRequest,
    JobCreate,
    JobCreated,
    JobRead,
    LogLine,
    TailRead,
    TaskStatusRead,
)
from docsite_ingest.routers.auth import verify_worker_key
from docsite_ingest.services.job_service import JobService
from docsite_ingest.services.job_worker import JobWorker, build_default_worker

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def get_worker() -> JobWorker:
    return build_default_worker()


@router.post("", response_model=JobCreated, status_code=status.HTTP_201_CREATED)
def create_job(body: JobCreate, db: Session = Depends(get_db)):
    job = JobService(db).create(body.name, body.args)
    return JobCreated(id=job.id)


@router.get("", response_model=list[JobRead])
def list_jobs(
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return JobService(db).list_jobs(status=status_filter, limit=limit, offset=offset)


@router.post("/claim", response_model=JobRead)
def claim_job(db: Session = Depends(get_db)):
    job = JobService(db).claim_next()
    if job is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return job


@router.post("/process", response_model=JobRead)
async def process_next_job(
    _: None = Depends(verify_worker_key),
    worker: JobWorker = Depends(get_worker),
):
    """Run the oldest queued job to completion in this request."""
    job = await worker.run_once()
    if job is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return job


@router.delete("/finished")
def clear_finished_jobs(
    older_than: datetime | None = None,
    db: Session = Depends(get_db),
    _: None = Depends(verify_worker_key),
):
    return {"deleted": JobService(db).clear_finished(older_than)}


@router.get("/{job_id}", response_model=TaskStatusRead)
async def get_job(
    job_id: str,
    requested_ttl_ms: int | None = Query(default=None),
    wait_ms: int | None = Query(default=None, ge=0),
    db: Session = Depends(get_db),
):
    svc = JobService(db)
    if wait_ms:
        return await svc.wait_for_result(job_id, wait_ms, requested_ttl_ms)
    return svc.get_with_ttl(job_id, requested_ttl_ms)


@router.get("/{job_id}/tail", response_model=TailRead)
def tail_job(
    job_id: str,
    since_line: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return JobService(db).tail(job_id, since_line)


@router.post("/{job_id}/log")
def append_log(job_id: str, body: LogLine, db: Session = Depends(get_db)):
    JobService(db).append_log(job_id, body.line)
    return {"ok": True}


@router.post("/{job_id}/finish", response_model=JobRead)
def finish_job(job_id: str, body: FinishRequest, db: Session = Depends(get_db)):
    return JobService(db).finish(job_id, body.success, result=body.result, error=body.error)


@router.post("/{job_id}/cancel", response_model=CancelResult)
def cancel_job(job_id: str, db: Session = Depends(get_db)):
    return JobService(db).cancel(job_id)
