"""
DTOs for job store operations.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class JobCreate(BaseModel):
    """DTO for enqueuing a job."""

    name: str = Field(..., min_length=1, max_length=100, description="Operation identifier")
    args: dict[str, Any] | None = Field(default=None, description="Opaque job arguments")


class JobCreated(BaseModel):
    id: str


class JobRead(BaseModel):
    """DTO for reading a job row."""

    id: str
    name: str
    status: str
    args: Any | None
    result: Any | None
    logs: str
    error: str | None
    cancel_requested: bool
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class LogLine(BaseModel):
    line: str = Field(..., min_length=1, description="Single log line to append")


class FinishRequest(BaseModel):
    """Worker-side completion signal. A repeat on a finished job is a no-op."""

    success: bool
    result: Any | None = None
    error: str | None = None


class CancelResult(BaseModel):
    job_id: str
    action: Literal["deleted", "marked_cancelled"]
    previous_status: str


class TaskStatusRead(BaseModel):
    """
    A job as seen by a polling client.

    ``ttl`` is advisory: how long, in milliseconds, the caller may treat
    this answer as fresh. ``poll_interval`` suggests when to ask again.
    """

    id: str
    name: str
    status: str
    result: Any | None = None
    error: str | None = None
    logs: list[str] = Field(default_factory=list)
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    ttl: int
    poll_interval: int


class TailRead(BaseModel):
    id: str
    status: str
    lines: list[str]
    next_cursor: int
