"""
DTOs for page query results.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class PageRead(BaseModel):
    """DTO for reading a stored page, optionally with its images."""

    id: int
    url: str
    title: str
    content: str | None
    scraped_at: datetime
    images: dict[str, str] | None = Field(
        default=None, description="original_url -> public storage URL"
    )

    model_config = ConfigDict(from_attributes=True)


class ClearResult(BaseModel):
    images_deleted: int = 0
    pages_deleted: int = 0
    objects_deleted: int = 0
    failed_batches: int = 0
