"""
Entity for page/image associations.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docsite_ingest.entities.base import Base, utcnow


class Image(Base):
    """
    An uploaded image referenced by a page.

    original_url holds the normalized URL (the dedup key). The same
    normalized URL is uploaded once and may be associated with many pages,
    but only once per page.
    """

    __tablename__ = "images"
    __table_args__ = (
        UniqueConstraint("page_id", "original_url", name="uq_images_page_original_url"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    page_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("pages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    original_url: Mapped[str] = mapped_column(String(2048), nullable=False, index=True)
    storage_path: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    page: Mapped["Page"] = relationship(back_populates="images")  # noqa: F821
