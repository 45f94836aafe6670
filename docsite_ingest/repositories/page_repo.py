"""
Repository for page rows.

Bulk writes go through ``upsert_chunk`` (one multi-row
``INSERT ... ON CONFLICT (url) DO UPDATE`` per call); the commit service
owns chunking and retries.
"""
from __future__ import annotations

from typing import Iterable, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session, selectinload

from docsite_ingest.entities.base import utcnow
from docsite_ingest.entities.page import Page
from docsite_ingest.repositories.base_repo import BaseRepository, chunked

LOOKUP_CHUNK = 500


class PageRepository(BaseRepository[Page]):
    def __init__(self, session: Session) -> None:
        super().__init__(session=session, model=Page)

    def get_by_url(self, url: str) -> Optional[Page]:
        stmt = select(Page).where(Page.url == url)
        return self.session.execute(stmt).scalars().first()

    def existing_urls(self, urls: Iterable[str]) -> set[str]:
        """Subset of ``urls`` that already have a row."""
        found: set[str] = set()
        for batch in chunked(list(dict.fromkeys(urls)), LOOKUP_CHUNK):
            stmt = select(Page.url).where(Page.url.in_(batch))
            found.update(self.session.execute(stmt).scalars().all())
        return found

    def upsert_chunk(self, rows: list[dict], *, commit: bool = True) -> dict[str, int]:
        """
        Insert or overwrite one chunk of pages keyed on url.

        Args:
            rows: Dicts with ``url``, ``title`` and ``content`` keys
            commit: Whether to commit the transaction

        Returns:
            Mapping of url -> page id for every row written
        """
        if not rows:
            return {}
        now = utcnow()
        values = [
            {
                "url": row["url"],
                "title": row.get("title") or "",
                "content": row.get("content"),
                "scraped_at": now,
            }
            for row in rows
        ]
        stmt = self.dialect_insert().values(values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Page.url],
            set_={
                "title": stmt.excluded.title,
                "content": stmt.excluded.content,
                "scraped_at": stmt.excluded.scraped_at,
            },
        ).returning(Page.id, Page.url)

        result = self.session.execute(stmt)
        id_map = {url: page_id for page_id, url in result.all()}
        if commit:
            self.session.commit()
        return id_map

    def search(
        self,
        *,
        search: Optional[str] = None,
        url: Optional[str] = None,
        include_images: bool = False,
        limit: int = 50,
    ) -> list[Page]:
        """
        Pages whose title or content contains ``search`` (case-insensitive),
        or whose url equals ``url``. Both filters are OR-ed.
        """
        stmt = select(Page)
        filters = []
        if search:
            pattern = f"%{search}%"
            filters.append(or_(Page.title.ilike(pattern), Page.content.ilike(pattern)))
        if url:
            filters.append(Page.url == url)
        if filters:
            stmt = stmt.where(or_(*filters))
        if include_images:
            stmt = stmt.options(selectinload(Page.images))
        stmt = stmt.order_by(Page.id).limit(limit)
        return list(self.session.execute(stmt).scalars().unique().all())

    def delete_all(self, *, commit: bool = True) -> int:
        result = self.session.execute(delete(Page))
        if commit:
            self.session.commit()
        return result.rowcount or 0
