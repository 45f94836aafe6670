"""
Repository for page/image association rows.
"""
from __future__ import annotations

from typing import Iterable

from sqlalchemy import delete, select, tuple_
from sqlalchemy.orm import Session

from docsite_ingest.entities.base import utcnow
from docsite_ingest.entities.image import Image
from docsite_ingest.repositories.base_repo import BaseRepository, chunked

LOOKUP_CHUNK = 500


class ImageRepository(BaseRepository[Image]):
    def __init__(self, session: Session) -> None:
        super().__init__(session=session, model=Image)

    def existing_url_map(self) -> dict[str, str]:
        """
        Every normalized image URL already stored, mapped to its storage path.

        Used once at the start of a run to seed the uploaded-image registry.
        """
        stmt = select(Image.original_url, Image.storage_path).order_by(Image.id)
        url_map: dict[str, str] = {}
        for original_url, storage_path in self.session.execute(stmt).all():
            url_map.setdefault(original_url, storage_path)
        return url_map

    def existing_pairs(self, pairs: Iterable[tuple[int, str]]) -> set[tuple[int, str]]:
        """Subset of ``(page_id, original_url)`` pairs that already have a row."""
        found: set[tuple[int, str]] = set()
        for batch in chunked(list(dict.fromkeys(pairs)), LOOKUP_CHUNK):
            stmt = select(Image.page_id, Image.original_url).where(
                tuple_(Image.page_id, Image.original_url).in_(batch)
            )
            found.update((page_id, url) for page_id, url in self.session.execute(stmt).all())
        return found

    def insert_chunk(self, rows: list[dict], *, commit: bool = True) -> int:
        """
        Insert association rows, ignoring pairs that already exist.

        Args:
            rows: Dicts with ``page_id``, ``original_url`` and ``storage_path``
            commit: Whether to commit the transaction

        Returns:
            Number of rows actually inserted
        """
        if not rows:
            return 0
        now = utcnow()
        values = [
            {
                "page_id": row["page_id"],
                "original_url": row["original_url"],
                "storage_path": row["storage_path"],
                "created_at": now,
            }
            for row in rows
        ]
        stmt = (
            self.dialect_insert()
            .values(values)
            .on_conflict_do_nothing(index_elements=[Image.page_id, Image.original_url])
            .returning(Image.id)
        )
        inserted = len(self.session.execute(stmt).all())
        if commit:
            self.session.commit()
        return inserted

    def for_pages(self, page_ids: Iterable[int]) -> list[Image]:
        ids = list(page_ids)
        if not ids:
            return []
        stmt = select(Image).where(Image.page_id.in_(ids)).order_by(Image.id)
        return list(self.session.execute(stmt).scalars().all())

    def delete_all(self, *, commit: bool = True) -> int:
        result = self.session.execute(delete(Image))
        if commit:
            self.session.commit()
        return result.rowcount or 0
