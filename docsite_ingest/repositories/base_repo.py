from __future__ import annotations

from typing import Any, Generic, Iterable, Iterator, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

T = TypeVar("T")
S = TypeVar("S")


def chunked(items: Iterable[S], size: int) -> Iterator[list[S]]:
    """Yield consecutive lists of at most ``size`` items."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    batch: list[S] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


class BaseRepository(Generic[T]):
    def __init__(self, session: Session, model: Type[T]) -> None:
        self.session = session
        self.model = model

    def create(self, obj: T, *, commit: bool = True) -> T:
        self.session.add(obj)
        if commit:
            self.session.commit()
            self.session.refresh(obj)
        return obj

    def get_by_id(self, id_: Any) -> Optional[T]:
        return self.session.get(self.model, id_)

    def get_fresh(self, id_: Any) -> Optional[T]:
        """Like get_by_id, but reloads the row even if it is already in the session."""
        return self.session.get(self.model, id_, populate_existing=True)

    def list(self, *, limit: int = 100, offset: int = 0) -> list[T]:
        stmt = select(self.model).limit(limit).offset(offset)
        return list(self.session.execute(stmt).scalars().all())

    def count(self) -> int:
        return self.session.execute(select(func.count()).select_from(self.model)).scalar_one()

    def delete(self, obj: T, *, commit: bool = True) -> None:
        self.session.delete(obj)
        if commit:
            self.session.commit()

    def dialect_insert(self):
        """
        ``INSERT`` construct for the bound dialect, with ``on_conflict_*``
        support. Only SQLite and PostgreSQL provide it.
        """
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise NotImplementedError(f"upsert is not supported on dialect '{dialect}'")
        return insert(self.model)
