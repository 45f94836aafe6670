import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from docsite_ingest.core.database import get_db
from docsite_ingest.core.errors import ConfigurationError
from docsite_ingest.core.storage import build_storage
from docsite_ingest.dtos.page_dto import ClearResult, PageRead
from docsite_ingest.routers.auth import verify_worker_key
from docsite_ingest.services.page_query_service import PageQueryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pages", tags=["pages"])


def get_storage():
    """Storage client for public image URLs; None when storage is not configured."""
    try:
        return build_storage()
    except ConfigurationError:
        logger.debug("Storage not configured; image URLs will be storage paths")
        return None


@router.get("", response_model=list[PageRead])
def search_pages(
    search: str | None = None,
    url: str | None = None,
    include_images: bool = False,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
):
    svc = PageQueryService(db, storage=storage)
    return svc.search_pages(search=search, url=url, include_images=include_images, limit=limit)


@router.delete("", response_model=ClearResult)
def clear_pages(
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
    _: None = Depends(verify_worker_key),
):
    """Delete every page, every image row and every stored image object."""
    return PageQueryService(db, storage=storage).clear_all()
