from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader

from docsite_ingest.core.config import settings

worker_key_header = APIKeyHeader(name="x-worker-key", auto_error=False)


async def verify_worker_key(
    worker_key: str | None = Security(worker_key_header),
):
    """Require the x-worker-key header when WORKER_API_KEY is configured."""
    if not settings.WORKER_API_KEY:
        return  # auth disabled
    if worker_key != settings.WORKER_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid or missing worker key")
