"""
Object storage clients.

Everything the ingest pipeline needs from a storage backend is captured by
the ObjectStorage protocol. SupabaseStorage talks to a Supabase-compatible
storage REST API; ServerUploadStorage pushes files through an authenticated
server endpoint and is only used when a direct upload is refused for lack
of permission. FallbackStorage glues the two together.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Optional, Protocol, Sequence

import requests

from docsite_ingest.core.config import Settings, settings as default_settings
from docsite_ingest.core.errors import (
    ConfigurationError,
    StorageError,
    StoragePermissionError,
)

logger = logging.getLogger(__name__)

JPEG_CONTENT_TYPE = "image/jpeg"
_RLS_MARKERS = ("row-level security", "row level security", "unauthorized")


class ObjectStorage(Protocol):
    def list_buckets(self) -> list[str]: ...

    def create_bucket(
        self,
        name: str,
        *,
        public: bool = True,
        file_size_limit: Optional[int] = None,
        allowed_mime_types: Optional[Sequence[str]] = None,
    ) -> None: ...

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str: ...

    def remove(self, bucket: str, keys: Sequence[str]) -> None: ...

    def list_objects(self, bucket: str, limit: int = 100, offset: int = 0) -> list[str]: ...


def _raise_for_storage_status(res: requests.Response, action: str) -> None:
    if res.ok:
        return
    body = res.text or ""
    message = f"{action} failed with HTTP {res.status_code}: {body[:300]}"
    if res.status_code in (401, 403):
        raise StoragePermissionError(message, status_code=res.status_code)
    if res.status_code == 400 and any(marker in body.lower() for marker in _RLS_MARKERS):
        raise StoragePermissionError(message, status_code=res.status_code)
    raise StorageError(message, status_code=res.status_code)


class SupabaseStorage:
    """requests-based client for the ``/storage/v1`` REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        cache_control_seconds: int = 3600,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout
        self.cache_control_seconds = cache_control_seconds

    def _headers(self, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/{path.lstrip('/')}"

    def list_buckets(self) -> list[str]:
        res = self.session.get(self._url("bucket"), headers=self._headers(), timeout=self.timeout)
        _raise_for_storage_status(res, "list buckets")
        return [b.get("name") or b.get("id") for b in res.json() or []]

    def create_bucket(
        self,
        name: str,
        *,
        public: bool = True,
        file_size_limit: Optional[int] = None,
        allowed_mime_types: Optional[Sequence[str]] = None,
    ) -> None:
        payload: dict[str, Any] = {"id": name, "name": name, "public": public}
        if file_size_limit is not None:
            payload["file_size_limit"] = file_size_limit
        if allowed_mime_types:
            payload["allowed_mime_types"] = list(allowed_mime_types)
        res = self.session.post(
            self._url("bucket"), json=payload, headers=self._headers(), timeout=self.timeout
        )
        _raise_for_storage_status(res, f"create bucket '{name}'")

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        headers = self._headers(
            {
                "Content-Type": content_type,
                "x-upsert": "true",
                "cache-control": f"max-age={self.cache_control_seconds}",
            }
        )
        res = self.session.post(
            self._url(f"object/{bucket}/{key}"),
            data=data,
            headers=headers,
            timeout=self.timeout,
        )
        _raise_for_storage_status(res, f"upload '{key}'")
        return key

    def remove(self, bucket: str, keys: Sequence[str]) -> None:
        if not keys:
            return
        res = self.session.delete(
            self._url(f"object/{bucket}"),
            json={"prefixes": list(keys)},
            headers=self._headers(),
            timeout=self.timeout,
        )
        _raise_for_storage_status(res, f"remove {len(keys)} object(s)")

    def list_objects(self, bucket: str, limit: int = 100, offset: int = 0) -> list[str]:
        res = self.session.post(
            self._url(f"object/list/{bucket}"),
            json={"prefix": "", "limit": limit, "offset": offset},
            headers=self._headers(),
            timeout=self.timeout,
        )
        _raise_for_storage_status(res, "list objects")
        return [item["name"] for item in res.json() or [] if item.get("name")]

    def public_url(self, bucket: str, key: str) -> str:
        return self._url(f"object/public/{bucket}/{key}")


class ServerUploadStorage:
    """
    Upload through the application's own server endpoint.

    The endpoint receives ``{bucket, filename, base64, contentType}`` as JSON
    and authenticates with the ``x-server-api-key`` header. It only supports
    uploads.
    """

    def __init__(
        self,
        upload_url: str,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ) -> None:
        self.upload_url = upload_url
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        payload = {
            "bucket": bucket,
            "filename": key,
            "base64": base64.b64encode(data).decode("ascii"),
            "contentType": content_type,
        }
        res = self.session.post(
            self.upload_url,
            json=payload,
            headers={"x-server-api-key": self.api_key},
            timeout=self.timeout,
        )
        _raise_for_storage_status(res, f"server upload '{key}'")
        path = (res.json() or {}).get("path")
        if not path:
            raise StorageError(f"server upload '{key}' returned no path")
        return path


class FallbackStorage:
    """Primary storage with a server-side upload fallback on permission errors."""

    def __init__(
        self,
        primary: ObjectStorage,
        fallback: Optional[ServerUploadStorage] = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback

    def list_buckets(self) -> list[str]:
        return self.primary.list_buckets()

    def create_bucket(self, name: str, **kwargs: Any) -> None:
        self.primary.create_bucket(name, **kwargs)

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        try:
            return self.primary.upload(bucket, key, data, content_type)
        except StoragePermissionError as e:
            if self.fallback is None:
                raise
            logger.warning("Direct upload of %s refused (%s); using server upload", key, e)
            return self.fallback.upload(bucket, key, data, content_type)

    def remove(self, bucket: str, keys: Sequence[str]) -> None:
        self.primary.remove(bucket, keys)

    def list_objects(self, bucket: str, limit: int = 100, offset: int = 0) -> list[str]:
        return self.primary.list_objects(bucket, limit=limit, offset=offset)

    def public_url(self, bucket: str, key: str) -> str:
        public_url = getattr(self.primary, "public_url", None)
        if callable(public_url):
            return public_url(bucket, key)
        return key


def ensure_bucket(storage: ObjectStorage, bucket: str, cfg: Optional[Settings] = None) -> None:
    """
    Create ``bucket`` unless it already exists. Safe to call repeatedly.

    Keys without admin rights cannot list or create buckets. That is logged
    and ignored so the upload itself, and its server fallback, still runs.
    """
    cfg = cfg or default_settings
    try:
        if bucket in storage.list_buckets():
            return
    except StorageError as e:
        logger.warning("Could not list storage buckets (%s); assuming '%s' exists", e, bucket)
        return
    logger.info("Creating storage bucket '%s'", bucket)
    try:
        storage.create_bucket(
            bucket,
            public=True,
            file_size_limit=cfg.STORAGE_FILE_SIZE_LIMIT,
            allowed_mime_types=cfg.storage_allowed_mime_type_list,
        )
    except StorageError as e:
        # Another worker may have created it between the list and the create.
        if e.status_code == 409 or "exists" in str(e).lower():
            return
        logger.warning("Could not create storage bucket '%s': %s", bucket, e)


def build_storage(cfg: Optional[Settings] = None) -> FallbackStorage:
    """
    Build the storage client from settings.

    The service key wins over the anon key. A server upload fallback is
    attached when ``SERVER_UPLOAD_URL`` is set.

    Raises:
        ConfigurationError: STORAGE_URL is unset or no storage key is set.
    """
    cfg = cfg or default_settings
    api_key = cfg.STORAGE_SERVICE_KEY or cfg.STORAGE_ANON_KEY
    if not cfg.STORAGE_URL or not api_key:
        raise ConfigurationError(
            "Object storage is not configured: set STORAGE_URL and "
            "STORAGE_SERVICE_KEY (or STORAGE_ANON_KEY)"
        )

    fallback = None
    if cfg.SERVER_UPLOAD_URL:
        fallback = ServerUploadStorage(
            cfg.SERVER_UPLOAD_URL,
            cfg.SERVER_API_KEY,
            timeout=cfg.STORAGE_TIMEOUT_SECONDS,
        )

    primary = SupabaseStorage(
        cfg.STORAGE_URL,
        api_key,
        timeout=cfg.STORAGE_TIMEOUT_SECONDS,
        cache_control_seconds=cfg.STORAGE_CACHE_CONTROL_SECONDS,
    )
    return FallbackStorage(primary, fallback)
