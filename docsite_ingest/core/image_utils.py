"""
Image URL normalization, download validation and transcoding.

The normalized URL is the dedup key for the whole image pipeline: signed
CDN and object-storage URLs differ only in their query string between
requests, so for those hosts the query and fragment are dropped. Other
hosts are returned untouched.
"""

from __future__ import annotations

import hashlib
import io
import logging
import posixpath
from typing import Optional, Sequence
from urllib.parse import urlparse, urlunparse

import requests
from PIL import Image, UnidentifiedImageError

from docsite_ingest.core.config import settings
from docsite_ingest.core.errors import ImageValidationError

logger = logging.getLogger(__name__)

Image.MAX_IMAGE_PIXELS = 50_000_000

# Pillow reports format names, not extensions.
_FORMAT_ALIASES = {"jpeg": "jpg"}


def normalize_image_url(url: str, hosts: Optional[Sequence[str]] = None) -> str:
    if hosts is None:
        hosts = settings.image_normalize_host_list
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    hostname = (parsed.hostname or "").lower()
    if not any(marker in hostname for marker in hosts):
        return url
    return urlunparse((parsed.scheme, parsed.netloc, parsed.path, parsed.params, "", ""))


def image_extension(url: str) -> str:
    """Lower-case path extension without the dot, or ''."""
    try:
        path = urlparse(url).path
    except ValueError:
        return ""
    return posixpath.splitext(path)[1].lstrip(".").lower()


def is_excluded_format(url: str, formats: Optional[Sequence[str]] = None) -> bool:
    if formats is None:
        formats = settings.image_exclude_format_list
    return image_extension(url) in formats


def storage_key_for(normalized_url: str, length: Optional[int] = None) -> str:
    """Stable object key: truncated md5 of the normalized URL, always ``.jpg``."""
    if length is None:
        length = settings.IMAGE_HASH_LENGTH
    digest = hashlib.md5(normalized_url.encode("utf-8")).hexdigest()
    return f"{digest[:length]}.jpg"


def detect_format(data: bytes) -> str:
    """
    Decode ``data`` far enough to prove it is an image and return its
    lower-case format name.

    Raises:
        ImageValidationError: Payload is empty, truncated or not an image.
    """
    if not data:
        raise ImageValidationError("empty image payload")
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").lower()
            img.verify()
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        SyntaxError,
        ValueError,
    ) as e:
        raise ImageValidationError(f"not a decodable image: {e}") from e
    return _FORMAT_ALIASES.get(fmt, fmt)


class ImageDownloader:
    """Fetches image bytes and refuses anything Pillow cannot decode."""

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        exclude_formats: Optional[Sequence[str]] = None,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout if timeout is not None else settings.IMAGE_DOWNLOAD_TIMEOUT_SECONDS
        self.exclude_formats = (
            list(exclude_formats)
            if exclude_formats is not None
            else settings.image_exclude_format_list
        )

    def download(self, url: str) -> bytes:
        headers = {"User-Agent": settings.USER_AGENT, "Accept": "image/*,*/*;q=0.8"}
        try:
            res = self.session.get(url, headers=headers, timeout=self.timeout)
            res.raise_for_status()
        except requests.RequestException as e:
            raise ImageValidationError(f"download failed for {url}: {e}") from e

        data = res.content
        fmt = detect_format(data)
        if fmt in self.exclude_formats:
            raise ImageValidationError(f"unsupported image format '{fmt}' for {url}")
        return data

    def close(self) -> None:
        self.session.close()


def transcode_image(
    data: bytes,
    max_dim: Optional[int] = None,
    quality: Optional[int] = None,
) -> bytes:
    """
    Shrink to fit ``max_dim`` x ``max_dim`` and re-encode as JPEG.

    Transparency is flattened onto white. Images already within bounds are
    not upscaled.
    """
    if max_dim is None:
        max_dim = settings.IMAGE_MAX_DIM
    if quality is None:
        quality = settings.IMAGE_JPEG_QUALITY

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            img.thumbnail((max_dim, max_dim))

            if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
                rgba = img.convert("RGBA")
                flattened = Image.new("RGB", rgba.size, (255, 255, 255))
                flattened.paste(rgba, mask=rgba.getchannel("A"))
            else:
                flattened = img.convert("RGB")

            out = io.BytesIO()
            flattened.save(out, format="JPEG", quality=quality, optimize=True)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise ImageValidationError(f"transcode failed: {e}") from e

    return out.getvalue()
