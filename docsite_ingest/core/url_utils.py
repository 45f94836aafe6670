"""URL helpers for page identity and link scoping."""

from __future__ import annotations

from urllib.parse import urldefrag, urljoin, urlparse, urlsplit, urlunsplit

EXCLUDED_LINK_PREFIXES = ("#", "mailto:", "tel:", "javascript:")


def hostname_of(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def normalize_page_url(url: str) -> str:
    """
    Absolute page identity.

    The fragment is dropped, scheme and host are lower-cased and a trailing
    slash is removed from any path other than the root, so ``/p/abc`` and
    ``/p/abc/`` name the same page.
    """
    url = urldefrag(url.strip())[0]
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    path = parts.path
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def resolve_url(href: str, base_url: str) -> str | None:
    """Resolve ``href`` against ``base_url``; None for non-http(s) results."""
    href = (href or "").strip()
    if not href:
        return None
    try:
        absolute = urljoin(base_url, href)
    except ValueError:
        return None
    if urlparse(absolute).scheme not in ("http", "https"):
        return None
    return absolute


def is_in_scope(url: str, allowed_host: str, path_pattern: str | None = None) -> bool:
    """Same host and, when given, the site's page-path convention."""
    parsed = urlparse(url)
    if (parsed.hostname or "").lower() != allowed_host.lower():
        return False
    if path_pattern and path_pattern not in parsed.path:
        return False
    return True


def url_path(url: str) -> str:
    """Path, query and fragment without the host; used to keep log lines short."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    path = parsed.path or "/"
    if parsed.query:
        path += "?" + parsed.query
    if parsed.fragment:
        path += "#" + parsed.fragment
    return path
