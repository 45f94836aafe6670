"""
Page fetching and extraction.

Two interchangeable strategies return the same PageExtract:

* StaticPageExtractor - a plain HTTP GET parsed with BeautifulSoup. Cheap
  and stateless; raises LoginRequiredError when the response looks like a
  login wall.
* BrowserPageExtractor (core/browser_fetcher.py) - a headless Chrome
  render that can submit the site password and wait for client-side
  rendering.

FallbackPageExtractor tries the static path first and only starts a
browser when a login wall is detected. Neither strategy writes to storage
or the database.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence

import requests
from bs4 import BeautifulSoup

from docsite_ingest.core.config import settings
from docsite_ingest.core.errors import LoginRequiredError
from docsite_ingest.core.url_utils import (
    EXCLUDED_LINK_PREFIXES,
    is_in_scope,
    normalize_page_url,
    resolve_url,
)

logger = logging.getLogger(__name__)

BACKGROUND_URL_RE = re.compile(r"url\((['\"]?)([^)\"']+)\1\)", re.IGNORECASE)
PASSWORD_INPUT_RE = re.compile(r"<input[^>]+type=[\"']?password[\"']?", re.IGNORECASE)
NAVIGATION_SELECTORS = "nav, header, .navigation, .header, .sidebar"
MAIN_SELECTORS = ("main", ".main", "[role='main']")


@dataclass
class ImageRef:
    """Raw image reference found on a page, already absolute."""

    src: str
    alt: str = ""


@dataclass
class PageExtract:
    url: str
    final_url: str
    title: str
    content: str
    image_refs: list[ImageRef] = field(default_factory=list)
    page_links: list[str] = field(default_factory=list)


class PageExtractor(Protocol):
    def extract(self, url: str, cookie_header: Optional[str] = None) -> PageExtract: ...

    def close(self) -> None: ...


def looks_like_login_wall(html: str, markers: Sequence[str]) -> bool:
    if PASSWORD_INPUT_RE.search(html):
        return True
    return any(marker and marker in html for marker in markers)


def extract_content(
    soup: BeautifulSoup,
    selectors: Sequence[str],
    max_chars: int,
) -> str:
    """
    Text of the first primary content container; otherwise the body with
    navigation stripped, preferring a main region and truncating the rest.

    Mutates ``soup`` (script/style and navigation regions are removed).
    """
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()

    for selector in selectors:
        element = soup.select_one(selector)
        if element is not None:
            text = element.get_text(separator="\n", strip=True)
            if text:
                return text

    body = soup.body or soup
    for nav in body.select(NAVIGATION_SELECTORS):
        nav.decompose()

    for selector in MAIN_SELECTORS:
        main = body.select_one(selector)
        if main is not None:
            return main.get_text(separator="\n", strip=True)

    return body.get_text(separator="\n", strip=True)[:max_chars]


def extract_image_refs(soup: BeautifulSoup, page_url: str) -> list[ImageRef]:
    refs: list[ImageRef] = []
    seen: set[str] = set()

    def _add(raw: str, alt: str) -> None:
        absolute = resolve_url(raw, page_url)
        if absolute and absolute not in seen:
            seen.add(absolute)
            refs.append(ImageRef(src=absolute, alt=alt))

    for img in soup.find_all("img"):
        src = img.get("src") or img.get("data-src") or ""
        _add(src, img.get("alt") or "")

    for element in soup.find_all(style=True):
        for match in BACKGROUND_URL_RE.finditer(element.get("style") or ""):
            _add(match.group(2), "")

    return refs


def extract_page_links(
    soup: BeautifulSoup,
    page_url: str,
    allowed_host: str,
    path_pattern: Optional[str],
) -> list[str]:
    links: list[str] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.lower().startswith(EXCLUDED_LINK_PREFIXES):
            continue
        absolute = resolve_url(href, page_url)
        if not absolute:
            continue
        absolute = normalize_page_url(absolute)
        if absolute in seen or not is_in_scope(absolute, allowed_host, path_pattern):
            continue
        seen.add(absolute)
        links.append(absolute)
    return links


def parse_page(
    html: str,
    page_url: str,
    allowed_host: str,
    *,
    final_url: Optional[str] = None,
    path_pattern: Optional[str] = None,
    content_selectors: Optional[Sequence[str]] = None,
    max_chars: Optional[int] = None,
) -> PageExtract:
    """Turn rendered HTML into a PageExtract. Shared by both strategies."""
    base_url = final_url or page_url
    if path_pattern is None:
        path_pattern = settings.PAGE_PATH_PATTERN
    if content_selectors is None:
        content_selectors = settings.content_selector_list
    if max_chars is None:
        max_chars = settings.CONTENT_MAX_CHARS

    soup = BeautifulSoup(html, "lxml")
    title = soup.title.get_text(strip=True) if soup.title else ""
    image_refs = extract_image_refs(soup, base_url)
    page_links = extract_page_links(soup, base_url, allowed_host, path_pattern)
    content = extract_content(soup, content_selectors, max_chars)

    return PageExtract(
        url=page_url,
        final_url=normalize_page_url(base_url),
        title=title,
        content=content,
        image_refs=image_refs,
        page_links=page_links,
    )


class StaticPageExtractor:
    """HTTP GET + HTML parse. Raises LoginRequiredError on a login wall."""

    def __init__(
        self,
        allowed_host: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        login_markers: Optional[Sequence[str]] = None,
    ) -> None:
        self.allowed_host = allowed_host
        self.session = session or requests.Session()
        self.timeout = timeout if timeout is not None else settings.REQUEST_TIMEOUT_SECONDS
        self.login_markers = (
            list(login_markers) if login_markers is not None else settings.login_wall_marker_list
        )

    def extract(self, url: str, cookie_header: Optional[str] = None) -> PageExtract:
        headers = {
            "User-Agent": settings.USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        }
        if cookie_header:
            headers["Cookie"] = cookie_header

        res = self.session.get(url, headers=headers, timeout=self.timeout)
        res.raise_for_status()
        html = res.text

        if looks_like_login_wall(html, self.login_markers):
            logger.debug("Login wall detected at %s", url)
            raise LoginRequiredError(url)

        return parse_page(html, url, self.allowed_host, final_url=res.url or url)

    def close(self) -> None:
        self.session.close()


class FallbackPageExtractor:
    """
    Static first, browser on demand.

    The browser is created lazily by ``browser_factory`` the first time a
    login wall is hit. After that, its session cookies are forwarded to the
    static path so later pages can skip the browser.
    """

    def __init__(
        self,
        static: PageExtractor,
        browser_factory: Callable[[], PageExtractor],
    ) -> None:
        self.static = static
        self.browser_factory = browser_factory
        self.browser: Optional[PageExtractor] = None
        self.cookie_header: Optional[str] = None

    def extract(self, url: str, cookie_header: Optional[str] = None) -> PageExtract:
        cookies = cookie_header or self.cookie_header
        try:
            return self.static.extract(url, cookies)
        except LoginRequiredError:
            logger.info("Falling back to browser render for %s", url)

        if self.browser is None:
            self.browser = self.browser_factory()
        extract = self.browser.extract(url, cookies)

        exported = getattr(self.browser, "cookie_header", None)
        if callable(exported):
            self.cookie_header = exported() or self.cookie_header
        return extract

    def close(self) -> None:
        try:
            self.static.close()
        finally:
            if self.browser is not None:
                self.browser.close()
                self.browser = None
