"""
Headless Chrome page extraction.

Used when the static fetch hits a login wall. The driver is started once
and reused for every page it is asked to render; call close() to quit it.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from selenium import webdriver
from selenium.common.exceptions import NoSuchElementException, WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.common.keys import Keys
from webdriver_manager.chrome import ChromeDriverManager

from docsite_ingest.core.config import settings
from docsite_ingest.core.page_fetcher import ImageRef, PageExtract, parse_page
from docsite_ingest.core.url_utils import hostname_of, resolve_url

logger = logging.getLogger(__name__)

# Returns every computed background-image URL on the page.
BACKGROUND_IMAGES_SCRIPT = """
const urls = [];
for (const el of document.querySelectorAll('*')) {
  const bg = window.getComputedStyle(el).backgroundImage;
  if (bg && bg.startsWith('url(')) {
    urls.push(bg.slice(4, -1).replace(/['"]+/g, ''));
  }
}
return urls;
"""


def build_chrome_driver() -> webdriver.Chrome:
    options = Options()
    options.add_argument("--headless=new")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument(f"--window-size={settings.BROWSER_WINDOW_SIZE}")
    options.add_argument(f"--user-agent={settings.USER_AGENT}")

    driver = webdriver.Chrome(
        service=Service(ChromeDriverManager().install()),
        options=options,
    )
    driver.set_page_load_timeout(settings.BROWSER_PAGE_LOAD_TIMEOUT_SECONDS)
    return driver


class BrowserPageExtractor:
    """
    Renders pages in headless Chrome and parses the resulting DOM.

    When a password is configured, the first page that shows a password
    input gets the password typed and submitted; the login is remembered
    per host for the rest of the run.
    """

    def __init__(
        self,
        allowed_host: str,
        password: Optional[str] = None,
        *,
        driver_factory: Callable[[], webdriver.Chrome] = build_chrome_driver,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.allowed_host = allowed_host
        self.password = password
        self._driver_factory = driver_factory
        self._sleep = sleep
        self._driver: Optional[webdriver.Chrome] = None
        self._logged_in_hosts: set[str] = set()

    @property
    def driver(self) -> webdriver.Chrome:
        if self._driver is None:
            self._driver = self._driver_factory()
        return self._driver

    def _try_login(self, url: str) -> None:
        host = hostname_of(url)
        if not self.password or host in self._logged_in_hosts:
            return
        try:
            field = self.driver.find_element(By.CSS_SELECTOR, "input[type='password']")
        except NoSuchElementException:
            return

        logger.info("Submitting site password for %s", host)
        field.clear()
        field.send_keys(self.password)
        field.send_keys(Keys.RETURN)
        self._sleep(settings.BROWSER_LOGIN_WAIT_SECONDS)
        self._logged_in_hosts.add(host)

    def _background_images(self, base_url: str) -> list[ImageRef]:
        try:
            raw_urls = self.driver.execute_script(BACKGROUND_IMAGES_SCRIPT) or []
        except WebDriverException as e:
            logger.debug("Background image scan failed on %s: %s", base_url, e)
            return []
        refs = []
        for raw in raw_urls:
            absolute = resolve_url(raw, base_url)
            if absolute:
                refs.append(ImageRef(src=absolute))
        return refs

    def extract(self, url: str, cookie_header: Optional[str] = None) -> PageExtract:
        driver = self.driver
        driver.get(url)
        self._try_login(url)
        self._sleep(settings.BROWSER_RENDER_WAIT_SECONDS)

        final_url = driver.current_url or url
        extract = parse_page(driver.page_source, url, self.allowed_host, final_url=final_url)

        seen = {ref.src for ref in extract.image_refs}
        for ref in self._background_images(final_url):
            if ref.src not in seen:
                seen.add(ref.src)
                extract.image_refs.append(ref)
        return extract

    def cookie_header(self) -> Optional[str]:
        if self._driver is None:
            return None
        cookies = self._driver.get_cookies()
        if not cookies:
            return None
        return "; ".join(f"{c['name']}={c['value']}" for c in cookies)

    def close(self) -> None:
        if self._driver is not None:
            try:
                self._driver.quit()
            finally:
                self._driver = None
