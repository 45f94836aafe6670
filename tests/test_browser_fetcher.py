"""
Tests for the headless browser extractor, with the Chrome driver mocked.
"""

from unittest.mock import MagicMock

from selenium.common.exceptions import NoSuchElementException, WebDriverException
from selenium.webdriver.common.keys import Keys

from docsite_ingest.core.browser_fetcher import BrowserPageExtractor

URL = "https://docs.example.com/p/colors"
HTML = """
<html><head><title>Colors</title></head><body>
  <div class="zh-content"><p>Palette</p><img src="/images/logo.png"></div>
  <a href="/p/type">Type</a>
</body></html>
"""


def _driver(password_field=None):
    driver = MagicMock()
    driver.page_source = HTML
    driver.current_url = URL
    driver.execute_script.return_value = [
        "https://cdn.example.com/bg.jpg",
        "https://docs.example.com/images/logo.png",
    ]
    if password_field is None:
        driver.find_element.side_effect = NoSuchElementException("no password input")
    else:
        driver.find_element.return_value = password_field
    driver.get_cookies.return_value = [
        {"name": "sid", "value": "abc"},
        {"name": "auth", "value": "1"},
    ]
    return driver


class TestBrowserPageExtractor:
    def test_extract_adds_background_images_once(self):
        driver = _driver()
        extractor = BrowserPageExtractor(
            "docs.example.com", driver_factory=lambda: driver, sleep=lambda _: None
        )

        extract = extractor.extract(URL)

        driver.get.assert_called_once_with(URL)
        assert extract.title == "Colors"
        assert [ref.src for ref in extract.image_refs] == [
            "https://docs.example.com/images/logo.png",
            "https://cdn.example.com/bg.jpg",
        ]
        assert extract.page_links == ["https://docs.example.com/p/type"]

    def test_password_submitted_once_per_host(self):
        field = MagicMock()
        driver = _driver(password_field=field)
        extractor = BrowserPageExtractor(
            "docs.example.com", "s3cret", driver_factory=lambda: driver, sleep=lambda _: None
        )

        extractor.extract(URL)
        extractor.extract(URL + "-2")

        field.send_keys.assert_any_call("s3cret")
        field.send_keys.assert_any_call(Keys.RETURN)
        assert driver.find_element.call_count == 1

    def test_no_password_means_no_login_attempt(self):
        driver = _driver(password_field=MagicMock())
        extractor = BrowserPageExtractor(
            "docs.example.com", driver_factory=lambda: driver, sleep=lambda _: None
        )

        extractor.extract(URL)

        driver.find_element.assert_not_called()

    def test_background_scan_failure_is_ignored(self):
        driver = _driver()
        driver.execute_script.side_effect = WebDriverException("script error")
        extractor = BrowserPageExtractor(
            "docs.example.com", driver_factory=lambda: driver, sleep=lambda _: None
        )

        extract = extractor.extract(URL)

        assert [ref.src for ref in extract.image_refs] == [
            "https://docs.example.com/images/logo.png"
        ]

    def test_cookie_header_and_close(self):
        driver = _driver()
        factory = MagicMock(return_value=driver)
        extractor = BrowserPageExtractor(
            "docs.example.com", driver_factory=factory, sleep=lambda _: None
        )

        assert extractor.cookie_header() is None
        extractor.extract(URL)
        assert extractor.cookie_header() == "sid=abc; auth=1"

        extractor.close()
        driver.quit.assert_called_once()
        factory.assert_called_once()
