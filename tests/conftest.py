"""Shared test fixtures and configuration."""

import os
from pathlib import Path
import sys

import httpx
import pytest


SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))


# Complete test environment that overrides every config value
TEST_ENV = {
    "CRAWL_DB_PATH": "crawl_data/test.sqlite",
    "HTTP_TIMEOUT": "5",
    "CRAWLER_USER_AGENT": "TestCrawler/1.0 (+https://example.test/bot)",
    "ROBOTS_CACHE_TTL_HOURS": "24",
    "MAX_FETCH_ATTEMPTS": "3",
    "RETRY_BACKOFF_BASE_SECONDS": "2",
    "DEFAULT_MAX_PAGES": "100",
    "DEFAULT_MAX_DEPTH": "3",
    "DEFAULT_REQUEST_DELAY_MS": "0",
    "DEFAULT_MAX_CONCURRENT": "1",
    # Scheduler loops are started explicitly by the tests that need them
    "SCHEDULER_ENABLED": "false",
    "SCHEDULER_POLL_SECONDS": "60",
    "LOG_LEVEL": "info",
    "LOG_JSON": "false",
    # Proxy settings - ensure they're cleared for tests
    "http_proxy": "",
    "https_proxy": "",
    "all_proxy": "",
    "no_proxy": "",
}


# Set environment variables immediately when conftest.py is loaded
for key, value in TEST_ENV.items():
    os.environ[key] = value

from crawl_engine.config import Settings


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Clean environment variables before each test and set test defaults."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(crawl_db_path=tmp_path / "crawl.sqlite")


class FakeSite:
    """In-memory web site served through ``httpx.MockTransport``.

    ``pages`` maps absolute URLs to an HTML string, or to a
    ``(status_code, body, content_type)`` tuple, or to an exception instance
    that is raised for the request. Unknown URLs answer 404.
    """

    def __init__(self, pages: dict | None = None) -> None:
        self.pages: dict = dict(pages or {})
        self.requests: list[httpx.Request] = []

    @property
    def requested_urls(self) -> list[str]:
        return [str(request.url) for request in self.requests]

    def count(self, url: str) -> int:
        return self.requested_urls.count(url)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        entry = self.pages.get(str(request.url))
        if entry is None:
            return httpx.Response(404, text="not found", headers={"content-type": "text/plain"})
        if isinstance(entry, Exception):
            raise entry
        if isinstance(entry, str):
            return httpx.Response(200, text=entry, headers={"content-type": "text/html; charset=utf-8"})
        status_code, body, content_type = entry
        headers = {"content-type": content_type} if content_type else {}
        if 300 <= status_code < 400:
            headers["location"] = body
            return httpx.Response(status_code, headers=headers)
        return httpx.Response(status_code, text=body, headers=headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def fake_site() -> FakeSite:
    return FakeSite()
