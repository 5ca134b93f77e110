"""Single-page HTTP fetch followed by content extraction.

The fetcher holds no crawl state. Each call issues one GET with the crawler's
identifying user agent and the job's auth and custom headers, follows
redirects, and either returns a ``FetchOutcome`` or raises ``FetchError``.
Non-HTML responses come back as skipped outcomes rather than errors.
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
import logging
import time

import httpx
from opentelemetry.trace import SpanKind

from crawl_engine.domain.model import AuthType, JobConfig
from crawl_engine.observability.metrics import FETCH_LATENCY
from crawl_engine.observability.tracing import create_span
from crawl_engine.utils.extractor import ExtractedContent, extract_content
from crawl_engine.utils.url_rules import extract_domain


logger = logging.getLogger(__name__)

DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
DEFAULT_ACCEPT_LANGUAGE = "en-US,en;q=0.5"
_HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


class FetchError(Exception):
    """A fetch that should count as a failed attempt (network error, timeout, non-2xx)."""

    def __init__(self, message: str, *, status_code: int | None = None, url: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


@dataclass(slots=True)
class FetchOutcome:
    url: str
    final_url: str
    status_code: int
    content_type: str
    content_length: int | None = None
    raw_html_size: int = 0
    content: ExtractedContent | None = None
    skipped_reason: str | None = None
    elapsed_ms: int = 0

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


def build_request_headers(config: JobConfig, user_agent: str) -> dict[str, str]:
    """Merge the job's custom headers under the crawler's own headers.

    Built-in headers win on conflict, compared case-insensitively.
    """
    built_in: dict[str, str] = {
        "User-Agent": user_agent,
        "Accept": DEFAULT_ACCEPT,
        "Accept-Language": DEFAULT_ACCEPT_LANGUAGE,
    }
    credentials = config.auth_credentials
    if credentials:
        if config.auth_type == AuthType.BEARER:
            built_in["Authorization"] = f"Bearer {credentials}"
        elif config.auth_type == AuthType.BASIC:
            encoded = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
            built_in["Authorization"] = f"Basic {encoded}"
        elif config.auth_type == AuthType.COOKIE:
            built_in["Cookie"] = credentials

    reserved = {name.lower() for name in built_in}
    headers = {name: value for name, value in config.parsed_custom_headers().items() if name.lower() not in reserved}
    headers.update(built_in)
    return headers


def is_html_content_type(content_type: str) -> bool:
    lowered = content_type.lower()
    return any(kind in lowered for kind in _HTML_CONTENT_TYPES)


def _content_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class PageFetcher:
    """Fetch and extract pages over a shared ``httpx.AsyncClient``.

    Fetches to the same domain share one semaphore, sized by the
    ``max_concurrent`` of the first job that reaches that domain.
    """

    def __init__(self, client: httpx.AsyncClient, *, user_agent: str) -> None:
        self._client = client
        self._user_agent = user_agent
        self._domain_slots: dict[str, asyncio.Semaphore] = {}

    def _slot_for(self, domain: str, size: int) -> asyncio.Semaphore:
        semaphore = self._domain_slots.get(domain)
        if semaphore is None:
            semaphore = asyncio.Semaphore(max(1, size))
            self._domain_slots[domain] = semaphore
        return semaphore

    async def fetch(self, url: str, config: JobConfig) -> FetchOutcome:
        headers = build_request_headers(config, self._user_agent)
        slot = self._slot_for(extract_domain(url), config.max_concurrent)

        async with slot:
            with create_span("crawl.fetch", kind=SpanKind.CLIENT, attributes={"http.url": url}) as span:
                start = time.perf_counter()
                try:
                    response = await self._client.get(url, headers=headers, follow_redirects=True)
                except httpx.TimeoutException as exc:
                    FETCH_LATENCY.labels(outcome="error").observe(time.perf_counter() - start)
                    raise FetchError(f"Timeout fetching {url}", url=url) from exc
                except httpx.HTTPError as exc:
                    FETCH_LATENCY.labels(outcome="error").observe(time.perf_counter() - start)
                    raise FetchError(str(exc) or exc.__class__.__name__, url=url) from exc
                elapsed = time.perf_counter() - start
                span.set_attribute("http.status_code", response.status_code)

        if not response.is_success:
            FETCH_LATENCY.labels(outcome="error").observe(elapsed)
            raise FetchError(f"HTTP {response.status_code}", status_code=response.status_code, url=url)

        final_url = str(response.url)
        content_type = response.headers.get("content-type", "")
        outcome = FetchOutcome(
            url=url,
            final_url=final_url,
            status_code=response.status_code,
            content_type=content_type,
            content_length=_content_length(response),
            raw_html_size=len(response.content),
            elapsed_ms=int(elapsed * 1000),
        )
        if not is_html_content_type(content_type):
            FETCH_LATENCY.labels(outcome="skipped").observe(elapsed)
            outcome.skipped_reason = f"Unsupported content type: {content_type or 'unknown'}"
            logger.debug("Skipping %s: %s", url, outcome.skipped_reason)
            return outcome

        FETCH_LATENCY.labels(outcome="success").observe(elapsed)
        try:
            outcome.content = await asyncio.to_thread(extract_content, response.text, final_url)
        except Exception as exc:
            logger.warning("Extraction failed for %s: %s", final_url, exc, exc_info=True)
            outcome.skipped_reason = f"Extraction failed: {exc.__class__.__name__}: {exc}"
        return outcome
