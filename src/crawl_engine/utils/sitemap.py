"""Sitemap discovery and parsing.

Tries robots-declared sitemaps first, then the usual well-known locations,
and parses whatever answers with lxml. Sitemap indexes are expanded one
level deep.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from urllib.parse import urlsplit

import httpx
from lxml import etree  # type: ignore[import-untyped]

from crawl_engine.domain.model import SitemapUrl


logger = logging.getLogger(__name__)

WELL_KNOWN_SITEMAP_PATHS = ("/sitemap.xml", "/sitemap_index.xml", "/sitemap/sitemap.xml")
SITEMAP_ACCEPT = "application/xml, text/xml, */*"


@dataclass(slots=True)
class SitemapDiscovery:
    """Outcome of probing a site for a sitemap."""

    found: bool
    sitemap_url: str | None = None
    is_index: bool = False
    urls: list[SitemapUrl] = field(default_factory=list)


def _parse_root(content: str | bytes):
    if isinstance(content, str):
        content = content.encode("utf-8")
    content = content.strip()
    if not content:
        return None
    parser = etree.XMLParser(recover=False, resolve_entities=False, no_network=True)
    try:
        return etree.fromstring(content, parser=parser)
    except etree.XMLSyntaxError as exc:
        logger.debug("Sitemap XML syntax error: %s", exc)
        return None


def _child_text(element, tag: str) -> str | None:
    child = element.find(f"{{*}}{tag}")
    if child is None or child.text is None:
        return None
    text = child.text.strip()
    return text or None


def parse_sitemap(content: str | bytes) -> list[SitemapUrl]:
    """Parse ``<url>`` entries and nested ``<sitemap>`` locations.

    Malformed XML yields an empty list.
    """
    root = _parse_root(content)
    if root is None:
        return []

    urls: list[SitemapUrl] = []
    for url_elem in root.iter("{*}url"):
        loc = _child_text(url_elem, "loc")
        if not loc:
            continue
        priority_text = _child_text(url_elem, "priority")
        priority: float | None = None
        if priority_text is not None:
            try:
                priority = float(priority_text)
            except ValueError:
                priority = None
        urls.append(
            SitemapUrl(
                loc=loc,
                lastmod=_child_text(url_elem, "lastmod"),
                priority=priority,
                changefreq=_child_text(url_elem, "changefreq"),
            )
        )

    for sitemap_elem in root.iter("{*}sitemap"):
        loc = _child_text(sitemap_elem, "loc")
        if loc:
            urls.append(SitemapUrl(loc=loc, lastmod=_child_text(sitemap_elem, "lastmod")))
    return urls


def is_sitemap_index(content: str | bytes) -> bool:
    root = _parse_root(content)
    if root is None:
        return False
    return etree.QName(root).localname == "sitemapindex"


class SitemapFetcher:
    """Find and read a site's sitemap with a shared HTTP client."""

    def __init__(self, client: httpx.AsyncClient, *, user_agent: str, max_child_sitemaps: int = 10) -> None:
        self._client = client
        self._headers = {"User-Agent": user_agent, "Accept": SITEMAP_ACCEPT}
        self._max_child_sitemaps = max_child_sitemaps

    @staticmethod
    def candidate_urls(start_url: str, extra_urls: list[str] | tuple[str, ...] = ()) -> list[str]:
        parts = urlsplit(start_url)
        origin = f"{parts.scheme}://{parts.netloc}"
        candidates: list[str] = []
        for url in [*extra_urls, *(origin + path for path in WELL_KNOWN_SITEMAP_PATHS)]:
            if url not in candidates:
                candidates.append(url)
        return candidates

    async def _get(self, url: str) -> bytes | None:
        try:
            response = await self._client.get(url, headers=self._headers, follow_redirects=True)
        except httpx.HTTPError as exc:
            logger.debug("Sitemap fetch failed for %s: %s", url, exc)
            return None
        if not response.is_success or not response.content:
            return None
        return response.content

    async def discover(self, start_url: str, extra_urls: list[str] | tuple[str, ...] = ()) -> SitemapDiscovery:
        """Return the first candidate location that parses to at least one URL."""
        for candidate in self.candidate_urls(start_url, extra_urls):
            content = await self._get(candidate)
            if content is None:
                continue
            urls = parse_sitemap(content)
            if not urls:
                continue
            is_index = is_sitemap_index(content)
            logger.info("Sitemap found at %s (%d entries, index=%s)", candidate, len(urls), is_index)
            return SitemapDiscovery(found=True, sitemap_url=candidate, is_index=is_index, urls=urls)
        return SitemapDiscovery(found=False)

    async def page_urls(self, discovery: SitemapDiscovery) -> list[SitemapUrl]:
        """Page entries of a discovery, following child sitemaps of an index."""
        if not discovery.found:
            return []
        if not discovery.is_index:
            return list(discovery.urls)

        pages: list[SitemapUrl] = []
        for child in discovery.urls[: self._max_child_sitemaps]:
            content = await self._get(child.loc)
            if content is None:
                continue
            if is_sitemap_index(content):
                logger.debug("Skipping nested sitemap index %s", child.loc)
                continue
            pages.extend(parse_sitemap(content))
        return pages
