"""robots.txt parsing, path matching and a domain-keyed rules cache."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import httpx

from crawl_engine.domain.model import RobotsRules
from crawl_engine.observability.metrics import ROBOTS_FETCHES


if TYPE_CHECKING:
    from crawl_engine.utils.crawl_store import CrawlStore

logger = logging.getLogger(__name__)

_ERROR_TTL = timedelta(hours=1)


def parse_robots_txt(content: str | None, user_agent: str = "*") -> RobotsRules:
    """Parse robots.txt into the rules that apply to ``user_agent``.

    Groups addressed to ``*`` or to a token contained in our user agent are
    merged. ``Sitemap`` lines are global. ``Crawl-delay`` is converted to
    milliseconds.
    """
    if not content:
        return RobotsRules()

    agent = user_agent.lower()
    allowed: list[str] = []
    disallowed: list[str] = []
    sitemaps: list[str] = []
    crawl_delay_ms: int | None = None

    group_agents: list[str] = []
    in_agent_block = False
    relevant = False

    for raw_line in content.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        directive, _, value = line.partition(":")
        directive = directive.strip().lower()
        value = value.strip()

        if directive == "user-agent":
            if not in_agent_block:
                group_agents = []
            group_agents.append(value.lower())
            in_agent_block = True
            relevant = any(_agent_applies(token, agent) for token in group_agents)
            continue

        in_agent_block = False
        if directive == "sitemap":
            if value and value not in sitemaps:
                sitemaps.append(value)
        elif not relevant:
            continue
        elif directive == "allow" and value:
            allowed.append(value)
        elif directive == "disallow" and value:
            disallowed.append(value)
        elif directive == "crawl-delay":
            try:
                crawl_delay_ms = int(float(value) * 1000)
            except ValueError:
                logger.debug("Ignoring invalid Crawl-delay value %r", value)

    return RobotsRules(
        allowed_paths=tuple(allowed),
        disallowed_paths=tuple(disallowed),
        sitemaps=tuple(sitemaps),
        crawl_delay_ms=crawl_delay_ms,
    )


def _agent_applies(token: str, agent: str) -> bool:
    if not token:
        return False
    return token == "*" or token == agent or token in agent


def _pattern_to_regex(pattern: str) -> re.Pattern[str]:
    anchored = pattern.endswith("$")
    body = pattern[:-1] if anchored else pattern
    regex = ".*".join(re.escape(chunk) for chunk in body.split("*"))
    return re.compile(f"^{regex}{'$' if anchored else ''}")


def path_matches_pattern(path: str, pattern: str) -> bool:
    """``*`` matches any run of characters; a trailing ``$`` anchors the end."""
    return _pattern_to_regex(pattern).match(path) is not None


def is_path_allowed(path: str, rules: RobotsRules) -> bool:
    """A disallow match blocks the path unless a longer allow pattern also matches."""
    for disallow in rules.disallowed_paths:
        if not path_matches_pattern(path, disallow):
            continue
        overridden = any(
            len(allow) > len(disallow) and path_matches_pattern(path, allow) for allow in rules.allowed_paths
        )
        if not overridden:
            return False
    return True


def robots_key(url: str) -> str:
    """Cache key for a URL's robots rules: lowercase host plus non-default port."""
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    port = parts.port
    if port is not None and not ((parts.scheme == "http" and port == 80) or (parts.scheme == "https" and port == 443)):
        return f"{host}:{port}"
    return host


@dataclass(slots=True, frozen=True)
class RobotsCacheEntry:
    """Cached robots.txt for one domain."""

    domain: str
    rules: RobotsRules
    fetched_at: datetime
    expires_at: datetime
    robots_txt: str | None = None

    def is_expired(self, *, now: datetime | None = None) -> bool:
        moment = now or datetime.now(timezone.utc)
        return moment >= self.expires_at


class RobotsCache:
    """Domain-keyed robots rules shared by every job.

    Entries live in the crawl store so they survive restarts. Concurrent
    lookups for the same domain share one fetch.
    """

    def __init__(
        self,
        store: CrawlStore,
        client: httpx.AsyncClient,
        *,
        user_agent: str,
        ttl: timedelta = timedelta(hours=24),
    ) -> None:
        self._store = store
        self._client = client
        self._user_agent = user_agent
        self._ttl = ttl
        self._locks: dict[str, asyncio.Lock] = {}

    async def get_rules(self, url: str) -> RobotsRules:
        """Return cached rules for the URL's domain, fetching robots.txt when stale."""
        domain = robots_key(url)
        entry = await self._store.get_robots_entry(domain)
        if entry is not None and not entry.is_expired():
            ROBOTS_FETCHES.labels(outcome="cache_hit").inc()
            return entry.rules

        lock = self._locks.setdefault(domain, asyncio.Lock())
        async with lock:
            entry = await self._store.get_robots_entry(domain)
            if entry is not None and not entry.is_expired():
                ROBOTS_FETCHES.labels(outcome="cache_hit").inc()
                return entry.rules
            entry = await self._fetch(url, domain)
            await self._store.save_robots_entry(entry)
            return entry.rules

    async def _fetch(self, url: str, domain: str) -> RobotsCacheEntry:
        parts = urlsplit(url)
        robots_url = f"{parts.scheme}://{domain}/robots.txt"
        now = datetime.now(timezone.utc)

        try:
            response = await self._client.get(
                robots_url, headers={"User-Agent": self._user_agent}, follow_redirects=True
            )
        except httpx.HTTPError as exc:
            logger.warning("robots.txt fetch failed for %s: %s; crawling without restrictions", domain, exc)
            ROBOTS_FETCHES.labels(outcome="error").inc()
            return RobotsCacheEntry(domain=domain, rules=RobotsRules(), fetched_at=now, expires_at=now + _ERROR_TTL)

        if response.status_code >= 500:
            logger.warning("robots.txt for %s returned %s; crawling without restrictions", domain, response.status_code)
            ROBOTS_FETCHES.labels(outcome="error").inc()
            return RobotsCacheEntry(domain=domain, rules=RobotsRules(), fetched_at=now, expires_at=now + _ERROR_TTL)

        if not response.is_success:
            logger.debug("No robots.txt for %s (status %s)", domain, response.status_code)
            ROBOTS_FETCHES.labels(outcome="missing").inc()
            return RobotsCacheEntry(domain=domain, rules=RobotsRules(), fetched_at=now, expires_at=now + self._ttl)

        text = response.text
        rules = parse_robots_txt(text, self._user_agent)
        ROBOTS_FETCHES.labels(outcome="fetched").inc()
        logger.info(
            "Cached robots.txt for %s: %d disallow, %d allow, %d sitemaps",
            domain,
            len(rules.disallowed_paths),
            len(rules.allowed_paths),
            len(rules.sitemaps),
        )
        return RobotsCacheEntry(
            domain=domain,
            rules=rules,
            fetched_at=now,
            expires_at=now + self._ttl,
            robots_txt=text,
        )
