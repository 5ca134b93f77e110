"""URL canonicalisation, crawl eligibility rules and priority heuristics."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import ipaddress
import logging
import posixpath
import re
from typing import Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from crawl_engine.domain.model import DomainRestriction, JobConfig, RobotsRules
from crawl_engine.utils.robots import is_path_allowed


logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"http": 80, "https": 443}

TRACKING_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "fbclid",
        "gclid",
        "ref",
        "_ga",
        "mc_eid",
    }
)

_TWO_PART_TLDS = frozenset({"co.uk", "com.au", "co.nz", "co.jp", "co.in", "gov.uk"})

# Extension -> MIME type used as a content-type hint before fetching.
_EXTENSION_CONTENT_TYPES = {
    ".html": "text/html",
    ".htm": "text/html",
    ".xhtml": "application/xhtml+xml",
    ".php": "text/html",
    ".asp": "text/html",
    ".aspx": "text/html",
    ".jsp": "text/html",
    ".md": "text/markdown",
    ".txt": "text/plain",
    ".css": "text/css",
    ".js": "application/javascript",
    ".json": "application/json",
    ".xml": "application/xml",
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".tar": "application/x-tar",
    ".gz": "application/gzip",
    ".exe": "application/octet-stream",
    ".dmg": "application/octet-stream",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".mp4": "video/mp4",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
}

_NON_CONTENT_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"/login/?$",
        r"/signin/?$",
        r"/signup/?$",
        r"/register/?$",
        r"/auth(/|$)",
        r"/404/?$",
        r"/500/?$",
        r"/error/?$",
        r"/cart/?$",
        r"/checkout/?$",
        r"/admin(/|$)",
        r"/wp-admin(/|$)",
    )
)

_PRIORITY_URL_BOOSTS = (
    (re.compile(r"/docs?/", re.IGNORECASE), 15),
    (re.compile(r"/api/", re.IGNORECASE), 15),
    (re.compile(r"/guide", re.IGNORECASE), 10),
    (re.compile(r"/tutorial", re.IGNORECASE), 10),
    (re.compile(r"/getting-started", re.IGNORECASE), 12),
    (re.compile(r"/quickstart", re.IGNORECASE), 12),
    (re.compile(r"/reference", re.IGNORECASE), 10),
    (re.compile(r"readme", re.IGNORECASE), 15),
    (re.compile(r"index\.html?$", re.IGNORECASE), 5),
)

_PRIORITY_ANCHOR_WORDS = (
    "documentation",
    "docs",
    "api",
    "guide",
    "tutorial",
    "getting started",
    "quick start",
    "reference",
    "overview",
)


def normalize_url(url: str) -> str:
    """Return the canonical form of ``url`` used as the per-job dedup key.

    Lowercases scheme and host, drops default ports, the fragment and known
    tracking parameters, sorts the query string and strips a trailing slash
    from every path except the root. Input that cannot be parsed is returned
    unchanged.
    """
    try:
        parts = urlsplit(url.strip())
        scheme = parts.scheme.lower()
        host = (parts.hostname or "").lower()
        port = parts.port
    except ValueError:
        return url
    if not scheme or not host:
        return url

    if ":" in host:
        host = f"[{host}]"
    netloc = host
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"
    if parts.username:
        credentials = parts.username if parts.password is None else f"{parts.username}:{parts.password}"
        netloc = f"{credentials}@{netloc}"

    path = parts.path or "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"

    query_pairs = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() not in TRACKING_PARAMS
    ]
    query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(query_pairs)

    return urlunsplit((scheme, netloc, path, query, ""))


def extract_domain(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def extract_base_domain(url: str) -> str:
    """Registrable domain without subdomains (``docs.example.co.uk`` -> ``example.co.uk``)."""
    hostname = extract_domain(url)
    if not hostname:
        return ""
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        pass
    else:
        return hostname

    labels = hostname.split(".")
    if len(labels) <= 2:
        return hostname
    if ".".join(labels[-2:]) in _TWO_PART_TLDS:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


def matches_domain_restriction(url: str, start_url: str, restriction: DomainRestriction | str) -> bool:
    restriction = DomainRestriction(restriction)
    if restriction is DomainRestriction.ANY:
        return True

    host = extract_domain(url)
    start_host = extract_domain(start_url)
    if not host:
        return False
    if restriction is DomainRestriction.SAME:
        return host == start_host

    if host == start_host or host.endswith(f".{start_host}"):
        return True
    return extract_base_domain(url) == extract_base_domain(start_url)


def content_type_hint(url: str) -> str | None:
    """Guess the content type from the URL path extension, or None when unknown."""
    try:
        path = urlsplit(url).path
    except ValueError:
        return None
    _root, ext = posixpath.splitext(path.lower())
    if not ext:
        return None
    return _EXTENSION_CONTENT_TYPES.get(ext)


def content_type_allowed(content_type: str, allowed: Iterable[str]) -> bool:
    """Check a MIME type against an allow list that may hold ``type/*`` wildcards."""
    mime = content_type.split(";", 1)[0].strip().lower()
    for candidate in allowed:
        candidate = candidate.strip().lower()
        if candidate in {"*", "*/*"} or candidate == mime:
            return True
        if candidate.endswith("/*") and mime.startswith(candidate[:-1]):
            return True
        if candidate == "text/html" and mime == "application/xhtml+xml":
            return True
    return False


def is_non_content_url(url: str) -> bool:
    try:
        path = urlsplit(url).path
    except ValueError:
        return False
    return any(pattern.search(path) for pattern in _NON_CONTENT_PATTERNS)


class Rule(Protocol):
    pattern: str

    def matches(self, url: str) -> bool: ...


@dataclass(slots=True, frozen=True)
class PatternRule:
    """Include/exclude pattern compiled once per job.

    Patterns are case-insensitive regular expressions; a pattern that does not
    compile is treated as a plain substring.
    """

    pattern: str
    regex: re.Pattern[str] | None

    @classmethod
    def compile(cls, pattern: str) -> PatternRule:
        try:
            return cls(pattern=pattern, regex=re.compile(pattern, re.IGNORECASE))
        except re.error:
            logger.debug("Pattern %r is not a valid regex, using substring match", pattern)
            return cls(pattern=pattern, regex=None)

    def matches(self, url: str) -> bool:
        if self.regex is None:
            return self.pattern.lower() in url.lower()
        return self.regex.search(url) is not None


@dataclass(slots=True, frozen=True)
class Classification:
    allowed: bool
    reason: str | None = None


ALLOWED = Classification(allowed=True)


@dataclass(slots=True)
class UrlClassifier:
    """Crawl eligibility rules for one job, compiled once at job start."""

    start_url: str
    domain_restriction: DomainRestriction
    max_depth: int
    content_types: tuple[str, ...]
    include_rules: tuple[Rule, ...] = ()
    exclude_rules: tuple[Rule, ...] = ()
    reject_non_content: bool = True

    @classmethod
    def from_config(cls, config: JobConfig) -> UrlClassifier:
        return cls(
            start_url=config.start_url,
            domain_restriction=config.domain_restriction,
            max_depth=config.max_depth,
            content_types=tuple(config.content_types),
            include_rules=tuple(PatternRule.compile(p) for p in config.include_patterns if p),
            exclude_rules=tuple(PatternRule.compile(p) for p in config.exclude_patterns if p),
        )

    def classify(self, url: str, depth: int, robots_rules: RobotsRules | None = None) -> Classification:
        """Evaluate rules in order and return the first failure, if any."""
        if not matches_domain_restriction(url, self.start_url, self.domain_restriction):
            return Classification(False, f"Domain restriction ({self.domain_restriction.value})")

        if self.include_rules and not any(rule.matches(url) for rule in self.include_rules):
            return Classification(False, "Does not match include patterns")

        for rule in self.exclude_rules:
            if rule.matches(url):
                return Classification(False, f"Matches exclude pattern: {rule.pattern}")

        if depth > self.max_depth:
            return Classification(False, f"Exceeds max depth ({depth} > {self.max_depth})")

        hint = content_type_hint(url)
        if hint is not None and not content_type_allowed(hint, self.content_types):
            return Classification(False, f"Content type not allowed: {hint}")

        if self.reject_non_content and is_non_content_url(url):
            return Classification(False, "Non-content page detected")

        if robots_rules is not None:
            path = urlsplit(url).path or "/"
            if not is_path_allowed(path, robots_rules):
                return Classification(False, "Blocked by robots.txt")

        return ALLOWED


def classify(
    url: str,
    start_url: str,
    config: JobConfig,
    depth: int,
    robots_rules: RobotsRules | None = None,
) -> Classification:
    """One-shot classification; jobs should reuse a compiled ``UrlClassifier``."""
    return UrlClassifier.from_config(config.model_copy(update={"start_url": start_url})).classify(
        url, depth, robots_rules
    )


def calculate_priority(
    url: str,
    anchor_text: str | None,
    depth: int,
    sitemap_priority: float | None = None,
) -> int:
    """Crawl priority 0..100; shallower and documentation-like URLs rank higher."""
    priority = 50.0 - depth * 5
    if sitemap_priority is not None:
        priority += sitemap_priority * 20

    for pattern, boost in _PRIORITY_URL_BOOSTS:
        if pattern.search(url):
            priority += boost
            break

    if anchor_text:
        lowered = anchor_text.lower()
        if any(word in lowered for word in _PRIORITY_ANCHOR_WORDS):
            priority += 8

    return clamp_priority(priority)


def clamp_priority(value: float) -> int:
    return int(max(0, min(100, round(value))))

