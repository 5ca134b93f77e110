from __future__ import annotations

import pytest

from crawl_engine.domain.model import DomainRestriction, JobConfig, RobotsRules
from crawl_engine.utils.url_rules import (
    PatternRule,
    UrlClassifier,
    calculate_priority,
    clamp_priority,
    classify,
    content_type_allowed,
    content_type_hint,
    extract_base_domain,
    extract_domain,
    is_non_content_url,
    matches_domain_restriction,
    normalize_url,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("HTTPS://Example.COM:443/Docs/?b=2&a=1&utm_source=news#intro", "https://example.com/Docs?a=1&b=2"),
        ("http://example.com:80/", "http://example.com/"),
        ("http://example.com:8080", "http://example.com:8080/"),
        ("https://example.com/guide///", "https://example.com/guide"),
        ("https://example.com/?fbclid=abc&gclid=def&ref=x", "https://example.com/"),
        ("https://example.com/search?q=", "https://example.com/search?q="),
    ],
)
def test_normalize_url_canonical_forms(raw: str, expected: str) -> None:
    assert normalize_url(raw) == expected


@pytest.mark.unit
def test_normalize_url_returns_unparsable_input_unchanged() -> None:
    assert normalize_url("not a url") == "not a url"
    assert normalize_url("http://[::1") == "http://[::1"


@pytest.mark.unit
def test_normalize_url_is_idempotent() -> None:
    once = normalize_url("https://Docs.Example.com/a/b/?z=1&y=2#top")

    assert normalize_url(once) == once


@pytest.mark.unit
def test_domain_helpers() -> None:
    assert extract_domain("https://Docs.Example.com:8443/x") == "docs.example.com"
    assert extract_base_domain("https://a.b.example.com/") == "example.com"
    assert extract_base_domain("https://docs.example.co.uk/") == "example.co.uk"
    assert extract_base_domain("http://10.0.0.1/") == "10.0.0.1"


@pytest.mark.unit
def test_matches_domain_restriction_modes() -> None:
    start = "https://example.com/"

    assert matches_domain_restriction("https://example.com/a", start, DomainRestriction.SAME)
    assert not matches_domain_restriction("https://docs.example.com/a", start, DomainRestriction.SAME)
    assert matches_domain_restriction("https://docs.example.com/a", start, DomainRestriction.SUBDOMAINS)
    assert matches_domain_restriction("https://example.com/a", "https://www.example.com/", "subdomains")
    assert not matches_domain_restriction("https://example.org/a", start, DomainRestriction.SUBDOMAINS)
    assert matches_domain_restriction("https://other.net/a", start, DomainRestriction.ANY)


@pytest.mark.unit
def test_content_type_hint_and_allow_list() -> None:
    assert content_type_hint("https://example.com/file.PDF") == "application/pdf"
    assert content_type_hint("https://example.com/page.html") == "text/html"
    assert content_type_hint("https://example.com/page") is None
    assert content_type_hint("https://example.com/archive.unknownext") is None

    assert content_type_allowed("text/html; charset=utf-8", ["text/html"])
    assert content_type_allowed("application/xhtml+xml", ["text/html"])
    assert content_type_allowed("image/png", ["image/*"])
    assert not content_type_allowed("application/pdf", ["text/html"])


@pytest.mark.unit
def test_non_content_urls() -> None:
    assert is_non_content_url("https://example.com/login")
    assert is_non_content_url("https://example.com/wp-admin/options.php")
    assert not is_non_content_url("https://example.com/docs/authentication")


@pytest.mark.unit
def test_pattern_rule_falls_back_to_substring() -> None:
    regex_rule = PatternRule.compile(r"/docs/v\d+/")
    broken_rule = PatternRule.compile("/blog/[")

    assert regex_rule.regex is not None
    assert regex_rule.matches("https://example.com/DOCS/v2/intro")
    assert broken_rule.regex is None
    assert broken_rule.matches("https://example.com/blog/[draft]")
    assert not broken_rule.matches("https://example.com/blog/post")


def _classifier(**overrides) -> UrlClassifier:
    config = JobConfig(start_url="https://example.com/", **overrides)
    return UrlClassifier.from_config(config)


@pytest.mark.unit
def test_classifier_allows_in_scope_url() -> None:
    result = _classifier().classify("https://example.com/docs/intro", depth=1)

    assert result.allowed
    assert result.reason is None


@pytest.mark.unit
@pytest.mark.parametrize(
    ("overrides", "url", "depth", "reason"),
    [
        ({}, "https://other.com/page", 1, "Domain restriction (same)"),
        ({"include_patterns": ["/docs/"]}, "https://example.com/blog/x", 1, "Does not match include patterns"),
        ({"exclude_patterns": ["/private"]}, "https://example.com/private/x", 1, "Matches exclude pattern: /private"),
        ({"max_depth": 2}, "https://example.com/deep", 3, "Exceeds max depth (3 > 2)"),
        ({}, "https://example.com/manual.pdf", 1, "Content type not allowed: application/pdf"),
        ({}, "https://example.com/login", 1, "Non-content page detected"),
    ],
)
def test_classifier_rejection_reasons(overrides, url, depth, reason) -> None:
    result = _classifier(**overrides).classify(url, depth=depth)

    assert not result.allowed
    assert result.reason == reason


@pytest.mark.unit
def test_classifier_first_failing_rule_wins() -> None:
    classifier = _classifier(include_patterns=["/docs/"], max_depth=1)

    result = classifier.classify("https://other.com/blog/post", depth=5)

    assert result.reason == "Domain restriction (same)"


@pytest.mark.unit
def test_classifier_rejects_two_hops_past_max_depth() -> None:
    classifier = _classifier(max_depth=3)

    assert classifier.classify("https://example.com/a", depth=3).allowed
    assert not classifier.classify("https://example.com/a", depth=5).allowed


@pytest.mark.unit
def test_classifier_checks_robots_rules_last() -> None:
    rules = RobotsRules(disallowed_paths=("/private",), allowed_paths=("/private/public",))
    classifier = _classifier()

    blocked = classifier.classify("https://example.com/private/x", depth=1, robots_rules=rules)
    allowed = classifier.classify("https://example.com/private/public/x", depth=1, robots_rules=rules)

    assert blocked.reason == "Blocked by robots.txt"
    assert allowed.allowed


@pytest.mark.unit
def test_classifier_wildcard_content_types_accept_anything() -> None:
    classifier = _classifier(content_types=["*/*"])

    assert classifier.classify("https://example.com/manual.pdf", depth=1).allowed


@pytest.mark.unit
def test_module_classify_uses_given_start_url() -> None:
    config = JobConfig(start_url="https://example.com/")

    result = classify("https://docs.example.org/a", "https://docs.example.org/", config, depth=0)

    assert result.allowed


@pytest.mark.unit
def test_calculate_priority_heuristics() -> None:
    assert calculate_priority("https://example.com/blog/post", None, 2) == 40
    assert calculate_priority("https://example.com/docs/intro", "Getting started", 1) == 68
    assert calculate_priority("https://example.com/", None, 0, sitemap_priority=1.0) == 70
    # Only the first matching URL boost applies.
    assert calculate_priority("https://example.com/api/reference", None, 0) == 65
    assert calculate_priority("https://example.com/x", None, 30) == 0


@pytest.mark.unit
def test_shallower_links_rank_higher() -> None:
    shallow = calculate_priority("https://example.com/page", "Page", 1)
    deep = calculate_priority("https://example.com/page", "Page", 3)

    assert shallow > deep


@pytest.mark.unit
def test_clamp_priority() -> None:
    assert clamp_priority(150) == 100
    assert clamp_priority(-3) == 0
    assert clamp_priority(42.6) == 43
