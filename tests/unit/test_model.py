from __future__ import annotations

from datetime import datetime, timezone

from pydantic import ValidationError
import pytest

from crawl_engine.domain.model import (
    CrawlJob,
    InvalidJobTransitionError,
    JobConfig,
    JobStatus,
    RobotsRules,
    SitemapUrl,
    parse_iso,
    to_iso,
)


def _job(status: JobStatus) -> CrawlJob:
    return CrawlJob(id="job-1", config=JobConfig(start_url="https://example.com/"), status=status)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (JobStatus.IDLE, JobStatus.QUEUED, True),
        (JobStatus.IDLE, JobStatus.RUNNING, False),
        (JobStatus.QUEUED, JobStatus.RUNNING, True),
        (JobStatus.RUNNING, JobStatus.PAUSED, True),
        (JobStatus.RUNNING, JobStatus.QUEUED, False),
        (JobStatus.PAUSED, JobStatus.QUEUED, True),
        (JobStatus.PAUSED, JobStatus.RUNNING, False),
        (JobStatus.COMPLETED, JobStatus.QUEUED, True),
        (JobStatus.COMPLETED, JobStatus.CANCELLED, False),
        (JobStatus.CANCELLED, JobStatus.CANCELLED, False),
    ],
)
def test_transition_table(current: JobStatus, target: JobStatus, allowed: bool) -> None:
    assert _job(current).can_transition_to(target) is allowed


@pytest.mark.unit
def test_check_transition_message() -> None:
    with pytest.raises(InvalidJobTransitionError, match="Cannot pause job job-1: job is completed"):
        _job(JobStatus.COMPLETED).check_transition(JobStatus.PAUSED, "pause")


@pytest.mark.unit
def test_status_flags() -> None:
    assert {status for status in JobStatus if status.is_terminal} == {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }
    assert {status for status in JobStatus if status.is_active} == {JobStatus.QUEUED, JobStatus.RUNNING}


@pytest.mark.unit
def test_job_config_defaults() -> None:
    config = JobConfig(start_url="  https://example.com/docs  ")

    assert config.start_url == "https://example.com/docs"
    assert config.content_types == ["text/html"]
    assert config.domain_restriction.value == "same"
    assert config.parsed_custom_headers() == {}


@pytest.mark.unit
def test_job_config_empty_content_types_fall_back_to_html() -> None:
    assert JobConfig(start_url="https://example.com/", content_types=[]).content_types == ["text/html"]


@pytest.mark.unit
def test_job_config_custom_headers() -> None:
    config = JobConfig(start_url="https://example.com/", custom_headers='{"X-Api": 1}')

    assert config.parsed_custom_headers() == {"X-Api": "1"}
    assert JobConfig(start_url="https://example.com/", custom_headers="  ").custom_headers is None


@pytest.mark.unit
@pytest.mark.parametrize(
    "overrides",
    [
        {"start_url": "mailto:someone@example.com"},
        {"start_url": "https://"},
        {"start_url": "https://example.com/", "custom_headers": "{broken"},
        {"start_url": "https://example.com/", "schedule_hour": 24},
        {"start_url": "https://example.com/", "schedule_day_of_week": 7},
        {"start_url": "https://example.com/", "max_concurrent": 0},
        {"start_url": "https://example.com/", "request_delay_ms": -1},
    ],
)
def test_job_config_validation(overrides) -> None:
    with pytest.raises(ValidationError):
        JobConfig(**overrides)


@pytest.mark.unit
def test_job_to_dict_serializes_enums_and_dates() -> None:
    job = _job(JobStatus.RUNNING)
    job.started_at = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    data = job.to_dict()

    assert data["status"] == "running"
    assert data["started_at"] == "2024-01-01T12:00:00+00:00"
    assert data["completed_at"] is None
    assert data["config"]["start_url"] == "https://example.com/"
    assert job.counters_consistent


@pytest.mark.unit
def test_iso_helpers_normalize_to_utc() -> None:
    assert parse_iso(None) is None
    assert parse_iso("2024-01-01T14:00:00+02:00") == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert to_iso(None) is None


@pytest.mark.unit
def test_robots_rules_and_sitemap_url_dicts() -> None:
    rules = RobotsRules(disallowed_paths=("/a",), sitemaps=("https://example.com/s.xml",), crawl_delay_ms=500)

    assert RobotsRules.from_dict(rules.to_dict()) == rules
    assert not rules.is_unrestricted
    assert SitemapUrl.from_dict({"loc": "https://example.com/", "priority": "0.4"}).priority == 0.4
