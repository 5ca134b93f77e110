"""Domain model for crawl jobs, their queue, pages and run history.

The job aggregate owns a small state machine:

    idle -> queued -> running <-> paused
    terminal: completed | failed | cancelled

Every record type knows how to turn itself into a plain dict (``to_dict``)
and how to rebuild itself from a ``sqlite3.Row`` (``from_row``).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, field_validator, model_validator


class CrawlEngineError(Exception):
    """Base error for the crawl engine domain."""


class InvalidJobConfigError(CrawlEngineError):
    """Raised when a job configuration cannot be accepted."""


class JobNotFoundError(CrawlEngineError):
    """Raised when a job id does not exist."""


class QueueItemNotFoundError(CrawlEngineError):
    """Raised when a queue item id does not exist."""


class InvalidJobTransitionError(CrawlEngineError):
    """Raised when an operation is not allowed from the job's current status."""


class QueueItemStateError(CrawlEngineError):
    """Raised when a queue item is not in a state that allows the operation."""


class JobStatus(str, Enum):
    """Lifecycle states of a crawl job."""

    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}

    @property
    def is_active(self) -> bool:
        """True when the orchestrator is allowed to process ticks."""
        return self in {JobStatus.QUEUED, JobStatus.RUNNING}


_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.IDLE: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset(
        {JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.CANCELLED, JobStatus.FAILED}
    ),
    JobStatus.RUNNING: frozenset({JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.PAUSED: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset({JobStatus.QUEUED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.CANCELLED: frozenset({JobStatus.QUEUED}),
}


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class DomainRestriction(str, Enum):
    SAME = "same"
    SUBDOMAINS = "subdomains"
    ANY = "any"


class AuthType(str, Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    COOKIE = "cookie"


class ScheduleFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value).astimezone(timezone.utc)


class JobConfig(BaseModel):
    """Operator-supplied crawl job configuration."""

    name: str = Field(default="", description="Human readable job name")
    start_url: str = Field(description="Seed URL for the crawl")
    owner: str | None = Field(default=None, description="Owning user id")
    project_id: str | None = Field(default=None, description="Optional project or workspace id")
    include_patterns: list[str] = Field(default_factory=list, description="URL must match one of these")
    exclude_patterns: list[str] = Field(default_factory=list, description="URL must match none of these")
    domain_restriction: DomainRestriction = Field(default=DomainRestriction.SAME)
    content_types: list[str] = Field(default_factory=lambda: ["text/html"])
    max_pages: int = Field(default=100, ge=1)
    max_depth: int = Field(default=3, ge=0)
    request_delay_ms: int = Field(default=1000, ge=0)
    max_concurrent: int = Field(default=1, ge=1)
    auth_type: AuthType = Field(default=AuthType.NONE)
    auth_credentials: str | None = Field(default=None)
    custom_headers: str | None = Field(default=None, description="JSON object of extra request headers")
    schedule_enabled: bool = Field(default=False)
    schedule_frequency: ScheduleFrequency | None = Field(default=None)
    schedule_hour: int | None = Field(default=None, ge=0, le=23)
    schedule_day_of_week: int | None = Field(default=None, ge=0, le=6)
    schedule_day_of_month: int | None = Field(default=None, ge=1, le=31)

    @field_validator("start_url")
    @classmethod
    def _validate_start_url(cls, value: str) -> str:
        value = value.strip()
        parts = urlsplit(value)
        if parts.scheme not in {"http", "https"} or not parts.hostname:
            raise ValueError(f"Invalid start URL: {value!r}")
        return value

    @field_validator("custom_headers")
    @classmethod
    def _validate_custom_headers(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError(f"custom_headers is not valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValueError("custom_headers must be a JSON object")
        return value

    @model_validator(mode="after")
    def _check_schedule(self) -> JobConfig:
        if self.schedule_enabled and self.schedule_frequency is None:
            raise ValueError("schedule_frequency is required when schedule_enabled is true")
        if not self.content_types:
            self.content_types = ["text/html"]
        return self

    def parsed_custom_headers(self) -> dict[str, str]:
        if not self.custom_headers:
            return {}
        return {str(key): str(value) for key, value in json.loads(self.custom_headers).items()}


@dataclass(slots=True)
class CrawlJob:
    """Aggregate root: configuration plus live counters and status."""

    id: str
    config: JobConfig
    status: JobStatus = JobStatus.IDLE
    pages_discovered: int = 0
    pages_crawled: int = 0
    pages_successful: int = 0
    pages_failed: int = 0
    pages_skipped: int = 0
    total_words: int = 0
    total_links: int = 0
    error_count: int = 0
    last_error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    paused_at: datetime | None = None
    completed_at: datetime | None = None
    last_activity_at: datetime | None = None
    next_scheduled_run: datetime | None = None

    def can_transition_to(self, new_status: JobStatus) -> bool:
        return new_status in _ALLOWED_TRANSITIONS[self.status]

    def check_transition(self, new_status: JobStatus, operation: str) -> None:
        """Raise ``InvalidJobTransitionError`` unless ``operation`` may move the job to ``new_status``."""
        if not self.can_transition_to(new_status):
            raise InvalidJobTransitionError(
                f"Cannot {operation} job {self.id}: job is {self.status.value}"
            )

    @property
    def counters_consistent(self) -> bool:
        return self.pages_crawled == self.pages_successful + self.pages_failed + self.pages_skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "config": self.config.model_dump(mode="json"),
            "status": self.status.value,
            "pages_discovered": self.pages_discovered,
            "pages_crawled": self.pages_crawled,
            "pages_successful": self.pages_successful,
            "pages_failed": self.pages_failed,
            "pages_skipped": self.pages_skipped,
            "total_words": self.total_words,
            "total_links": self.total_links,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "started_at": to_iso(self.started_at),
            "paused_at": to_iso(self.paused_at),
            "completed_at": to_iso(self.completed_at),
            "last_activity_at": to_iso(self.last_activity_at),
            "next_scheduled_run": to_iso(self.next_scheduled_run),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> CrawlJob:
        return cls(
            id=row["id"],
            config=JobConfig.model_validate_json(row["config"]),
            status=JobStatus(row["status"]),
            pages_discovered=int(row["pages_discovered"]),
            pages_crawled=int(row["pages_crawled"]),
            pages_successful=int(row["pages_successful"]),
            pages_failed=int(row["pages_failed"]),
            pages_skipped=int(row["pages_skipped"]),
            total_words=int(row["total_words"]),
            total_links=int(row["total_links"]),
            error_count=int(row["error_count"]),
            last_error=row["last_error"],
            created_at=parse_iso(row["created_at"]) or utcnow(),
            updated_at=parse_iso(row["updated_at"]) or utcnow(),
            started_at=parse_iso(row["started_at"]),
            paused_at=parse_iso(row["paused_at"]),
            completed_at=parse_iso(row["completed_at"]),
            last_activity_at=parse_iso(row["last_activity_at"]),
            next_scheduled_run=parse_iso(row["next_scheduled_run"]),
        )


@dataclass(slots=True)
class QueueItem:
    """One discovered URL in a job's work queue."""

    id: int
    job_id: str
    url: str
    normalized_url: str
    depth: int
    priority: int
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    discovered_from: str | None = None
    next_retry_at: datetime | None = None
    last_error: str | None = None
    skip_reason: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    last_attempt_at: datetime | None = None
    processed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "url": self.url,
            "normalized_url": self.normalized_url,
            "depth": self.depth,
            "priority": self.priority,
            "status": self.status.value,
            "attempts": self.attempts,
            "discovered_from": self.discovered_from,
            "next_retry_at": to_iso(self.next_retry_at),
            "last_error": self.last_error,
            "skip_reason": self.skip_reason,
            "created_at": to_iso(self.created_at),
            "last_attempt_at": to_iso(self.last_attempt_at),
            "processed_at": to_iso(self.processed_at),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> QueueItem:
        return cls(
            id=int(row["id"]),
            job_id=row["job_id"],
            url=row["url"],
            normalized_url=row["normalized_url"],
            depth=int(row["depth"]),
            priority=int(row["priority"]),
            status=QueueStatus(row["status"]),
            attempts=int(row["attempts"]),
            discovered_from=row["discovered_from"],
            next_retry_at=parse_iso(row["next_retry_at"]),
            last_error=row["last_error"],
            skip_reason=row["skip_reason"],
            created_at=parse_iso(row["created_at"]) or utcnow(),
            last_attempt_at=parse_iso(row["last_attempt_at"]),
            processed_at=parse_iso(row["processed_at"]),
        )


@dataclass(slots=True, frozen=True)
class CrawlPage:
    """Immutable result of one successful fetch."""

    job_id: str
    queue_item_id: int | None
    url: str
    final_url: str
    status_code: int
    content_type: str
    title: str
    markdown: str
    content_hash: str
    raw_html_size: int = 0
    content_length: int | None = None
    description: str | None = None
    author: str | None = None
    published_date: str | None = None
    word_count: int = 0
    link_count: int = 0
    image_count: int = 0
    code_block_count: int = 0
    table_count: int = 0
    outgoing_links: tuple[str, ...] = ()
    structured_data: Any = None
    crawled_at: datetime = field(default_factory=utcnow)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "queue_item_id": self.queue_item_id,
            "url": self.url,
            "final_url": self.final_url,
            "status_code": self.status_code,
            "content_type": self.content_type,
            "content_length": self.content_length,
            "title": self.title,
            "description": self.description,
            "author": self.author,
            "published_date": self.published_date,
            "markdown": self.markdown,
            "raw_html_size": self.raw_html_size,
            "word_count": self.word_count,
            "link_count": self.link_count,
            "image_count": self.image_count,
            "code_block_count": self.code_block_count,
            "table_count": self.table_count,
            "outgoing_links": list(self.outgoing_links),
            "structured_data": self.structured_data,
            "content_hash": self.content_hash,
            "crawled_at": to_iso(self.crawled_at),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> CrawlPage:
        structured = row["structured_data"]
        return cls(
            id=int(row["id"]),
            job_id=row["job_id"],
            queue_item_id=row["queue_item_id"],
            url=row["url"],
            final_url=row["final_url"],
            status_code=int(row["status_code"]),
            content_type=row["content_type"],
            content_length=row["content_length"],
            title=row["title"],
            description=row["description"],
            author=row["author"],
            published_date=row["published_date"],
            markdown=row["markdown"],
            raw_html_size=int(row["raw_html_size"]),
            word_count=int(row["word_count"]),
            link_count=int(row["link_count"]),
            image_count=int(row["image_count"]),
            code_block_count=int(row["code_block_count"]),
            table_count=int(row["table_count"]),
            outgoing_links=tuple(json.loads(row["outgoing_links"] or "[]")),
            structured_data=json.loads(structured) if structured else None,
            content_hash=row["content_hash"],
            crawled_at=parse_iso(row["crawled_at"]) or utcnow(),
        )


@dataclass(slots=True, frozen=True)
class RobotsRules:
    """Rules from robots.txt that apply to our user agent."""

    allowed_paths: tuple[str, ...] = ()
    disallowed_paths: tuple[str, ...] = ()
    sitemaps: tuple[str, ...] = ()
    crawl_delay_ms: int | None = None

    @property
    def is_unrestricted(self) -> bool:
        return not self.disallowed_paths

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed_paths": list(self.allowed_paths),
            "disallowed_paths": list(self.disallowed_paths),
            "sitemaps": list(self.sitemaps),
            "crawl_delay_ms": self.crawl_delay_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RobotsRules:
        delay = data.get("crawl_delay_ms")
        return cls(
            allowed_paths=tuple(data.get("allowed_paths", [])),
            disallowed_paths=tuple(data.get("disallowed_paths", [])),
            sitemaps=tuple(data.get("sitemaps", [])),
            crawl_delay_ms=int(delay) if delay is not None else None,
        )


@dataclass(slots=True, frozen=True)
class RunHistory:
    """Snapshot written once when a job reaches a terminal state."""

    job_id: str
    run_number: int
    status: JobStatus
    pages_discovered: int
    pages_crawled: int
    pages_successful: int
    pages_failed: int
    pages_skipped: int
    pages_new: int
    pages_changed: int
    total_words: int
    total_links: int
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "run_number": self.run_number,
            "status": self.status.value,
            "pages_discovered": self.pages_discovered,
            "pages_crawled": self.pages_crawled,
            "pages_successful": self.pages_successful,
            "pages_failed": self.pages_failed,
            "pages_skipped": self.pages_skipped,
            "pages_new": self.pages_new,
            "pages_changed": self.pages_changed,
            "total_words": self.total_words,
            "total_links": self.total_links,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> RunHistory:
        return cls(
            id=int(row["id"]),
            job_id=row["job_id"],
            run_number=int(row["run_number"]),
            status=JobStatus(row["status"]),
            pages_discovered=int(row["pages_discovered"]),
            pages_crawled=int(row["pages_crawled"]),
            pages_successful=int(row["pages_successful"]),
            pages_failed=int(row["pages_failed"]),
            pages_skipped=int(row["pages_skipped"]),
            pages_new=int(row["pages_new"]),
            pages_changed=int(row["pages_changed"]),
            total_words=int(row["total_words"]),
            total_links=int(row["total_links"]),
            started_at=parse_iso(row["started_at"]) or utcnow(),
            completed_at=parse_iso(row["completed_at"]) or utcnow(),
            duration_ms=int(row["duration_ms"]),
        )


@dataclass(slots=True, frozen=True)
class SitemapUrl:
    loc: str
    lastmod: str | None = None
    priority: float | None = None
    changefreq: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "loc": self.loc,
            "lastmod": self.lastmod,
            "priority": self.priority,
            "changefreq": self.changefreq,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SitemapUrl:
        priority = data.get("priority")
        return cls(
            loc=data["loc"],
            lastmod=data.get("lastmod"),
            priority=float(priority) if priority is not None else None,
            changefreq=data.get("changefreq"),
        )


@dataclass(slots=True, frozen=True)
class JobStatusView:
    """Read model returned by ``get_job_status``."""

    status: JobStatus
    pages_discovered: int
    pages_crawled: int
    pages_successful: int
    pages_failed: int
    pages_skipped: int
    queue_pending: int
    queue_processing: int
    total_words: int
    total_links: int
    speed: int
    last_error: str | None
    error_count: int
    started_at: datetime | None
    last_activity_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "pages_discovered": self.pages_discovered,
            "pages_crawled": self.pages_crawled,
            "pages_successful": self.pages_successful,
            "pages_failed": self.pages_failed,
            "pages_skipped": self.pages_skipped,
            "queue_pending": self.queue_pending,
            "queue_processing": self.queue_processing,
            "total_words": self.total_words,
            "total_links": self.total_links,
            "speed": self.speed,
            "last_error": self.last_error,
            "error_count": self.error_count,
            "started_at": to_iso(self.started_at),
            "last_activity_at": to_iso(self.last_activity_at),
        }
