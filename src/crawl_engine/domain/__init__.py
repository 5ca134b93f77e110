"""Domain layer - crawl job aggregate and record types, no I/O.

The job state machine and the record types shared by the store, the
orchestrator and the public job service live here.
"""

from crawl_engine.domain.model import (
    AuthType,
    CrawlEngineError,
    CrawlJob,
    CrawlPage,
    DomainRestriction,
    InvalidJobConfigError,
    InvalidJobTransitionError,
    JobConfig,
    JobNotFoundError,
    JobStatus,
    JobStatusView,
    QueueItem,
    QueueItemNotFoundError,
    QueueItemStateError,
    QueueStatus,
    RobotsRules,
    RunHistory,
    ScheduleFrequency,
    SitemapUrl,
)


__all__ = [
    "AuthType",
    "CrawlEngineError",
    "CrawlJob",
    "CrawlPage",
    "DomainRestriction",
    "InvalidJobConfigError",
    "InvalidJobTransitionError",
    "JobConfig",
    "JobNotFoundError",
    "JobStatus",
    "JobStatusView",
    "QueueItem",
    "QueueItemNotFoundError",
    "QueueItemStateError",
    "QueueStatus",
    "RobotsRules",
    "RunHistory",
    "ScheduleFrequency",
    "SitemapUrl",
]
