"""Service layer: crawl job API, per-job crawl loops and recurring runs."""

from .job_service import CrawlJobService
from .orchestrator import CrawlOrchestrator, TickResult, TickState
from .schedule_service import CrawlScheduleService, compute_next_run, schedule_to_cron


__all__ = [
    "CrawlJobService",
    "CrawlOrchestrator",
    "CrawlScheduleService",
    "TickResult",
    "TickState",
    "compute_next_run",
    "schedule_to_cron",
]
