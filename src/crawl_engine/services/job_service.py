"""Operator-facing crawl job API.

``CrawlJobService`` owns the shared HTTP client, the crawl store, the robots
cache, the per-job crawl loops and the recurring-run scheduler. Every
lifecycle operation validates the requested transition against the job's
current status before touching storage.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import timedelta
import logging
from typing import Any
import uuid

import httpx
from pydantic import ValidationError

from crawl_engine.config import Settings
from crawl_engine.domain.model import (
    CrawlJob,
    CrawlPage,
    InvalidJobConfigError,
    InvalidJobTransitionError,
    JobConfig,
    JobNotFoundError,
    JobStatus,
    JobStatusView,
    QueueItem,
    QueueStatus,
    RunHistory,
    utcnow,
)
from crawl_engine.observability.metrics import JOB_TRANSITIONS
from crawl_engine.services.orchestrator import CrawlOrchestrator
from crawl_engine.services.schedule_service import CrawlScheduleService, compute_next_run
from crawl_engine.utils.crawl_store import CrawlStore, LinkCandidate
from crawl_engine.utils.fetcher import PageFetcher
from crawl_engine.utils.robots import RobotsCache
from crawl_engine.utils.sitemap import SitemapFetcher
from crawl_engine.utils.url_rules import calculate_priority, clamp_priority, normalize_url


logger = logging.getLogger(__name__)

SEED_PRIORITY = 100
_CANCELLABLE = (JobStatus.IDLE, JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.PAUSED)
_LOCKED_FOR_EDIT = (JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.PAUSED)


class CrawlJobService:
    """Create, drive and inspect crawl jobs."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: CrawlStore | None = None,
        client: httpx.AsyncClient | None = None,
        idle_poll_seconds: float = 1.0,
    ) -> None:
        """Wire the crawl components together.

        Args:
            settings: Settings instance; loaded from the environment when omitted
            store: Crawl store; opened at ``settings.crawl_db_path`` when omitted
            client: Shared HTTP client; the service creates and closes its own when omitted
            idle_poll_seconds: How long a job waits when only retry-delayed items remain
        """
        self.settings = settings or Settings()
        self.store = store or CrawlStore(self.settings.crawl_db_path)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.settings.http_timeout)

        user_agent = self.settings.crawler_user_agent
        self.robots = RobotsCache(
            self.store,
            self._client,
            user_agent=user_agent,
            ttl=timedelta(hours=self.settings.robots_cache_ttl_hours),
        )
        self.fetcher = PageFetcher(self._client, user_agent=user_agent)
        self.sitemaps = SitemapFetcher(self._client, user_agent=user_agent)
        self.orchestrator = CrawlOrchestrator(
            self.store,
            self.fetcher,
            self.robots,
            max_fetch_attempts=self.settings.max_fetch_attempts,
            retry_backoff_base=self.settings.retry_backoff_base_seconds,
            idle_poll_seconds=idle_poll_seconds,
        )
        self.scheduler = CrawlScheduleService(
            self.store,
            self.start_job,
            poll_seconds=self.settings.scheduler_poll_seconds,
            enabled=self.settings.scheduler_enabled,
        )

    async def __aenter__(self) -> CrawlJobService:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def initialize(self) -> None:
        """Restart loops for jobs left active by a previous process and start the scheduler."""
        for job_id in await self.store.list_active_job_ids():
            logger.info("Resuming crawl loop for job %s", job_id)
            self.orchestrator.ensure_running(job_id)
        await self.scheduler.initialize()

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.orchestrator.stop_all()
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _build_config(self, data: Mapping[str, Any]) -> JobConfig:
        unknown = set(data) - set(JobConfig.model_fields)
        if unknown:
            raise InvalidJobConfigError(f"Unknown job configuration field(s): {', '.join(sorted(unknown))}")
        merged = {**self.settings.get_default_job_limits(), **{k: v for k, v in data.items() if v is not None}}
        try:
            return JobConfig.model_validate(merged)
        except ValidationError as exc:
            raise InvalidJobConfigError(str(exc)) from exc

    async def create_job(self, config: JobConfig | Mapping[str, Any]) -> str:
        """Validate the configuration and store a new idle job.

        Omitted tunables take the defaults from settings.
        """
        job_config = config if isinstance(config, JobConfig) else self._build_config(config)
        job = CrawlJob(
            id=uuid.uuid4().hex,
            config=job_config,
            next_scheduled_run=compute_next_run(job_config),
        )
        await self.store.create_job(job)
        logger.info("Created crawl job %s for %s", job.id, job_config.start_url)
        return job.id

    async def get_job(self, job_id: str) -> CrawlJob:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Crawl job {job_id} not found")
        return job

    async def list_jobs(self, status: JobStatus | str | None = None, limit: int = 50) -> list[CrawlJob]:
        return await self.store.list_jobs(status=JobStatus(status) if status else None, limit=limit)

    async def update_job(self, job_id: str, **changes: Any) -> CrawlJob:
        """Apply configuration changes to a job that is not queued, running or paused."""
        job = await self.get_job(job_id)
        if job.status in _LOCKED_FOR_EDIT:
            raise InvalidJobTransitionError(f"Cannot update job {job_id}: job is {job.status.value}")

        unknown = set(changes) - set(JobConfig.model_fields)
        if unknown:
            raise InvalidJobConfigError(f"Unknown job configuration field(s): {', '.join(sorted(unknown))}")
        try:
            config = JobConfig.model_validate({**job.config.model_dump(), **changes})
        except ValidationError as exc:
            raise InvalidJobConfigError(str(exc)) from exc

        if not await self.store.update_job_config(job_id, config, next_scheduled_run=compute_next_run(config)):
            current = await self.get_job(job_id)
            raise InvalidJobTransitionError(f"Cannot update job {job_id}: job is {current.status.value}")
        self.orchestrator.reset_job(job_id)
        return await self.get_job(job_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _raise_lost_race(self, job_id: str, operation: str) -> None:
        current = await self.get_job(job_id)
        raise InvalidJobTransitionError(f"Cannot {operation} job {job_id}: job is {current.status.value}")

    async def start_job(self, job_id: str) -> CrawlJob:
        """Reset counters, clear the queue, seed the start URL and launch the crawl loop."""
        job = await self.get_job(job_id)
        job.check_transition(JobStatus.QUEUED, "start")

        # A queued or paused job may still own a loop from the previous start.
        await self.orchestrator.stop_job(job_id)
        self.orchestrator.reset_job(job_id)

        start_url = job.config.start_url
        if not await self.store.reset_and_seed(job_id, start_url, normalize_url(start_url), priority=SEED_PRIORITY):
            await self._raise_lost_race(job_id, "start")
        JOB_TRANSITIONS.labels(status=JobStatus.QUEUED.value).inc()
        logger.info("Started crawl job %s at %s", job_id, start_url)

        self.orchestrator.ensure_running(job_id)
        return await self.get_job(job_id)

    async def pause_job(self, job_id: str) -> CrawlJob:
        job = await self.get_job(job_id)
        job.check_transition(JobStatus.PAUSED, "pause")
        if not await self.store.pause_job(job_id):
            await self._raise_lost_race(job_id, "pause")
        JOB_TRANSITIONS.labels(status=JobStatus.PAUSED.value).inc()
        # The loop notices on its next tick; an in-flight fetch is left to finish.
        self.orchestrator.wake(job_id)
        logger.info("Paused crawl job %s", job_id)
        return await self.get_job(job_id)

    async def resume_job(self, job_id: str) -> CrawlJob:
        job = await self.get_job(job_id)
        if job.status is not JobStatus.PAUSED:
            raise InvalidJobTransitionError(f"Cannot resume job {job_id}: job is {job.status.value}")
        if not await self.store.resume_job(job_id):
            await self._raise_lost_race(job_id, "resume")
        JOB_TRANSITIONS.labels(status=JobStatus.QUEUED.value).inc()
        self.orchestrator.ensure_running(job_id)
        logger.info("Resumed crawl job %s", job_id)
        return await self.get_job(job_id)

    async def cancel_job(self, job_id: str) -> CrawlJob:
        job = await self.get_job(job_id)
        job.check_transition(JobStatus.CANCELLED, "cancel")
        await self.store.finish_job(job_id, JobStatus.CANCELLED, expected=_CANCELLABLE)
        current = await self.get_job(job_id)
        if current.status is not JobStatus.CANCELLED:
            raise InvalidJobTransitionError(f"Cannot cancel job {job_id}: job is {current.status.value}")
        JOB_TRANSITIONS.labels(status=JobStatus.CANCELLED.value).inc()
        self.orchestrator.wake(job_id)
        logger.info("Cancelled crawl job %s", job_id)
        return current

    async def delete_job(self, job_id: str) -> None:
        """Delete the job with its queue, pages, history, sitemap cache and events."""
        await self.get_job(job_id)
        await self.orchestrator.stop_job(job_id)
        await self.store.delete_job(job_id)
        logger.info("Deleted crawl job %s", job_id)

    async def wait_for_job(self, job_id: str, timeout: float | None = None) -> CrawlJob:
        """Block until the job's crawl loop exits, then return the job.

        Raises ``asyncio.TimeoutError`` when ``timeout`` elapses first.
        """
        await self.orchestrator.wait(job_id, timeout=timeout)
        return await self.get_job(job_id)

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def get_job_status(self, job_id: str) -> JobStatusView:
        job = await self.get_job(job_id)
        counts = await self.store.queue_counts(job_id)

        speed = 0
        if job.status is JobStatus.RUNNING and job.started_at is not None:
            elapsed_minutes = (utcnow() - job.started_at).total_seconds() / 60
            if elapsed_minutes > 0:
                speed = round(job.pages_crawled / elapsed_minutes)

        return JobStatusView(
            status=job.status,
            pages_discovered=job.pages_discovered,
            pages_crawled=job.pages_crawled,
            pages_successful=job.pages_successful,
            pages_failed=job.pages_failed,
            pages_skipped=job.pages_skipped,
            queue_pending=counts[QueueStatus.PENDING],
            queue_processing=counts[QueueStatus.PROCESSING],
            total_words=job.total_words,
            total_links=job.total_links,
            speed=speed,
            last_error=job.last_error,
            error_count=job.error_count,
            started_at=job.started_at,
            last_activity_at=job.last_activity_at,
        )

    async def get_job_pages(self, job_id: str, limit: int = 50, offset: int = 0) -> list[CrawlPage]:
        await self.get_job(job_id)
        return await self.store.list_pages(job_id, limit=limit, offset=offset)

    async def get_job_queue(
        self,
        job_id: str,
        status: QueueStatus | str | None = None,
        limit: int = 100,
    ) -> list[QueueItem]:
        await self.get_job(job_id)
        return await self.store.list_queue(job_id, status=QueueStatus(status) if status else None, limit=limit)

    async def get_job_history(self, job_id: str) -> list[RunHistory]:
        await self.get_job(job_id)
        return await self.store.list_history(job_id)

    async def get_job_events(self, job_id: str, limit: int = 100) -> list[dict[str, Any]]:
        await self.get_job(job_id)
        return await self.store.list_events(job_id, limit=limit)

    async def update_priority(self, queue_item_id: int, priority: int) -> QueueItem:
        """Re-prioritise a pending queue item; the value is clamped to 0..100."""
        return await self.store.update_priority(queue_item_id, clamp_priority(priority))

    # ------------------------------------------------------------------
    # Sitemaps
    # ------------------------------------------------------------------

    async def import_sitemap(self, job_id: str) -> int:
        """Discover the start site's sitemap and enqueue its pages at depth 1.

        Returns the number of URLs added. Entries go through the job's URL
        rules, the dedup key and the discovery budget like crawled links do.
        A later ``start_job`` clears them along with the rest of the queue.
        """
        job = await self.get_job(job_id)
        start_url = job.config.start_url
        robots_rules = await self.robots.get_rules(start_url)
        discovery = await self.sitemaps.discover(start_url, robots_rules.sitemaps)
        if not discovery.found or discovery.sitemap_url is None:
            logger.info("No sitemap found for job %s", job_id)
            return 0

        entries = await self.sitemaps.page_urls(discovery)
        await self.store.save_sitemap_cache(job_id, discovery.sitemap_url, entries)

        classifier = self.orchestrator.classifier_for(job)
        candidates = [
            LinkCandidate(
                url=entry.loc,
                normalized_url=normalize_url(entry.loc),
                priority=calculate_priority(entry.loc, None, 1, entry.priority),
            )
            for entry in entries
            if classifier.classify(entry.loc, 1).allowed
        ]
        added = await self.store.enqueue_links(
            job_id,
            candidates,
            depth=1,
            discovered_from=discovery.sitemap_url,
            max_pages=job.config.max_pages,
        )
        logger.info("Imported %d of %d sitemap URL(s) for job %s", added, len(entries), job_id)
        if added and job.status.is_active:
            self.orchestrator.wake(job_id)
        return added
