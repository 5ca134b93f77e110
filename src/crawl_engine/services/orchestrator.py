"""Per-job crawl loop.

Each active job gets one asyncio task that repeats ``tick`` followed by the
job's politeness delay until the job stops being queued or running. A tick
processes at most one queue item and re-reads job status from the store
first, so pause and cancel take effect on the next tick without
interrupting an in-flight fetch.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
import logging

from crawl_engine.domain.model import (
    CrawlJob,
    CrawlPage,
    JobStatus,
    QueueItem,
    QueueStatus,
)
from crawl_engine.observability.context import bind_job, generate_span_id, generate_trace_id, set_trace_context
from crawl_engine.observability.metrics import ACTIVE_JOBS, JOB_TRANSITIONS, PAGES_PROCESSED
from crawl_engine.observability.tracing import job_span
from crawl_engine.utils.crawl_store import CrawlStore, LinkCandidate
from crawl_engine.utils.extractor import ExtractedContent
from crawl_engine.utils.fetcher import FetchError, FetchOutcome, PageFetcher
from crawl_engine.utils.robots import RobotsCache
from crawl_engine.utils.url_rules import UrlClassifier, calculate_priority


logger = logging.getLogger(__name__)

_ACTIVE = (JobStatus.QUEUED, JobStatus.RUNNING)


class TickState(str, Enum):
    PROCESSED = "processed"
    WAITING = "waiting"
    STOPPED = "stopped"


@dataclass(slots=True, frozen=True)
class TickResult:
    state: TickState
    delay_seconds: float = 0.0


_STOP = TickResult(TickState.STOPPED)


class CrawlOrchestrator:
    """Drive queue processing for every active job."""

    def __init__(
        self,
        store: CrawlStore,
        fetcher: PageFetcher,
        robots: RobotsCache,
        *,
        max_fetch_attempts: int = 3,
        retry_backoff_base: float = 2.0,
        idle_poll_seconds: float = 1.0,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._robots = robots
        self._max_fetch_attempts = max_fetch_attempts
        self._retry_backoff_base = retry_backoff_base
        self._idle_poll_seconds = idle_poll_seconds
        self._tasks: dict[str, asyncio.Task] = {}
        self._wake_events: dict[str, asyncio.Event] = {}
        self._classifiers: dict[str, UrlClassifier] = {}

    # ------------------------------------------------------------------
    # Loop management
    # ------------------------------------------------------------------

    @property
    def active_job_ids(self) -> list[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    def classifier_for(self, job: CrawlJob) -> UrlClassifier:
        classifier = self._classifiers.get(job.id)
        if classifier is None:
            classifier = UrlClassifier.from_config(job.config)
            self._classifiers[job.id] = classifier
        return classifier

    def reset_job(self, job_id: str) -> None:
        """Drop compiled rules so the next run picks up the current configuration."""
        self._classifiers.pop(job_id, None)

    def ensure_running(self, job_id: str) -> asyncio.Task:
        """Start the job's loop, or wake it if it is already sleeping."""
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            self.wake(job_id)
            return task
        self._wake_events[job_id] = asyncio.Event()
        task = asyncio.create_task(self._run_job(job_id), name=f"crawl-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda finished: self._on_loop_done(job_id, finished))
        ACTIVE_JOBS.labels(instance="local").set(len(self.active_job_ids))
        return task

    def wake(self, job_id: str) -> None:
        event = self._wake_events.get(job_id)
        if event is not None:
            event.set()

    async def wait(self, job_id: str, timeout: float | None = None) -> None:
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    async def stop_job(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        self._classifiers.pop(job_id, None)

    async def stop_all(self) -> None:
        for job_id in list(self._tasks):
            await self.stop_job(job_id)

    def _on_loop_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            self._tasks.pop(job_id, None)
            self._wake_events.pop(job_id, None)
        ACTIVE_JOBS.labels(instance="local").set(len(self.active_job_ids))
        with suppress(asyncio.CancelledError):
            exc = task.exception()
            if exc is not None:
                logger.error("Crawl loop for job %s ended with an error: %s", job_id, exc)

    async def _sleep(self, job_id: str, seconds: float) -> None:
        event = self._wake_events.get(job_id)
        if event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        event.clear()

    async def _run_job(self, job_id: str) -> None:
        set_trace_context(generate_trace_id(), generate_span_id())
        bind_job(job_id)
        requeued = await self._store.requeue_processing(job_id)
        if requeued:
            logger.info("Requeued %d interrupted item(s) for job %s", requeued, job_id)
        logger.info("Crawl loop started for job %s", job_id)

        try:
            while True:
                with job_span(job_id, "crawl.tick"):
                    result = await self.tick(job_id)
                if result.state is TickState.STOPPED:
                    break
                await self._sleep(job_id, result.delay_seconds)
        except asyncio.CancelledError:
            logger.info("Crawl loop for job %s cancelled", job_id)
            raise
        except Exception as exc:
            logger.exception("Crawl loop for job %s failed", job_id)
            await self._fail_job(job_id, f"{exc.__class__.__name__}: {exc}")
        logger.info("Crawl loop finished for job %s", job_id)

    async def _fail_job(self, job_id: str, error: str) -> None:
        history = await self._store.finish_job(job_id, JobStatus.FAILED, expected=_ACTIVE, error=error)
        JOB_TRANSITIONS.labels(status=JobStatus.FAILED.value).inc()
        if history is not None:
            logger.warning("Job %s failed after %d page(s): %s", job_id, history.pages_crawled, error)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self, job_id: str) -> TickResult:
        """Process at most one queue item for the job."""
        job = await self._store.get_job(job_id)
        if job is None or not job.status.is_active:
            return _STOP

        if job.status is JobStatus.QUEUED and await self._store.mark_running(job_id):
            JOB_TRANSITIONS.labels(status=JobStatus.RUNNING.value).inc()

        if job.pages_crawled >= job.config.max_pages:
            await self._complete(job, "page budget reached")
            return _STOP

        item = await self._store.pop_next_pending(job_id)
        if item is None:
            counts = await self._store.queue_counts(job_id)
            if counts[QueueStatus.PENDING] == 0:
                await self._complete(job, "queue drained")
                return _STOP
            # Pending items exist but are all waiting for their retry time.
            return TickResult(TickState.WAITING, self._idle_poll_seconds)

        await self._process_item(job, item)
        return TickResult(TickState.PROCESSED, job.config.request_delay_ms / 1000)

    async def _complete(self, job: CrawlJob, reason: str) -> None:
        history = await self._store.finish_job(job.id, JobStatus.COMPLETED, expected=_ACTIVE)
        if history is None:
            return
        JOB_TRANSITIONS.labels(status=JobStatus.COMPLETED.value).inc()
        logger.info(
            "Job %s completed (%s): run %d crawled %d page(s) in %d ms",
            job.id,
            reason,
            history.run_number,
            history.pages_crawled,
            history.duration_ms,
        )

    async def _process_item(self, job: CrawlJob, item: QueueItem) -> None:
        classifier = self.classifier_for(job)
        robots_rules = await self._robots.get_rules(item.url)
        verdict = classifier.classify(item.url, item.depth, robots_rules)
        if not verdict.allowed:
            await self._store.skip_item(item, verdict.reason or "Not allowed")
            PAGES_PROCESSED.labels(status="skipped").inc()
            logger.debug("Skipped %s: %s", item.url, verdict.reason)
            return

        try:
            outcome = await self._fetcher.fetch(item.url, job.config)
        except FetchError as exc:
            updated = await self._store.fail_item(
                item,
                str(exc),
                max_attempts=self._max_fetch_attempts,
                backoff_base=self._retry_backoff_base,
            )
            if updated.status is QueueStatus.FAILED:
                PAGES_PROCESSED.labels(status="failed").inc()
                logger.warning("Giving up on %s after %d attempt(s): %s", item.url, updated.attempts, exc)
            else:
                PAGES_PROCESSED.labels(status="retry").inc()
                logger.info("Fetch of %s failed (%s); retry at %s", item.url, exc, updated.next_retry_at)
            return

        if outcome.skipped or outcome.content is None:
            await self._store.skip_item(item, outcome.skipped_reason or "No content")
            PAGES_PROCESSED.labels(status="skipped").inc()
            return

        content = outcome.content
        await self._store.save_page(item, _build_page(job.id, item, outcome, content), duration_ms=outcome.elapsed_ms)
        PAGES_PROCESSED.labels(status="success").inc()

        if item.depth < job.config.max_depth:
            added = await self._enqueue_links(job, item, content, classifier)
            if added:
                logger.debug("Queued %d new link(s) from %s", added, item.url)

    async def _enqueue_links(
        self,
        job: CrawlJob,
        item: QueueItem,
        content: ExtractedContent,
        classifier: UrlClassifier,
    ) -> int:
        depth = item.depth + 1
        candidates = [
            LinkCandidate(
                url=link.url,
                normalized_url=link.normalized_url,
                priority=calculate_priority(link.url, link.anchor_text, depth),
            )
            for link in content.links
            if classifier.classify(link.url, depth).allowed
        ]
        if not candidates:
            return 0
        return await self._store.enqueue_links(
            job.id,
            candidates,
            depth=depth,
            discovered_from=item.url,
            max_pages=job.config.max_pages,
        )


def _build_page(job_id: str, item: QueueItem, outcome: FetchOutcome, content: ExtractedContent) -> CrawlPage:
    return CrawlPage(
        job_id=job_id,
        queue_item_id=item.id,
        url=item.url,
        final_url=outcome.final_url,
        status_code=outcome.status_code,
        content_type=outcome.content_type,
        content_length=outcome.content_length,
        raw_html_size=outcome.raw_html_size,
        title=content.title,
        description=content.description,
        author=content.author,
        published_date=content.published_date,
        markdown=content.markdown,
        content_hash=content.content_hash,
        word_count=content.word_count,
        link_count=len(content.links),
        image_count=len(content.images),
        code_block_count=len(content.code_blocks),
        table_count=len(content.tables),
        outgoing_links=content.outgoing_links,
        structured_data=content.structured_data,
    )
