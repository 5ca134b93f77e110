"""Recurring crawl runs driven by per-job cron schedules."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from datetime import datetime, timezone
import logging
from typing import TYPE_CHECKING, Any

from cron_converter import Cron

from crawl_engine.domain.model import CrawlEngineError, JobConfig, ScheduleFrequency


if TYPE_CHECKING:
    from crawl_engine.utils.crawl_store import CrawlStore

logger = logging.getLogger(__name__)


def schedule_to_cron(
    frequency: ScheduleFrequency | str,
    hour: int | None = None,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
) -> str:
    """Build the cron expression for a daily, weekly or monthly schedule.

    Days of week count from 0 = Sunday, as cron does.
    """
    frequency = ScheduleFrequency(frequency)
    run_hour = hour if hour is not None else 0
    if frequency is ScheduleFrequency.DAILY:
        return f"0 {run_hour} * * *"
    if frequency is ScheduleFrequency.WEEKLY:
        return f"0 {run_hour} * * {day_of_week if day_of_week is not None else 0}"
    return f"0 {run_hour} {day_of_month if day_of_month is not None else 1} * *"


def compute_next_run(config: JobConfig, after: datetime | None = None) -> datetime | None:
    """Next scheduled start strictly after ``after``; None when scheduling is off."""
    if not config.schedule_enabled or config.schedule_frequency is None:
        return None
    expression = schedule_to_cron(
        config.schedule_frequency,
        config.schedule_hour,
        config.schedule_day_of_week,
        config.schedule_day_of_month,
    )
    start = after or datetime.now(timezone.utc)
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    next_run = Cron(expression).schedule(start_date=start).next()
    if next_run.tzinfo is None:
        next_run = next_run.replace(tzinfo=timezone.utc)
    return next_run.astimezone(timezone.utc)


class CrawlScheduleService:
    """Poll for due schedule-enabled jobs and start them.

    ``start_job`` is the job service's start operation; it raises
    ``CrawlEngineError`` when a job cannot be started.
    """

    def __init__(
        self,
        store: CrawlStore,
        start_job: Callable[[str], Awaitable[Any]],
        *,
        poll_seconds: float = 60.0,
        enabled: bool = True,
    ) -> None:
        self._store = store
        self._start_job = start_job
        self.poll_seconds = poll_seconds
        self.enabled = enabled

        self._running = False
        self._scheduler_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

        self._total_runs = 0
        self._errors = 0
        self._last_poll_at: datetime | None = None

    @property
    def running(self) -> bool:
        return self._running and self._scheduler_task is not None and not self._scheduler_task.done()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "poll_seconds": self.poll_seconds,
            "total_runs": self._total_runs,
            "errors": self._errors,
            "last_poll_at": self._last_poll_at.isoformat() if self._last_poll_at else None,
        }

    async def initialize(self) -> bool:
        if not self.enabled:
            logger.debug("Crawl scheduler disabled; skipping initialization")
            return False
        if self._scheduler_task and not self._scheduler_task.done():
            return True
        self._stop_event.clear()
        self._running = True
        self._scheduler_task = asyncio.create_task(self._run_scheduler_loop())
        return True

    async def stop(self) -> None:
        self._stop_event.set()
        if self._scheduler_task is not None:
            self._scheduler_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._scheduler_task
            self._scheduler_task = None
        self._running = False

    async def run_due(self, now: datetime | None = None) -> list[str]:
        """Start every due job and store its following run time."""
        moment = now or datetime.now(timezone.utc)
        self._last_poll_at = moment
        started: list[str] = []
        for job in await self._store.list_due_scheduled_jobs(moment):
            try:
                await self._start_job(job.id)
            except CrawlEngineError as exc:
                self._errors += 1
                logger.warning("Scheduled start of job %s failed: %s", job.id, exc)
            else:
                self._total_runs += 1
                started.append(job.id)
                logger.info("Started scheduled run of job %s", job.id)
            await self._store.set_next_scheduled_run(job.id, compute_next_run(job.config, moment))
        return started

    async def _run_scheduler_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_due()
                except Exception:
                    self._errors += 1
                    logger.error("Scheduled run check failed", exc_info=True)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_seconds)
                    break
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
