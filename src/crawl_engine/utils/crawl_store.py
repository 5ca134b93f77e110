"""SQLite-backed store for crawl jobs, their queue, pages, caches and run history."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import json
import logging
from pathlib import Path
import sqlite3
import time
from typing import Any

from crawl_engine.domain.model import (
    CrawlJob,
    CrawlPage,
    JobConfig,
    JobStatus,
    QueueItem,
    QueueItemNotFoundError,
    QueueItemStateError,
    QueueStatus,
    RobotsRules,
    RunHistory,
    SitemapUrl,
    parse_iso,
    to_iso,
    utcnow,
)
from crawl_engine.utils.robots import RobotsCacheEntry
from crawl_engine.utils.sqlite_pragmas import apply_read_pragmas, apply_write_pragmas


logger = logging.getLogger(__name__)


class DatabaseCriticalError(RuntimeError):
    """Unrecoverable database error requiring process restart.

    When raised, the calling application should exit so its supervisor can
    restart it. Transient filesystem issues are retried before this is raised.
    """


# Maximum retries for self-healing connection attempts
_MAX_CONNECT_RETRIES = 3
_RETRY_DELAY_SECONDS = 0.5

_ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)
_EDITABLE_EXCLUDED = (JobStatus.QUEUED.value, JobStatus.RUNNING.value, JobStatus.PAUSED.value)
_SCHEDULABLE_STATUSES = (
    JobStatus.IDLE.value,
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
)


@dataclass(slots=True, frozen=True)
class LinkCandidate:
    """A discovered link ready to be enqueued."""

    url: str
    normalized_url: str
    priority: int


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class CrawlStore:
    """Persist jobs, queue items, pages, robots/sitemap caches, history and events."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_root = self.db_path.parent
        self.db_root.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    def _connect(self, *, read_only: bool = False) -> sqlite3.Connection:
        """Connect to SQLite with self-healing retry logic.

        Ensures the parent directory exists, retries with exponential backoff
        and raises ``DatabaseCriticalError`` once retries are exhausted.
        """
        last_error: sqlite3.Error | None = None

        for attempt in range(_MAX_CONNECT_RETRIES):
            try:
                self.db_root.mkdir(parents=True, exist_ok=True)

                if read_only:
                    conn = sqlite3.connect(f"file:{self.db_path.as_posix()}?mode=ro", uri=True, check_same_thread=False)
                    apply_read_pragmas(conn)
                else:
                    conn = sqlite3.connect(self.db_path, check_same_thread=False)
                    apply_write_pragmas(conn)
                conn.row_factory = sqlite3.Row
                return conn
            except sqlite3.Error as exc:
                last_error = exc
                if attempt < _MAX_CONNECT_RETRIES - 1:
                    delay = _RETRY_DELAY_SECONDS * (2**attempt)
                    logger.warning(
                        "SQLite connect attempt %d/%d failed for %s: %s. Retrying in %.1fs...",
                        attempt + 1,
                        _MAX_CONNECT_RETRIES,
                        self.db_path,
                        exc,
                        delay,
                    )
                    time.sleep(delay)
                else:
                    logger.warning(
                        "SQLite connect attempt %d/%d failed for %s: %s. No retries left.",
                        attempt + 1,
                        _MAX_CONNECT_RETRIES,
                        self.db_path,
                        exc,
                    )

        logger.critical(
            "FATAL: Unable to open database at %s after %d attempts: %s",
            self.db_path,
            _MAX_CONNECT_RETRIES,
            last_error,
        )
        raise DatabaseCriticalError(
            f"Unable to open database at {self.db_path} after {_MAX_CONNECT_RETRIES} attempts: {last_error}"
        )

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect(read_only=True)
        try:
            yield conn
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS crawl_jobs (
                    id TEXT PRIMARY KEY,
                    owner TEXT,
                    project_id TEXT,
                    name TEXT,
                    config TEXT NOT NULL,
                    status TEXT NOT NULL,
                    pages_discovered INTEGER NOT NULL DEFAULT 0,
                    pages_crawled INTEGER NOT NULL DEFAULT 0,
                    pages_successful INTEGER NOT NULL DEFAULT 0,
                    pages_failed INTEGER NOT NULL DEFAULT 0,
                    pages_skipped INTEGER NOT NULL DEFAULT 0,
                    total_words INTEGER NOT NULL DEFAULT 0,
                    total_links INTEGER NOT NULL DEFAULT 0,
                    error_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    started_at TEXT,
                    paused_at TEXT,
                    completed_at TEXT,
                    last_activity_at TEXT,
                    next_scheduled_run TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_crawl_jobs_status ON crawl_jobs (status);
                CREATE INDEX IF NOT EXISTS idx_crawl_jobs_schedule ON crawl_jobs (next_scheduled_run);
                CREATE TABLE IF NOT EXISTS crawl_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    normalized_url TEXT NOT NULL,
                    depth INTEGER NOT NULL,
                    priority INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    discovered_from TEXT,
                    next_retry_at TEXT,
                    last_error TEXT,
                    skip_reason TEXT,
                    created_at TEXT NOT NULL,
                    last_attempt_at TEXT,
                    processed_at TEXT,
                    UNIQUE (job_id, normalized_url)
                );
                CREATE INDEX IF NOT EXISTS idx_crawl_queue_pending
                    ON crawl_queue (job_id, status, priority DESC, id ASC);
                CREATE TABLE IF NOT EXISTS crawl_pages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    queue_item_id INTEGER,
                    url TEXT NOT NULL,
                    final_url TEXT NOT NULL,
                    status_code INTEGER NOT NULL,
                    content_type TEXT NOT NULL,
                    content_length INTEGER,
                    title TEXT NOT NULL,
                    description TEXT,
                    author TEXT,
                    published_date TEXT,
                    markdown TEXT NOT NULL,
                    raw_html_size INTEGER NOT NULL DEFAULT 0,
                    word_count INTEGER NOT NULL DEFAULT 0,
                    link_count INTEGER NOT NULL DEFAULT 0,
                    image_count INTEGER NOT NULL DEFAULT 0,
                    code_block_count INTEGER NOT NULL DEFAULT 0,
                    table_count INTEGER NOT NULL DEFAULT 0,
                    outgoing_links TEXT,
                    structured_data TEXT,
                    content_hash TEXT NOT NULL,
                    crawled_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_crawl_pages_job ON crawl_pages (job_id, crawled_at DESC);
                CREATE INDEX IF NOT EXISTS idx_crawl_pages_url ON crawl_pages (job_id, url, id);
                CREATE TABLE IF NOT EXISTS robots_cache (
                    domain TEXT PRIMARY KEY,
                    robots_txt TEXT,
                    rules TEXT NOT NULL,
                    fetched_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS sitemap_cache (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    sitemap_url TEXT NOT NULL,
                    urls TEXT NOT NULL,
                    fetched_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_sitemap_cache_job ON sitemap_cache (job_id, fetched_at DESC);
                CREATE TABLE IF NOT EXISTS crawl_run_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    run_number INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    pages_discovered INTEGER NOT NULL,
                    pages_crawled INTEGER NOT NULL,
                    pages_successful INTEGER NOT NULL,
                    pages_failed INTEGER NOT NULL,
                    pages_skipped INTEGER NOT NULL,
                    pages_new INTEGER NOT NULL,
                    pages_changed INTEGER NOT NULL,
                    total_words INTEGER NOT NULL,
                    total_links INTEGER NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT NOT NULL,
                    duration_ms INTEGER NOT NULL,
                    UNIQUE (job_id, run_number)
                );
                CREATE TABLE IF NOT EXISTS crawl_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_at TEXT NOT NULL,
                    job_id TEXT,
                    url TEXT,
                    event_type TEXT NOT NULL,
                    status TEXT,
                    reason TEXT,
                    detail TEXT,
                    duration_ms INTEGER
                );
                CREATE INDEX IF NOT EXISTS idx_crawl_events_job_time ON crawl_events (job_id, event_at DESC);
                """
            )
            conn.commit()
        finally:
            conn.close()

    def _record_event_sync(
        self,
        conn: sqlite3.Connection,
        *,
        job_id: str | None,
        event_type: str,
        url: str | None = None,
        status: str | None = None,
        reason: str | None = None,
        detail: dict[str, Any] | None = None,
        duration_ms: int | None = None,
    ) -> None:
        payload = json.dumps(detail, sort_keys=True) if detail else None
        # Append-only: retries and repeated transitions stay observable.
        conn.execute(
            """
            INSERT INTO crawl_events (event_at, job_id, url, event_type, status, reason, detail, duration_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (to_iso(utcnow()), job_id, url, event_type, status, reason, payload, duration_ms),
        )

    async def record_event(
        self,
        *,
        job_id: str | None,
        event_type: str,
        url: str | None = None,
        status: str | None = None,
        reason: str | None = None,
        detail: dict[str, Any] | None = None,
        duration_ms: int | None = None,
    ) -> None:
        with self._transaction() as conn:
            self._record_event_sync(
                conn,
                job_id=job_id,
                event_type=event_type,
                url=url,
                status=status,
                reason=reason,
                detail=detail,
                duration_ms=duration_ms,
            )

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @staticmethod
    def _load_job_sync(conn: sqlite3.Connection, job_id: str) -> CrawlJob | None:
        row = conn.execute("SELECT * FROM crawl_jobs WHERE id = ?", (job_id,)).fetchone()
        return CrawlJob.from_row(row) if row else None

    async def create_job(self, job: CrawlJob) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO crawl_jobs (
                    id, owner, project_id, name, config, status, created_at, updated_at, next_scheduled_run
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.config.owner,
                    job.config.project_id,
                    job.config.name,
                    job.config.model_dump_json(),
                    job.status.value,
                    to_iso(job.created_at),
                    to_iso(job.updated_at),
                    to_iso(job.next_scheduled_run),
                ),
            )
            self._record_event_sync(
                conn,
                job_id=job.id,
                url=job.config.start_url,
                event_type="job_created",
                status=job.status.value,
            )

    async def get_job(self, job_id: str) -> CrawlJob | None:
        with self._reader() as conn:
            return self._load_job_sync(conn, job_id)

    async def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[CrawlJob]:
        query = "SELECT * FROM crawl_jobs"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return [CrawlJob.from_row(row) for row in rows]

    async def update_job_config(
        self,
        job_id: str,
        config: JobConfig,
        *,
        next_scheduled_run: datetime | None,
    ) -> bool:
        """Replace the configuration unless the job is queued, running or paused."""
        now = to_iso(utcnow())
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE crawl_jobs
                SET config = ?, name = ?, owner = ?, project_id = ?, next_scheduled_run = ?, updated_at = ?
                WHERE id = ? AND status NOT IN ({_placeholders(_EDITABLE_EXCLUDED)})
                """,
                (
                    config.model_dump_json(),
                    config.name,
                    config.owner,
                    config.project_id,
                    to_iso(next_scheduled_run),
                    now,
                    job_id,
                    *_EDITABLE_EXCLUDED,
                ),
            )
            if cursor.rowcount == 0:
                return False
            self._record_event_sync(conn, job_id=job_id, event_type="job_updated", status="ok")
            return True

    async def set_next_scheduled_run(self, job_id: str, when: datetime | None) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE crawl_jobs SET next_scheduled_run = ?, updated_at = ? WHERE id = ?",
                (to_iso(when), to_iso(utcnow()), job_id),
            )

    async def list_due_scheduled_jobs(self, now: datetime) -> list[CrawlJob]:
        """Jobs whose schedule is due and that are not queued, running or paused."""
        with self._reader() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM crawl_jobs
                WHERE next_scheduled_run IS NOT NULL AND next_scheduled_run <= ?
                  AND status IN ({_placeholders(_SCHEDULABLE_STATUSES)})
                ORDER BY next_scheduled_run ASC
                """,
                (to_iso(now), *_SCHEDULABLE_STATUSES),
            ).fetchall()
        return [CrawlJob.from_row(row) for row in rows]

    async def list_active_job_ids(self) -> list[str]:
        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT id FROM crawl_jobs WHERE status IN ({_placeholders(_ACTIVE_STATUSES)})",
                _ACTIVE_STATUSES,
            ).fetchall()
        return [row["id"] for row in rows]

    async def reset_and_seed(self, job_id: str, seed_url: str, normalized_url: str, *, priority: int = 100) -> bool:
        """Reset counters, clear the queue and enqueue the seed URL at depth 0.

        Pages from earlier runs are kept for change history. Returns False when
        the job is running.
        """
        now = to_iso(utcnow())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE crawl_jobs
                SET status = ?, pages_discovered = 1, pages_crawled = 0, pages_successful = 0,
                    pages_failed = 0, pages_skipped = 0, total_words = 0, total_links = 0,
                    error_count = 0, last_error = NULL, started_at = ?, paused_at = NULL,
                    completed_at = NULL, last_activity_at = ?, updated_at = ?
                WHERE id = ? AND status != ?
                """,
                (JobStatus.QUEUED.value, now, now, now, job_id, JobStatus.RUNNING.value),
            )
            if cursor.rowcount == 0:
                return False
            conn.execute("DELETE FROM crawl_queue WHERE job_id = ?", (job_id,))
            conn.execute(
                """
                INSERT INTO crawl_queue (job_id, url, normalized_url, depth, priority, status, attempts, created_at)
                VALUES (?, ?, ?, 0, ?, ?, 0, ?)
                """,
                (job_id, seed_url, normalized_url, priority, QueueStatus.PENDING.value, now),
            )
            self._record_event_sync(
                conn,
                job_id=job_id,
                url=seed_url,
                event_type="job_started",
                status=JobStatus.QUEUED.value,
            )
            return True

    async def mark_running(self, job_id: str) -> bool:
        """Flip a queued job to running; no-op for any other status."""
        now = to_iso(utcnow())
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE crawl_jobs SET status = ?, last_activity_at = ?, updated_at = ? WHERE id = ? AND status = ?",
                (JobStatus.RUNNING.value, now, now, job_id, JobStatus.QUEUED.value),
            )
            if cursor.rowcount == 0:
                return False
            self._record_event_sync(conn, job_id=job_id, event_type="job_running", status=JobStatus.RUNNING.value)
            return True

    async def pause_job(self, job_id: str) -> bool:
        now = to_iso(utcnow())
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE crawl_jobs SET status = ?, paused_at = ?, updated_at = ?
                WHERE id = ? AND status IN ({_placeholders(_ACTIVE_STATUSES)})
                """,
                (JobStatus.PAUSED.value, now, now, job_id, *_ACTIVE_STATUSES),
            )
            if cursor.rowcount == 0:
                return False
            self._record_event_sync(conn, job_id=job_id, event_type="job_paused", status=JobStatus.PAUSED.value)
            return True

    async def resume_job(self, job_id: str) -> bool:
        now = to_iso(utcnow())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE crawl_jobs SET status = ?, paused_at = NULL, last_activity_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (JobStatus.QUEUED.value, now, now, job_id, JobStatus.PAUSED.value),
            )
            if cursor.rowcount == 0:
                return False
            self._record_event_sync(conn, job_id=job_id, event_type="job_resumed", status=JobStatus.QUEUED.value)
            return True

    async def finish_job(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected: Iterable[JobStatus],
        error: str | None = None,
        now: datetime | None = None,
    ) -> RunHistory | None:
        """Move a job to a terminal status and snapshot its run.

        The update only applies while the job is in one of ``expected``;
        returns None when another writer got there first. No history row is
        written for a job that never started.
        """
        moment = now or utcnow()
        expected_values = tuple(item.value for item in expected)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE crawl_jobs
                SET status = ?, completed_at = ?, updated_at = ?, last_activity_at = ?,
                    last_error = COALESCE(?, last_error), error_count = error_count + ?
                WHERE id = ? AND status IN ({_placeholders(expected_values)})
                """,
                (
                    status.value,
                    to_iso(moment),
                    to_iso(moment),
                    to_iso(moment),
                    error,
                    1 if error else 0,
                    job_id,
                    *expected_values,
                ),
            )
            if cursor.rowcount == 0:
                return None
            self._record_event_sync(
                conn,
                job_id=job_id,
                event_type=f"job_{status.value}",
                status=status.value,
                reason=error,
            )
            job = self._load_job_sync(conn, job_id)
            if job is None or job.started_at is None:
                return None
            return self._insert_history_sync(conn, job, moment)

    def _insert_history_sync(self, conn: sqlite3.Connection, job: CrawlJob, completed_at: datetime) -> RunHistory:
        started_at = job.started_at or job.created_at
        pages_new, pages_changed = self._count_page_changes_sync(conn, job.id, started_at)
        run_number = conn.execute(
            "SELECT COALESCE(MAX(run_number), 0) + 1 FROM crawl_run_history WHERE job_id = ?",
            (job.id,),
        ).fetchone()[0]
        duration_ms = max(0, int((completed_at - started_at).total_seconds() * 1000))
        history = RunHistory(
            job_id=job.id,
            run_number=int(run_number),
            status=job.status,
            pages_discovered=job.pages_discovered,
            pages_crawled=job.pages_crawled,
            pages_successful=job.pages_successful,
            pages_failed=job.pages_failed,
            pages_skipped=job.pages_skipped,
            pages_new=pages_new,
            pages_changed=pages_changed,
            total_words=job.total_words,
            total_links=job.total_links,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
        )
        cursor = conn.execute(
            """
            INSERT INTO crawl_run_history (
                job_id, run_number, status, pages_discovered, pages_crawled, pages_successful, pages_failed,
                pages_skipped, pages_new, pages_changed, total_words, total_links, started_at, completed_at,
                duration_ms
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                history.job_id,
                history.run_number,
                history.status.value,
                history.pages_discovered,
                history.pages_crawled,
                history.pages_successful,
                history.pages_failed,
                history.pages_skipped,
                history.pages_new,
                history.pages_changed,
                history.total_words,
                history.total_links,
                to_iso(history.started_at),
                to_iso(history.completed_at),
                history.duration_ms,
            ),
        )
        return replace(history, id=cursor.lastrowid)

    @staticmethod
    def _count_page_changes_sync(conn: sqlite3.Connection, job_id: str, since: datetime) -> tuple[int, int]:
        """Count pages of this run that are new, or whose hash differs from the previous crawl of the URL."""
        rows = conn.execute(
            """
            SELECT p.content_hash AS content_hash,
                   (SELECT prev.content_hash FROM crawl_pages prev
                     WHERE prev.job_id = p.job_id AND prev.url = p.url AND prev.id < p.id
                     ORDER BY prev.id DESC LIMIT 1) AS previous_hash
            FROM crawl_pages p
            WHERE p.job_id = ? AND p.crawled_at >= ?
            """,
            (job_id, to_iso(since)),
        ).fetchall()
        pages_new = sum(1 for row in rows if row["previous_hash"] is None)
        pages_changed = sum(
            1 for row in rows if row["previous_hash"] is not None and row["previous_hash"] != row["content_hash"]
        )
        return pages_new, pages_changed

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job and everything scoped to it. The shared robots cache is kept."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM crawl_jobs WHERE id = ?", (job_id,))
            if cursor.rowcount == 0:
                return False
            for table in ("crawl_queue", "crawl_pages", "crawl_run_history", "sitemap_cache", "crawl_events"):
                conn.execute(f"DELETE FROM {table} WHERE job_id = ?", (job_id,))
            return True

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    async def pop_next_pending(self, job_id: str, *, now: datetime | None = None) -> QueueItem | None:
        """Claim the highest-priority due pending item and mark it processing."""
        moment = to_iso(now or utcnow())
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM crawl_queue
                WHERE job_id = ? AND status = ? AND (next_retry_at IS NULL OR next_retry_at <= ?)
                ORDER BY priority DESC, id ASC
                LIMIT 1
                """,
                (job_id, QueueStatus.PENDING.value, moment),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE crawl_queue SET status = ?, last_attempt_at = ? WHERE id = ?",
                (QueueStatus.PROCESSING.value, moment, row["id"]),
            )
            self._record_event_sync(
                conn,
                job_id=job_id,
                url=row["url"],
                event_type="queue_dequeued",
                status=QueueStatus.PROCESSING.value,
                detail={"priority": row["priority"], "depth": row["depth"], "attempts": row["attempts"]},
            )
            fresh = conn.execute("SELECT * FROM crawl_queue WHERE id = ?", (row["id"],)).fetchone()
        return QueueItem.from_row(fresh)

    async def queue_counts(self, job_id: str) -> dict[QueueStatus, int]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS total FROM crawl_queue WHERE job_id = ? GROUP BY status",
                (job_id,),
            ).fetchall()
        counts = dict.fromkeys(QueueStatus, 0)
        for row in rows:
            counts[QueueStatus(row["status"])] = int(row["total"])
        return counts

    async def requeue_processing(self, job_id: str) -> int:
        """Return items left in ``processing`` by an interrupted loop to ``pending``."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE crawl_queue SET status = ? WHERE job_id = ? AND status = ?",
                (QueueStatus.PENDING.value, job_id, QueueStatus.PROCESSING.value),
            )
            if cursor.rowcount:
                self._record_event_sync(
                    conn,
                    job_id=job_id,
                    event_type="queue_requeued",
                    status=QueueStatus.PENDING.value,
                    detail={"count": cursor.rowcount},
                )
            return cursor.rowcount

    async def skip_item(self, item: QueueItem, reason: str) -> None:
        now = to_iso(utcnow())
        with self._transaction() as conn:
            conn.execute(
                "UPDATE crawl_queue SET status = ?, skip_reason = ?, processed_at = ? WHERE id = ?",
                (QueueStatus.SKIPPED.value, reason, now, item.id),
            )
            conn.execute(
                """
                UPDATE crawl_jobs
                SET pages_skipped = pages_skipped + 1, pages_crawled = pages_crawled + 1,
                    last_activity_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (now, now, item.job_id),
            )
            self._record_event_sync(
                conn,
                job_id=item.job_id,
                url=item.url,
                event_type="item_skipped",
                status=QueueStatus.SKIPPED.value,
                reason=reason,
            )

    async def save_page(self, item: QueueItem, page: CrawlPage, *, duration_ms: int | None = None) -> int:
        """Insert the page, complete the item and bump the job's success counters."""
        now = to_iso(utcnow())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO crawl_pages (
                    job_id, queue_item_id, url, final_url, status_code, content_type, content_length, title,
                    description, author, published_date, markdown, raw_html_size, word_count, link_count,
                    image_count, code_block_count, table_count, outgoing_links, structured_data, content_hash,
                    crawled_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    page.job_id,
                    page.queue_item_id,
                    page.url,
                    page.final_url,
                    page.status_code,
                    page.content_type,
                    page.content_length,
                    page.title,
                    page.description,
                    page.author,
                    page.published_date,
                    page.markdown,
                    page.raw_html_size,
                    page.word_count,
                    page.link_count,
                    page.image_count,
                    page.code_block_count,
                    page.table_count,
                    json.dumps(list(page.outgoing_links)),
                    json.dumps(page.structured_data) if page.structured_data is not None else None,
                    page.content_hash,
                    to_iso(page.crawled_at),
                ),
            )
            conn.execute(
                "UPDATE crawl_queue SET status = ?, processed_at = ?, last_error = NULL WHERE id = ?",
                (QueueStatus.COMPLETED.value, now, item.id),
            )
            conn.execute(
                """
                UPDATE crawl_jobs
                SET pages_successful = pages_successful + 1, pages_crawled = pages_crawled + 1,
                    total_words = total_words + ?, total_links = total_links + ?,
                    last_activity_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (page.word_count, page.link_count, now, now, item.job_id),
            )
            self._record_event_sync(
                conn,
                job_id=item.job_id,
                url=item.url,
                event_type="page_saved",
                status=QueueStatus.COMPLETED.value,
                detail={"status_code": page.status_code, "word_count": page.word_count},
                duration_ms=duration_ms,
            )
            return int(cursor.lastrowid)

    async def fail_item(
        self,
        item: QueueItem,
        error: str,
        *,
        max_attempts: int,
        backoff_base: float,
        now: datetime | None = None,
    ) -> QueueItem:
        """Record a fetch failure: schedule a retry or mark the item failed for good."""
        moment = now or utcnow()
        stamp = to_iso(moment)
        with self._transaction() as conn:
            row = conn.execute("SELECT attempts FROM crawl_queue WHERE id = ?", (item.id,)).fetchone()
            if row is None:
                raise QueueItemNotFoundError(f"Queue item {item.id} not found")
            attempts = int(row["attempts"]) + 1
            if attempts < max_attempts:
                retry_at = moment + timedelta(seconds=backoff_base**attempts)
                conn.execute(
                    """
                    UPDATE crawl_queue SET status = ?, attempts = ?, next_retry_at = ?, last_error = ?
                    WHERE id = ?
                    """,
                    (QueueStatus.PENDING.value, attempts, to_iso(retry_at), error, item.id),
                )
                conn.execute(
                    "UPDATE crawl_jobs SET last_activity_at = ?, updated_at = ? WHERE id = ?",
                    (stamp, stamp, item.job_id),
                )
                self._record_event_sync(
                    conn,
                    job_id=item.job_id,
                    url=item.url,
                    event_type="item_retry",
                    status=QueueStatus.PENDING.value,
                    reason=error,
                    detail={"attempts": attempts, "next_retry_at": to_iso(retry_at)},
                )
            else:
                conn.execute(
                    """
                    UPDATE crawl_queue SET status = ?, attempts = ?, next_retry_at = NULL, last_error = ?,
                        processed_at = ?
                    WHERE id = ?
                    """,
                    (QueueStatus.FAILED.value, attempts, error, stamp, item.id),
                )
                conn.execute(
                    """
                    UPDATE crawl_jobs
                    SET pages_failed = pages_failed + 1, pages_crawled = pages_crawled + 1,
                        error_count = error_count + 1, last_error = ?, last_activity_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (error, stamp, stamp, item.job_id),
                )
                self._record_event_sync(
                    conn,
                    job_id=item.job_id,
                    url=item.url,
                    event_type="item_failed",
                    status=QueueStatus.FAILED.value,
                    reason=error,
                    detail={"attempts": attempts},
                )
            fresh = conn.execute("SELECT * FROM crawl_queue WHERE id = ?", (item.id,)).fetchone()
        return QueueItem.from_row(fresh)

    async def enqueue_links(
        self,
        job_id: str,
        links: Iterable[LinkCandidate],
        *,
        depth: int,
        discovered_from: str | None,
        max_pages: int,
    ) -> int:
        """Insert unseen links until the job's discovery budget is spent.

        URLs already present for the job in any status are ignored.
        """
        now = to_iso(utcnow())
        inserted = 0
        with self._transaction() as conn:
            row = conn.execute("SELECT pages_discovered FROM crawl_jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                return 0
            discovered = int(row["pages_discovered"])
            for link in links:
                if discovered >= max_pages:
                    break
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO crawl_queue (
                        job_id, url, normalized_url, depth, priority, status, attempts, discovered_from, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (
                        job_id,
                        link.url,
                        link.normalized_url,
                        depth,
                        link.priority,
                        QueueStatus.PENDING.value,
                        discovered_from,
                        now,
                    ),
                )
                if cursor.rowcount == 0:
                    continue
                discovered += 1
                inserted += 1
                self._record_event_sync(
                    conn,
                    job_id=job_id,
                    url=link.url,
                    event_type="queue_enqueued",
                    status=QueueStatus.PENDING.value,
                    detail={"priority": link.priority, "depth": depth},
                )
            if inserted:
                conn.execute(
                    "UPDATE crawl_jobs SET pages_discovered = ?, updated_at = ? WHERE id = ?",
                    (discovered, now, job_id),
                )
        return inserted

    async def get_queue_item(self, item_id: int) -> QueueItem | None:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM crawl_queue WHERE id = ?", (item_id,)).fetchone()
        return QueueItem.from_row(row) if row else None

    async def update_priority(self, item_id: int, priority: int) -> QueueItem:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM crawl_queue WHERE id = ?", (item_id,)).fetchone()
            if row is None:
                raise QueueItemNotFoundError(f"Queue item {item_id} not found")
            if row["status"] != QueueStatus.PENDING.value:
                raise QueueItemStateError(
                    f"Cannot update priority of queue item {item_id}: item is {row['status']}"
                )
            conn.execute("UPDATE crawl_queue SET priority = ? WHERE id = ?", (priority, item_id))
            self._record_event_sync(
                conn,
                job_id=row["job_id"],
                url=row["url"],
                event_type="priority_updated",
                status=QueueStatus.PENDING.value,
                detail={"from": row["priority"], "to": priority},
            )
            fresh = conn.execute("SELECT * FROM crawl_queue WHERE id = ?", (item_id,)).fetchone()
        return QueueItem.from_row(fresh)

    async def list_queue(self, job_id: str, *, status: QueueStatus | None = None, limit: int = 100) -> list[QueueItem]:
        query = "SELECT * FROM crawl_queue WHERE job_id = ?"
        params: list[Any] = [job_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY priority DESC, id ASC LIMIT ?"
        params.append(limit)
        with self._reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return [QueueItem.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Pages, history, events
    # ------------------------------------------------------------------

    async def list_pages(self, job_id: str, *, limit: int = 50, offset: int = 0) -> list[CrawlPage]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM crawl_pages WHERE job_id = ? ORDER BY crawled_at DESC, id DESC LIMIT ? OFFSET ?",
                (job_id, limit, offset),
            ).fetchall()
        return [CrawlPage.from_row(row) for row in rows]

    async def list_history(self, job_id: str) -> list[RunHistory]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT * FROM crawl_run_history WHERE job_id = ? ORDER BY run_number DESC",
                (job_id,),
            ).fetchall()
        return [RunHistory.from_row(row) for row in rows]

    async def list_events(self, job_id: str, *, limit: int = 100) -> list[dict[str, Any]]:
        with self._reader() as conn:
            rows = conn.execute(
                """
                SELECT event_at, url, event_type, status, reason, detail, duration_ms
                FROM crawl_events
                WHERE job_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (job_id, limit),
            ).fetchall()
        events: list[dict[str, Any]] = []
        for row in rows:
            detail = row["detail"]
            events.append(
                {
                    "event_at": row["event_at"],
                    "url": row["url"],
                    "event_type": row["event_type"],
                    "status": row["status"],
                    "reason": row["reason"],
                    "detail": json.loads(detail) if detail else None,
                    "duration_ms": row["duration_ms"],
                }
            )
        return events

    # ------------------------------------------------------------------
    # Robots and sitemap caches
    # ------------------------------------------------------------------

    async def get_robots_entry(self, domain: str) -> RobotsCacheEntry | None:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM robots_cache WHERE domain = ?", (domain,)).fetchone()
        if row is None:
            return None
        fetched_at = parse_iso(row["fetched_at"])
        expires_at = parse_iso(row["expires_at"])
        if fetched_at is None or expires_at is None:
            return None
        return RobotsCacheEntry(
            domain=row["domain"],
            rules=RobotsRules.from_dict(json.loads(row["rules"])),
            fetched_at=fetched_at,
            expires_at=expires_at,
            robots_txt=row["robots_txt"],
        )

    async def save_robots_entry(self, entry: RobotsCacheEntry) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO robots_cache (domain, robots_txt, rules, fetched_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(domain) DO UPDATE SET
                    robots_txt = excluded.robots_txt,
                    rules = excluded.rules,
                    fetched_at = excluded.fetched_at,
                    expires_at = excluded.expires_at
                """,
                (
                    entry.domain,
                    entry.robots_txt,
                    json.dumps(entry.rules.to_dict(), sort_keys=True),
                    to_iso(entry.fetched_at),
                    to_iso(entry.expires_at),
                ),
            )

    async def save_sitemap_cache(self, job_id: str, sitemap_url: str, urls: Sequence[SitemapUrl]) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO sitemap_cache (job_id, sitemap_url, urls, fetched_at) VALUES (?, ?, ?, ?)",
                (job_id, sitemap_url, json.dumps([url.to_dict() for url in urls]), to_iso(utcnow())),
            )
            self._record_event_sync(
                conn,
                job_id=job_id,
                url=sitemap_url,
                event_type="sitemap_cached",
                status="ok",
                detail={"urls": len(urls)},
            )

    async def get_sitemap_cache(self, job_id: str) -> tuple[str, list[SitemapUrl]] | None:
        """Most recent sitemap snapshot for the job as ``(sitemap_url, urls)``."""
        with self._reader() as conn:
            row = conn.execute(
                "SELECT sitemap_url, urls FROM sitemap_cache WHERE job_id = ? ORDER BY id DESC LIMIT 1",
                (job_id,),
            ).fetchone()
        if row is None:
            return None
        return row["sitemap_url"], [SitemapUrl.from_dict(item) for item in json.loads(row["urls"])]
