from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from crawl_engine.domain.model import CrawlJob, JobConfig, JobStatus, QueueStatus
from crawl_engine.services.orchestrator import CrawlOrchestrator, TickState
from crawl_engine.utils.crawl_store import CrawlStore
from crawl_engine.utils.fetcher import PageFetcher
from crawl_engine.utils.robots import RobotsCache
from crawl_engine.utils.url_rules import normalize_url


USER_AGENT = "TestCrawler/1.0 (+https://example.test/bot)"


def _html(*hrefs: str, title: str = "Page") -> str:
    anchors = "".join(f'<a href="{href}">link {index}</a>' for index, href in enumerate(hrefs))
    return f"<html><head><title>{title}</title></head><body><main><p>Some words here.</p>{anchors}</main></body></html>"


class Harness:
    def __init__(self, store: CrawlStore, client: httpx.AsyncClient, orchestrator: CrawlOrchestrator) -> None:
        self.store = store
        self.client = client
        self.orchestrator = orchestrator

    async def start(self, job_id: str = "job-1", **overrides) -> CrawlJob:
        config = JobConfig(**{"start_url": "https://ex.com/", "request_delay_ms": 0, **overrides})
        await self.store.create_job(CrawlJob(id=job_id, config=config))
        assert await self.store.reset_and_seed(job_id, config.start_url, normalize_url(config.start_url))
        job = await self.store.get_job(job_id)
        assert job is not None
        return job

    async def drain(self, job_id: str = "job-1", max_ticks: int = 50) -> list[TickState]:
        states: list[TickState] = []
        for _ in range(max_ticks):
            result = await self.orchestrator.tick(job_id)
            states.append(result.state)
            if result.state is TickState.STOPPED:
                return states
        raise AssertionError(f"job {job_id} did not stop within {max_ticks} ticks")

    async def page_urls(self, job_id: str = "job-1") -> list[str]:
        return sorted(page.url for page in await self.store.list_pages(job_id, limit=500))


@pytest_asyncio.fixture
async def harness(tmp_path, fake_site):
    store = CrawlStore(tmp_path / "crawl.sqlite")
    client = fake_site.client()
    orchestrator = CrawlOrchestrator(
        store,
        PageFetcher(client, user_agent=USER_AGENT),
        RobotsCache(store, client, user_agent=USER_AGENT),
        idle_poll_seconds=0.01,
    )
    yield Harness(store, client, orchestrator)
    await orchestrator.stop_all()
    await client.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_crawl_respects_depth_and_domain(harness, fake_site) -> None:
    fake_site.pages.update(
        {
            "https://ex.com/": _html("/a", "https://other.com/x"),
            "https://ex.com/a": _html("/b"),
            "https://ex.com/b": _html(),
        }
    )
    await harness.start(max_depth=1, max_pages=10)

    states = await harness.drain()

    assert states == [TickState.PROCESSED, TickState.PROCESSED, TickState.STOPPED]
    job = await harness.store.get_job("job-1")
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert (job.pages_discovered, job.pages_crawled, job.pages_successful) == (2, 2, 2)
    assert job.counters_consistent
    assert await harness.page_urls() == ["https://ex.com/", "https://ex.com/a"]
    assert not any("other.com" in url for url in fake_site.requested_urls)
    assert fake_site.count("https://ex.com/b") == 0

    history = await harness.store.list_history("job-1")
    assert len(history) == 1
    assert history[0].status is JobStatus.COMPLETED
    assert history[0].pages_new == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_equivalent_links_are_fetched_once(harness, fake_site) -> None:
    fake_site.pages.update(
        {
            "https://ex.com/": _html("/a", "/a/", "/a#section", "https://EX.com/a?utm_source=x", "/"),
            "https://ex.com/a": _html("/"),
        }
    )
    await harness.start(max_depth=3)

    await harness.drain()

    assert fake_site.count("https://ex.com/") == 1
    assert fake_site.count("https://ex.com/a") == 1
    job = await harness.store.get_job("job-1")
    assert job is not None
    assert job.pages_discovered == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_page_budget_caps_discovery_and_crawl(harness, fake_site) -> None:
    fake_site.pages["https://ex.com/"] = _html("/1", "/2", "/3", "/4")
    for index in range(1, 5):
        fake_site.pages[f"https://ex.com/{index}"] = _html()
    await harness.start(max_pages=2)

    await harness.drain()

    job = await harness.store.get_job("job-1")
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert job.pages_discovered == 2
    assert job.pages_crawled == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_robots_disallowed_urls_are_skipped_without_fetching(harness, fake_site) -> None:
    fake_site.pages.update(
        {
            "https://ex.com/robots.txt": (200, "User-agent: *\nDisallow: /private\n", "text/plain"),
            "https://ex.com/": _html("/private/x", "/manual", "/ok"),
            "https://ex.com/manual": (200, "%PDF", "application/pdf"),
            "https://ex.com/ok": _html(),
        }
    )
    await harness.start()

    await harness.drain()

    assert fake_site.count("https://ex.com/private/x") == 0
    skipped = {
        item.url: item.skip_reason
        for item in await harness.store.list_queue("job-1", status=QueueStatus.SKIPPED)
    }
    assert skipped == {
        "https://ex.com/private/x": "Blocked by robots.txt",
        "https://ex.com/manual": "Unsupported content type: application/pdf",
    }
    job = await harness.store.get_job("job-1")
    assert job is not None
    assert (job.pages_successful, job.pages_skipped, job.pages_crawled) == (2, 2, 4)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_fetch_waits_for_retry(harness, fake_site) -> None:
    fake_site.pages["https://ex.com/"] = (500, "boom", "text/html")
    await harness.start()

    first = await harness.orchestrator.tick("job-1")
    second = await harness.orchestrator.tick("job-1")

    assert first.state is TickState.PROCESSED
    assert second.state is TickState.WAITING
    assert second.delay_seconds == 0.01
    job = await harness.store.get_job("job-1")
    assert job is not None
    assert job.status is JobStatus.RUNNING
    assert job.pages_crawled == 0
    (item,) = await harness.store.list_queue("job-1")
    assert item.status is QueueStatus.PENDING
    assert item.attempts == 1
    assert item.last_error == "HTTP 500"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_pause_and_resume_matches_uninterrupted_run(harness, fake_site) -> None:
    fake_site.pages.update(
        {
            "https://ex.com/": _html("/a", "/b"),
            "https://ex.com/a": _html("/c", "/b"),
            "https://ex.com/b": _html("/a"),
            "https://ex.com/c": _html(),
        }
    )
    await harness.start("straight", max_depth=2)
    await harness.drain("straight")

    await harness.start("interrupted", max_depth=2)
    await harness.orchestrator.tick("interrupted")
    assert await harness.store.pause_job("interrupted")
    paused = await harness.orchestrator.tick("interrupted")
    assert paused.state is TickState.STOPPED
    assert (await harness.store.get_job("interrupted")).status is JobStatus.PAUSED

    assert await harness.store.resume_job("interrupted")
    await harness.drain("interrupted")

    expected = ["https://ex.com/", "https://ex.com/a", "https://ex.com/b", "https://ex.com/c"]
    assert await harness.page_urls("straight") == expected
    assert await harness.page_urls("interrupted") == expected


@pytest.mark.unit
@pytest.mark.asyncio
async def test_jobs_on_one_domain_share_robots_fetch(harness, fake_site) -> None:
    fake_site.pages["https://ex.com/"] = _html()
    await harness.start("first")
    await harness.start("second")

    await harness.drain("first")
    await harness.drain("second")

    assert fake_site.count("https://ex.com/robots.txt") == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_tick_stops_for_inactive_or_missing_jobs(harness) -> None:
    job = await harness.start()
    await harness.store.finish_job(job.id, JobStatus.CANCELLED, expected=(JobStatus.QUEUED,))

    assert (await harness.orchestrator.tick(job.id)).state is TickState.STOPPED
    assert (await harness.orchestrator.tick("missing")).state is TickState.STOPPED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_loop_requeues_interrupted_items_and_completes(harness, fake_site) -> None:
    fake_site.pages["https://ex.com/"] = _html()
    await harness.start()
    assert await harness.store.pop_next_pending("job-1") is not None

    harness.orchestrator.ensure_running("job-1")
    await harness.orchestrator.wait("job-1", timeout=5)

    job = await harness.store.get_job("job-1")
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert job.pages_successful == 1
    assert harness.orchestrator.active_job_ids == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unexpected_error_fails_the_job(harness, monkeypatch) -> None:
    await harness.start()

    async def broken_pop(job_id, *, now=None):
        raise RuntimeError("disk gone")

    monkeypatch.setattr(harness.store, "pop_next_pending", broken_pop)

    harness.orchestrator.ensure_running("job-1")
    await harness.orchestrator.wait("job-1", timeout=5)

    job = await harness.store.get_job("job-1")
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.last_error == "RuntimeError: disk gone"
    history = await harness.store.list_history("job-1")
    assert [run.status for run in history] == [JobStatus.FAILED]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_malformed_link_does_not_fail_the_job(harness, fake_site) -> None:
    fake_site.pages.update({"https://ex.com/": _html("/a", "http://[oops/"), "https://ex.com/a": _html()})
    await harness.start()

    harness.orchestrator.ensure_running("job-1")
    await harness.orchestrator.wait("job-1", timeout=5)

    job = await harness.store.get_job("job-1")
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert job.last_error is None
    assert (job.pages_successful, job.pages_crawled) == (2, 2)
    assert await harness.page_urls() == ["https://ex.com/", "https://ex.com/a"]
    assert await harness.store.list_queue("job-1", status=QueueStatus.PROCESSING) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_redirected_robots_txt_still_blocks(harness, fake_site) -> None:
    fake_site.pages.update(
        {
            "https://ex.com/robots.txt": (301, "https://www.ex.com/robots.txt", None),
            "https://www.ex.com/robots.txt": (200, "User-agent: *\nDisallow: /private\n", "text/plain"),
            "https://ex.com/": _html("/private/x", "/ok"),
            "https://ex.com/ok": _html(),
        }
    )
    await harness.start()

    await harness.drain()

    assert fake_site.count("https://ex.com/private/x") == 0
    skipped = await harness.store.list_queue("job-1", status=QueueStatus.SKIPPED)
    assert [(item.url, item.skip_reason) for item in skipped] == [("https://ex.com/private/x", "Blocked by robots.txt")]
