from __future__ import annotations

import json

import pytest

from crawl_engine import cli
from crawl_engine.services.job_service import CrawlJobService


@pytest.fixture
def run_cli(tmp_path, monkeypatch, capsys):
    """Invoke ``cli.main`` against a temporary database and capture its output."""
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    db_path = tmp_path / "cli.sqlite"

    def invoke(*argv: str) -> tuple[int, str, str]:
        exit_code = cli.main(["--db", str(db_path), *argv])
        captured = capsys.readouterr()
        return exit_code, captured.out, captured.err

    return invoke


@pytest.fixture
def offline_service(monkeypatch, fake_site):
    """Route the CLI's HTTP traffic to the fake site."""
    monkeypatch.setattr(cli, "CrawlJobService", lambda settings: CrawlJobService(settings, client=fake_site.client()))
    return fake_site


@pytest.mark.unit
def test_create_status_list_and_delete(run_cli) -> None:
    code, out, _ = run_cli("create", "https://ex.com/", "--name", "Docs", "--max-pages", "5", "--include", "/docs/")
    assert code == 0
    job_id = out.strip()
    assert len(job_id) == 32

    code, out, _ = run_cli("status", job_id)
    assert code == 0
    status = json.loads(out)
    assert status["status"] == "idle"
    assert status["pages_crawled"] == 0

    code, out, _ = run_cli("list", "--status", "idle")
    listed = json.loads(out)
    assert [(job["id"], job["name"]) for job in listed] == [(job_id, "Docs")]

    code, out, _ = run_cli("history", job_id)
    assert json.loads(out) == []

    code, out, _ = run_cli("delete", job_id)
    assert code == 0
    assert out.strip() == f"Deleted job {job_id}"
    assert json.loads(run_cli("list")[1]) == []


@pytest.mark.unit
def test_errors_are_reported_with_exit_code(run_cli) -> None:
    code, out, err = run_cli("status", "nope")

    assert code == 1
    assert out == ""
    assert "Error: Crawl job nope not found" in err

    code, _, err = run_cli("create", "ftp://ex.com/")
    assert code == 1
    assert err.startswith("Error: ")


@pytest.mark.unit
def test_invalid_transition_is_an_error(run_cli) -> None:
    job_id = run_cli("create", "https://ex.com/")[1].strip()

    code, _, err = run_cli("resume", job_id)

    assert code == 1
    assert f"Cannot resume job {job_id}: job is idle" in err


@pytest.mark.unit
def test_run_crawls_and_reports(run_cli, offline_service) -> None:
    offline_service.pages.update(
        {
            "https://ex.com/": '<html><head><title>Home</title></head><body><p>Welcome home.</p><a href="/a">A</a></body></html>',
            "https://ex.com/a": "<html><head><title>A</title></head><body><p>Page A words.</p></body></html>",
        }
    )
    job_id = run_cli("create", "https://ex.com/", "--delay-ms", "0")[1].strip()

    code, out, err = run_cli("run", job_id, "--timeout", "10", "--metrics")

    assert code == 0
    status = json.loads(out)
    assert status["status"] == "completed"
    assert status["pages_successful"] == 2
    assert "crawl_pages_total" in err

    code, out, _ = run_cli("pages", job_id, "--limit", "1")
    pages = json.loads(out)
    assert len(pages) == 1
    assert "markdown" not in pages[0]

    code, out, _ = run_cli("pages", job_id, "--markdown")
    assert all("markdown" in page for page in json.loads(out))

    code, out, _ = run_cli("history", job_id)
    assert [run["run_number"] for run in json.loads(out)] == [1]


@pytest.mark.unit
def test_argument_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        cli.build_argument_parser().parse_args([])
