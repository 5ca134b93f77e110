# ruff: noqa: T201
"""Command line interface for the crawl engine.

Usage:
    # Create a job (prints the job id)
    crawl-engine create https://docs.example.com/ --max-pages 50 --max-depth 2

    # Start it, pull in its sitemap and wait for the run to finish
    crawl-engine run <job-id> --sitemap --timeout 600

    # Inspect
    crawl-engine status <job-id>
    crawl-engine pages <job-id> --limit 10
    crawl-engine history <job-id>

    # Resume active jobs and serve scheduled runs until interrupted
    crawl-engine serve

Crawl loops live in the process that started them: ``run`` and ``resume``
stay in the foreground until the job stops.
"""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
import sys
from typing import Any

import orjson

from crawl_engine.config import Settings
from crawl_engine.domain.model import CrawlEngineError, DomainRestriction, JobStatus
from crawl_engine.observability.logging import configure_logging
from crawl_engine.observability.metrics import get_metrics, init_metrics
from crawl_engine.observability.tracing import init_tracing
from crawl_engine.services.job_service import CrawlJobService


def _print_json(data: Any) -> None:
    print(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode("utf-8"))


def _add_job_id(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("job_id", help="Crawl job id")


def _add_wait_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Stop waiting after this many seconds (default: wait until the job stops)",
    )
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Print this process's Prometheus metrics to stderr when done",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crawl-engine",
        description="Create, run and inspect web crawl jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--db", default=None, help="SQLite database path (default: CRAWL_DB_PATH)")
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create", help="Create a crawl job and print its id")
    create.add_argument("start_url", help="Seed URL")
    create.add_argument("--name", default="", help="Job name")
    create.add_argument("--max-pages", type=int, default=None)
    create.add_argument("--max-depth", type=int, default=None)
    create.add_argument("--delay-ms", dest="request_delay_ms", type=int, default=None)
    create.add_argument("--max-concurrent", type=int, default=None)
    create.add_argument(
        "--domain-restriction",
        choices=[item.value for item in DomainRestriction],
        default=None,
    )
    create.add_argument("--include", dest="include_patterns", action="append", default=None, help="Repeatable")
    create.add_argument("--exclude", dest="exclude_patterns", action="append", default=None, help="Repeatable")
    create.add_argument("--headers", dest="custom_headers", default=None, help="JSON object of extra headers")

    run = subparsers.add_parser("run", help="Start a job and wait for it to finish")
    _add_job_id(run)
    run.add_argument("--sitemap", action="store_true", help="Also enqueue URLs from the site's sitemap")
    _add_wait_options(run)

    resume = subparsers.add_parser("resume", help="Resume a paused job and wait for it to finish")
    _add_job_id(resume)
    _add_wait_options(resume)

    for name, help_text in (
        ("status", "Show live job status"),
        ("pause", "Pause a queued or running job"),
        ("cancel", "Cancel a job"),
        ("history", "Show run history, newest first"),
        ("delete", "Delete a job and everything it crawled"),
    ):
        _add_job_id(subparsers.add_parser(name, help=help_text))

    list_parser = subparsers.add_parser("list", help="List jobs, newest first")
    list_parser.add_argument("--status", choices=[item.value for item in JobStatus], default=None)
    list_parser.add_argument("--limit", type=int, default=50)

    pages = subparsers.add_parser("pages", help="List crawled pages, newest first")
    _add_job_id(pages)
    pages.add_argument("--limit", type=int, default=50)
    pages.add_argument("--offset", type=int, default=0)
    pages.add_argument("--markdown", action="store_true", help="Include the markdown body")

    subparsers.add_parser("serve", help="Resume active jobs and run scheduled jobs until interrupted")
    return parser


def _create_payload(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "start_url": args.start_url,
        "name": args.name,
        "max_pages": args.max_pages,
        "max_depth": args.max_depth,
        "request_delay_ms": args.request_delay_ms,
        "max_concurrent": args.max_concurrent,
        "domain_restriction": args.domain_restriction,
        "include_patterns": args.include_patterns,
        "exclude_patterns": args.exclude_patterns,
        "custom_headers": args.custom_headers,
    }


def _page_summary(page, include_markdown: bool) -> dict[str, Any]:
    data = page.to_dict()
    if not include_markdown:
        data.pop("markdown", None)
    return data


async def _wait_and_report(service: CrawlJobService, args: argparse.Namespace) -> int:
    job_id, timeout = args.job_id, args.timeout
    exit_code = 0
    try:
        await service.wait_for_job(job_id, timeout=timeout)
    except asyncio.TimeoutError:
        print(f"Timed out after {timeout}s; pausing job {job_id}", file=sys.stderr)
        await service.pause_job(job_id)
        exit_code = 1
    _print_json((await service.get_job_status(job_id)).to_dict())
    if args.metrics:
        sys.stderr.write(get_metrics().decode("utf-8"))
    return exit_code


async def _serve(service: CrawlJobService) -> int:
    await service.initialize()
    print("Serving crawl jobs; press Ctrl+C to stop", file=sys.stderr)
    # Runs until the process is interrupted; the caller closes the service.
    await asyncio.Event().wait()
    return 0


async def _run_command(args: argparse.Namespace, settings: Settings) -> int:
    service = CrawlJobService(settings)
    try:
        return await _dispatch(args, service)
    finally:
        await service.close()


async def _dispatch(args: argparse.Namespace, service: CrawlJobService) -> int:
    command = args.command
    if command == "create":
        print(await service.create_job(_create_payload(args)))
    elif command == "run":
        await service.start_job(args.job_id)
        if args.sitemap:
            added = await service.import_sitemap(args.job_id)
            print(f"Queued {added} URL(s) from the sitemap", file=sys.stderr)
        return await _wait_and_report(service, args)
    elif command == "resume":
        await service.resume_job(args.job_id)
        return await _wait_and_report(service, args)
    elif command == "status":
        _print_json((await service.get_job_status(args.job_id)).to_dict())
    elif command == "pause":
        _print_json((await service.pause_job(args.job_id)).to_dict())
    elif command == "cancel":
        _print_json((await service.cancel_job(args.job_id)).to_dict())
    elif command == "list":
        jobs = await service.list_jobs(status=args.status, limit=args.limit)
        _print_json(
            [
                {
                    "id": job.id,
                    "name": job.config.name,
                    "start_url": job.config.start_url,
                    "status": job.status.value,
                    "pages_crawled": job.pages_crawled,
                    "created_at": job.to_dict()["created_at"],
                }
                for job in jobs
            ]
        )
    elif command == "pages":
        pages = await service.get_job_pages(args.job_id, limit=args.limit, offset=args.offset)
        _print_json([_page_summary(page, args.markdown) for page in pages])
    elif command == "history":
        _print_json([run.to_dict() for run in await service.get_job_history(args.job_id)])
    elif command == "delete":
        await service.delete_job(args.job_id)
        print(f"Deleted job {args.job_id}")
    elif command == "serve":
        return await _serve(service)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    overrides: dict[str, Any] = {}
    if args.db:
        overrides["crawl_db_path"] = args.db
    if args.log_level:
        overrides["log_level"] = args.log_level
    # One-shot commands never start the scheduler; ``serve`` keeps the configured value.
    if args.command != "serve":
        overrides["scheduler_enabled"] = False
    settings = Settings(**overrides)

    configure_logging(settings.log_level, settings.log_json, stream=sys.stderr)
    if args.command in {"run", "resume", "serve"}:
        init_tracing()
        init_metrics()

    try:
        return asyncio.run(_run_command(args, settings))
    except CrawlEngineError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
