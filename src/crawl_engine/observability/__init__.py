"""Observability module for OpenTelemetry-aligned tracing, metrics, and logging."""

from crawl_engine.observability.context import bind_job, get_trace_context, set_trace_context, trace_context
from crawl_engine.observability.logging import JsonFormatter, configure_logging
from crawl_engine.observability.metrics import (
    ACTIVE_JOBS,
    FETCH_LATENCY,
    JOB_TRANSITIONS,
    PAGES_PROCESSED,
    ROBOTS_FETCHES,
    get_metrics,
    init_metrics,
)
from crawl_engine.observability.tracing import create_span, get_tracer, init_tracing, job_span


__all__ = [
    "ACTIVE_JOBS",
    "FETCH_LATENCY",
    "JOB_TRANSITIONS",
    "PAGES_PROCESSED",
    "ROBOTS_FETCHES",
    "JsonFormatter",
    "bind_job",
    "configure_logging",
    "create_span",
    "get_metrics",
    "get_tracer",
    "get_trace_context",
    "init_metrics",
    "init_tracing",
    "job_span",
    "set_trace_context",
    "trace_context",
]
