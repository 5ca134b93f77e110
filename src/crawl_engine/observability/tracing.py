"""OpenTelemetry spans for crawl loop ticks and page fetches.

Spans carry the job id bound in the current context (see ``bind_job``) as
``crawl.job_id`` so a fetch span can be tied back to its job without every
caller threading the id through.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import SpanKind, Status, StatusCode

from crawl_engine.observability.context import bind_job, trace_context, update_span_id


if TYPE_CHECKING:
    from collections.abc import Generator, Mapping

    from opentelemetry.trace import Span, Tracer

logger = logging.getLogger(__name__)

_state: dict[str, Tracer | None] = {"tracer": None}


def init_tracing(service_name: str = "crawl-engine", *, version: str | None = None) -> TracerProvider:
    """Install an SDK tracer provider for this process."""
    resource_attributes = {"service.name": service_name}
    if version:
        resource_attributes["service.version"] = version
    provider = TracerProvider(resource=Resource.create(resource_attributes))
    trace.set_tracer_provider(provider)
    _state["tracer"] = provider.get_tracer("crawl_engine")
    logger.debug("Tracing initialized for %s", service_name)
    return provider


def get_tracer() -> Tracer:
    tracer = _state["tracer"]
    if tracer is None:
        # Falls back to whatever provider is globally installed (a no-op one by default).
        tracer = trace.get_tracer("crawl_engine")
        _state["tracer"] = tracer
    return tracer


def _span_attributes(attributes: Mapping[str, Any] | None) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    ctx = trace_context.get() or {}
    if ctx.get("job_id"):
        merged["crawl.job_id"] = ctx["job_id"]
    for key, value in (attributes or {}).items():
        if value is not None:
            merged[key] = value
    return merged


@contextmanager
def create_span(
    name: str,
    kind: SpanKind = SpanKind.INTERNAL,
    attributes: Mapping[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Open a span, mirror its id into the log context and mark it failed on error."""
    with get_tracer().start_as_current_span(name, kind=kind) as span:
        for key, value in _span_attributes(attributes).items():
            span.set_attribute(key, value)
        update_span_id(format(span.get_span_context().span_id, "016x"))

        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            raise


@contextmanager
def job_span(job_id: str, name: str, **attributes: Any) -> Generator[Span, None, None]:
    """Bind ``job_id`` to the current context and open a span for it."""
    bind_job(job_id)
    with create_span(name, attributes=attributes) as span:
        yield span
