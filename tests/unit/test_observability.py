"""Unit tests for observability module."""

from contextlib import nullcontext
import io
import json
import logging
import sys

from opentelemetry.trace import StatusCode
import pytest

from crawl_engine.observability import (
    FETCH_LATENCY,
    PAGES_PROCESSED,
    JsonFormatter,
    bind_job,
    configure_logging,
    create_span,
    get_metrics,
    get_trace_context,
    job_span,
    set_trace_context,
)
from crawl_engine.observability import tracing as tracing_module


def _record(msg: str = "test message", level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="crawl_engine.services.orchestrator",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


@pytest.mark.unit
class TestJsonFormatter:
    """Tests for structured JSON logging."""

    def test_format_includes_trace_context_and_component(self):
        set_trace_context("a" * 32, "b" * 16)

        data = json.loads(JsonFormatter().format(_record()))

        assert data["message"] == "test message"
        assert data["level"] == "INFO"
        assert data["trace_id"] == "a" * 32
        assert data["span_id"] == "b" * 16
        assert data["component"] == "orchestrator"
        assert "job_id" not in data

    def test_format_includes_bound_job(self):
        bind_job("job-42")

        data = json.loads(JsonFormatter().format(_record()))

        assert data["job_id"] == "job-42"

    def test_format_truncates_and_redacts(self):
        record = _record("x" * 5000)
        record.auth_credentials = "user:pass"
        record.cookie = "session=abc"
        record.url = "https://example.com/"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"].endswith("...")
        assert data["auth_credentials"] == "[REDACTED]"
        assert data["cookie"] == "[REDACTED]"
        assert data["url"] == "https://example.com/"

    def test_format_includes_exception(self):
        try:
            raise ValueError("bad page")
        except ValueError:
            record = _record(level=logging.ERROR)
            record.exc_info = sys.exc_info()

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: bad page" in data["exception"]

    def test_json_default_handles_set_and_bytes(self):
        formatter = JsonFormatter()
        assert formatter._json_default({3, 1, 2}) == [1, 2, 3]
        assert formatter._json_default(b"ok") == "ok"


@pytest.mark.unit
class TestConfigureLogging:
    def test_writes_plain_text_to_given_stream(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        stream = io.StringIO()
        try:
            configure_logging("debug", json_output=False, logger_levels={"noisy": "error"}, stream=stream)
            logging.getLogger("crawl_engine.test").debug("hello %s", "there")

            assert "DEBUG [crawl_engine.test] hello there" in stream.getvalue()
            assert root.level == logging.DEBUG
            assert logging.getLogger("noisy").level == logging.ERROR
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


@pytest.mark.unit
class TestTraceContext:
    def test_get_trace_context_generates_ids(self):
        ctx = get_trace_context()

        assert len(ctx["trace_id"]) == 32
        assert len(ctx["span_id"]) == 16
        assert get_trace_context() is ctx

    def test_create_span_updates_span_id_and_records_errors(self, monkeypatch):
        calls = []

        class FakeSpan:
            def set_attribute(self, key, value):
                calls.append(("attr", key, value))

            def get_span_context(self):
                return type("Ctx", (), {"span_id": 255})()

            def set_status(self, status):
                calls.append(("status", status.status_code))

            def record_exception(self, exc):
                calls.append(("exception", str(exc)))

        class FakeTracer:
            def start_as_current_span(self, name, kind):
                calls.append(("span", name))
                return nullcontext(FakeSpan())

        monkeypatch.setattr(tracing_module, "get_tracer", lambda: FakeTracer())
        set_trace_context("c" * 32, "d" * 16)

        with pytest.raises(RuntimeError):
            with create_span("crawl.fetch", attributes={"http.url": "https://example.com/", "skip": None}):
                assert get_trace_context()["span_id"] == format(255, "016x")
                raise RuntimeError("fetch exploded")

        assert ("span", "crawl.fetch") in calls
        assert ("attr", "http.url", "https://example.com/") in calls
        assert not any(call[:2] == ("attr", "skip") for call in calls)
        assert ("status", StatusCode.ERROR) in calls
        assert ("exception", "fetch exploded") in calls
        assert get_trace_context()["trace_id"] == "c" * 32


@pytest.mark.unit
class TestMetrics:
    def test_counters_show_up_in_exposition(self):
        PAGES_PROCESSED.labels(status="success").inc()

        output = get_metrics().decode("utf-8")

        assert 'crawl_pages_total{status="success"}' in output

    def test_histogram_observations_are_exported(self):
        FETCH_LATENCY.labels(outcome="error").observe(0.2)

        output = get_metrics().decode("utf-8")

        assert 'crawl_fetch_latency_seconds_count{outcome="error"}' in output


@pytest.mark.unit
class TestJobSpan:
    def test_binds_job_and_tags_span(self, monkeypatch):
        attributes = {}

        class FakeSpan:
            def set_attribute(self, key, value):
                attributes[key] = value

            def get_span_context(self):
                return type("Ctx", (), {"span_id": 1})()

        class FakeTracer:
            def start_as_current_span(self, name, kind):
                return nullcontext(FakeSpan())

        monkeypatch.setattr(tracing_module, "get_tracer", lambda: FakeTracer())

        with job_span("job-7", "crawl.tick"):
            assert get_trace_context()["job_id"] == "job-7"

        assert attributes == {"crawl.job_id": "job-7"}
