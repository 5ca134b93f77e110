"""Crawl metrics, exported through prometheus_client and mirrored to OpenTelemetry."""

from __future__ import annotations

from typing import Any

from opentelemetry import metrics as otel_metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader
from opentelemetry.sdk.resources import Resource
from prometheus_client import Counter, Gauge, Histogram, generate_latest


_provider_state: dict[str, Any] = {"provider": None, "meter": None}

_PROMETHEUS_TYPES = {"counter": Counter, "histogram": Histogram, "gauge": Gauge}


def init_metrics(
    service_name: str = "crawl-engine",
    metric_readers: list[MetricReader] | None = None,
) -> MeterProvider:
    """Install the OpenTelemetry meter provider once per process."""
    existing = _provider_state["provider"]
    if isinstance(existing, MeterProvider):
        return existing

    provider = MeterProvider(
        resource=Resource.create({"service.name": service_name}),
        metric_readers=metric_readers or [],
    )
    otel_metrics.set_meter_provider(provider)
    _provider_state["provider"] = provider
    _provider_state["meter"] = provider.get_meter("crawl_engine")
    return provider


def _meter():
    if _provider_state["meter"] is None:
        init_metrics()
    return _provider_state["meter"]


class _LabelledMetric:
    __slots__ = ("_metric", "_labels")

    def __init__(self, metric: CrawlMetric, labels: dict[str, str]) -> None:
        self._metric = metric
        self._labels = labels

    def inc(self, amount: float = 1.0) -> None:
        self._metric.record(self._labels, amount)

    def observe(self, value: float) -> None:
        self._metric.record(self._labels, value)

    def set(self, value: float) -> None:
        self._metric.record(self._labels, value)


class CrawlMetric:
    """One Prometheus metric plus its lazily created OTel instrument.

    Counters and histograms forward each sample. Gauges are absolute on the
    Prometheus side, so the OTel up-down counter receives the difference from
    the last value seen for the same label set.
    """

    def __init__(self, kind: str, name: str, description: str, labelnames: list[str], **options: Any) -> None:
        if kind not in _PROMETHEUS_TYPES:
            raise ValueError(f"Unknown metric kind: {kind}")
        self.kind = kind
        self.name = name
        self.description = description
        self._prometheus = _PROMETHEUS_TYPES[kind](name, description, labelnames, **options)
        self._instrument = None
        self._gauge_values: dict[tuple[tuple[str, str], ...], float] = {}

    def labels(self, **labels: str) -> _LabelledMetric:
        return _LabelledMetric(self, labels)

    def _otel(self):
        if self._instrument is None:
            meter = _meter()
            if self.kind == "counter":
                self._instrument = meter.create_counter(self.name, description=self.description)
            elif self.kind == "histogram":
                self._instrument = meter.create_histogram(self.name, description=self.description)
            else:
                self._instrument = meter.create_up_down_counter(self.name, description=self.description)
        return self._instrument

    def record(self, labels: dict[str, str], value: float) -> None:
        child = self._prometheus.labels(**labels)
        if self.kind == "counter":
            child.inc(value)
            self._otel().add(value, labels)
        elif self.kind == "histogram":
            child.observe(value)
            self._otel().record(value, labels)
        else:
            child.set(value)
            key = tuple(sorted(labels.items()))
            delta = value - self._gauge_values.get(key, 0.0)
            if delta:
                self._otel().add(delta, labels)
            self._gauge_values[key] = value


PAGES_PROCESSED = CrawlMetric("counter", "crawl_pages_total", "Queue items processed, by outcome", ["status"])

FETCH_LATENCY = CrawlMetric(
    "histogram",
    "crawl_fetch_latency_seconds",
    "Page fetch latency in seconds",
    ["outcome"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

ROBOTS_FETCHES = CrawlMetric("counter", "crawl_robots_fetch_total", "robots.txt lookups, by outcome", ["outcome"])

ACTIVE_JOBS = CrawlMetric("gauge", "crawl_active_jobs", "Job loops currently running", ["instance"])

JOB_TRANSITIONS = CrawlMetric("counter", "crawl_job_transitions_total", "Job status transitions", ["status"])


def get_metrics() -> bytes:
    """Prometheus text exposition for the default registry."""
    return generate_latest()
