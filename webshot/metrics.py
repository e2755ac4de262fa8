"""Prometheus collectors for capture, cache and upload activity."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

CAPTURES_TOTAL = Counter(
    "webshot_captures_total",
    "Captures processed, by output format and outcome",
    labelnames=("format", "outcome"),
)
CAPTURE_SECONDS = Histogram(
    "webshot_capture_seconds",
    "End-to-end capture latency",
    labelnames=("format",),
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 90, 120),
)
CACHE_EVENTS_TOTAL = Counter(
    "webshot_cache_events_total",
    "Cache lookups and writes",
    labelnames=("event",),
)
DEGRADED_TOTAL = Counter(
    "webshot_degraded_total",
    "Stages that failed without aborting the capture",
    labelnames=("code",),
)
UPLOADS_TOTAL = Counter(
    "webshot_uploads_total",
    "Object storage uploads",
    labelnames=("provider", "outcome"),
)


def record_capture(fmt: str, outcome: str, seconds: float | None = None) -> None:
    CAPTURES_TOTAL.labels(format=fmt, outcome=outcome).inc()
    if seconds is not None:
        CAPTURE_SECONDS.labels(format=fmt).observe(seconds)


def record_cache_event(event: str) -> None:
    CACHE_EVENTS_TOTAL.labels(event=event).inc()


def record_degraded(code: str) -> None:
    DEGRADED_TOTAL.labels(code=code).inc()


def record_upload(provider: str, outcome: str) -> None:
    UPLOADS_TOTAL.labels(provider=provider, outcome=outcome).inc()
