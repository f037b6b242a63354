"""Prometheus metrics for the GTFS-RT Transcoder."""

import time

from prometheus_client import Counter, Gauge, Histogram

# In-memory last-success timestamp (for the /health endpoint)
_last_success: dict[str, float] = {}

# Common histogram buckets for stage timings
TIMING_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]

invocations = Counter(
    "gtfs_rt_transcode_invocations_total",
    "Pipeline invocations by outcome",
    ["outcome", "error_kind"],
)

stage_duration = Histogram(
    "gtfs_rt_transcode_stage_duration_seconds",
    "Time spent in each pipeline stage",
    ["stage"],
    buckets=TIMING_BUCKETS,
    unit="seconds",
)

invocation_duration = Histogram(
    "gtfs_rt_transcode_invocation_duration_seconds",
    "End-to-end invocation time",
    ["outcome"],
    buckets=TIMING_BUCKETS,
    unit="seconds",
)

fetch_bytes = Histogram(
    "gtfs_rt_transcode_fetch_bytes",
    "Upstream payload size in bytes",
    buckets=[1000, 10000, 50000, 100000, 500000, 1000000, 5000000],
)

entities = Histogram(
    "gtfs_rt_transcode_entities",
    "Entities per decoded feed",
    buckets=[0, 1, 10, 50, 100, 500, 1000, 5000],
)

cold_starts = Counter(
    "gtfs_rt_transcode_cold_starts_total",
    "Invocations served right after process initialization",
)

last_success_timestamp = Gauge(
    "gtfs_rt_transcode_last_success_timestamp",
    "Unix timestamp of the last successful invocation",
)


def record_stage_duration(stage: str, duration_seconds: float) -> None:
    """Record time spent in one pipeline stage.

    Args:
        stage: Stage name (fetching, decoding, transcoding).
        duration_seconds: Time spent in seconds.
    """
    stage_duration.labels(stage=stage).observe(duration_seconds)


def record_fetch_bytes(byte_count: int) -> None:
    """Record the size of a fetched payload."""
    fetch_bytes.observe(byte_count)


def record_entity_count(count: int) -> None:
    """Record how many entities a decoded feed carried."""
    entities.observe(count)


def record_cold_start() -> None:
    """Record an invocation served right after initialization."""
    cold_starts.inc()


def record_success(duration_seconds: float) -> None:
    """Record a successful invocation.

    Args:
        duration_seconds: End-to-end invocation time in seconds.
    """
    invocations.labels(outcome="success", error_kind="").inc()
    invocation_duration.labels(outcome="success").observe(duration_seconds)
    last_success_timestamp.set_to_current_time()
    _last_success["pipeline"] = time.time()


def record_failure(error_kind: str, duration_seconds: float) -> None:
    """Record a failed invocation.

    Args:
        error_kind: Stable error-kind tag (e.g. "NetworkError", "DecodeError").
        duration_seconds: End-to-end invocation time in seconds.
    """
    invocations.labels(outcome="failure", error_kind=error_kind).inc()
    invocation_duration.labels(outcome="failure").observe(duration_seconds)


def get_last_success_timestamp() -> float | None:
    """Unix timestamp of the last successful invocation, or None."""
    return _last_success.get("pipeline")
