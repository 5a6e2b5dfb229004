from __future__ import annotations

"""Prometheus metrics for the reconciler."""

import argparse
import threading
from collections import deque
from typing import Deque, Mapping

from prometheus_client import Counter, Gauge, generate_latest, start_http_server, REGISTRY as global_registry

from fsplane.foundation.common.metrics_factory import (
    get_or_create_counter,
    get_or_create_gauge,
)

# 95th percentile reconcile cycle duration in milliseconds
_cycle_samples: Deque[float] = deque(maxlen=100)

reconcile_duration_ms_p95 = Gauge(
    "reconcile_duration_ms_p95",
    "95th percentile duration of reconciliation cycles in milliseconds",
    registry=global_registry,
)

reconcile_cycles_total = Counter(
    "reconcile_cycles_total",
    "Total number of completed reconciliation cycles",
    registry=global_registry,
)

reconcile_conflicts_total = Counter(
    "reconcile_conflicts_total",
    "Total number of reconciliation cycles superseded by a newer registry snapshot",
    registry=global_registry,
)

executor_errors_total = Counter(
    "executor_errors_total",
    "Total number of failed executor calls after retries",
    registry=global_registry,
)

reconcile_actions_total = get_or_create_counter(
    "reconcile_actions_total",
    "Reconciliation actions applied, by action kind",
    ["action"],
    registry=global_registry,
)

jobs_by_status = get_or_create_gauge(
    "jobs_by_status",
    "Number of ingestion jobs in each status",
    ["status"],
    registry=global_registry,
)

registry_version = Gauge(
    "registry_version",
    "Registry snapshot version used by the last reconciliation cycle",
    registry=global_registry,
)

gc_last_run_timestamp = Gauge(
    "gc_last_run_timestamp",
    "Timestamp of the last successful job garbage collection",
    registry=global_registry,
)


def observe_cycle_duration(duration_ms: float) -> None:
    """Record a cycle duration and update the p95 gauge."""
    _cycle_samples.append(duration_ms)
    ordered = sorted(_cycle_samples)
    idx = max(0, int(len(ordered) * 0.95) - 1)
    reconcile_duration_ms_p95.set(ordered[idx])


def record_action(action: str) -> None:
    reconcile_actions_total.labels(action=action).inc()


def set_job_counts(counts: Mapping[str, int]) -> None:
    """Replace the per-status job gauge with ``counts``."""
    jobs_by_status.clear()
    for status, count in counts.items():
        jobs_by_status.labels(status=status).set(count)


def start_metrics_server(port: int = 8000) -> None:
    """Start a background HTTP server to expose metrics."""
    start_http_server(port, registry=global_registry)


_stop_event = threading.Event()


def _run_forever(stop_event: threading.Event | None = None) -> None:
    """Block the main thread so the HTTP server stays alive."""
    stop_event = stop_event or _stop_event
    try:
        while not stop_event.wait(3600):
            pass
    except KeyboardInterrupt:  # pragma: no cover - manual stop
        pass


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="fsplane metrics", description="Expose reconciler metrics"
    )
    parser.add_argument("--port", type=int, default=8000, help="Port to expose metrics on")
    args = parser.parse_args(argv)
    start_metrics_server(args.port)
    _run_forever()


def collect_metrics() -> str:
    """Return metrics in text exposition format."""
    return generate_latest(global_registry).decode()


def reset_metrics() -> None:
    """Helper for tests to clear recorded samples and metric values."""
    _cycle_samples.clear()
    reconcile_duration_ms_p95.set(0)
    # Prometheus counters expose no public reset API
    reconcile_cycles_total._value.set(0)  # type: ignore[attr-defined]
    reconcile_conflicts_total._value.set(0)  # type: ignore[attr-defined]
    executor_errors_total._value.set(0)  # type: ignore[attr-defined]
    reconcile_actions_total.clear()
    jobs_by_status.clear()
    registry_version.set(0)
    gc_last_run_timestamp.set(0)


__all__ = [
    "reconcile_duration_ms_p95",
    "reconcile_cycles_total",
    "reconcile_conflicts_total",
    "executor_errors_total",
    "reconcile_actions_total",
    "jobs_by_status",
    "registry_version",
    "gc_last_run_timestamp",
    "observe_cycle_duration",
    "record_action",
    "set_job_counts",
    "start_metrics_server",
    "collect_metrics",
    "reset_metrics",
    "main",
]


if __name__ == "__main__":  # pragma: no cover - CLI entry
    main()
