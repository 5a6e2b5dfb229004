from __future__ import annotations

"""Idempotent Prometheus metric registration.

Modules that define metrics at import time may be reloaded by tests; these
helpers return the already-registered collector instead of failing with a
duplicate registration error.
"""

from typing import Sequence, TypeVar

from prometheus_client import CollectorRegistry, Counter, Gauge, REGISTRY as global_registry
from prometheus_client.metrics import MetricWrapperBase

MetricT = TypeVar("MetricT", bound=MetricWrapperBase)


def _lookup(registry: CollectorRegistry, name: str) -> MetricWrapperBase | None:
    names = getattr(registry, "_names_to_collectors", {})
    # counters are registered under both ``name`` and ``name_total``
    return names.get(name) or names.get(f"{name}_total")


def _get_or_create(
    metric_cls: type[MetricT],
    name: str,
    documentation: str,
    labelnames: Sequence[str] | None,
    registry: CollectorRegistry | None,
) -> MetricT:
    reg = registry or global_registry
    existing = _lookup(reg, name)
    if existing is not None:
        if not isinstance(existing, metric_cls):
            raise TypeError(
                f"metric {name!r} already registered as {type(existing).__name__}"
            )
        return existing  # type: ignore[return-value]
    return metric_cls(name, documentation, list(labelnames or ()), registry=reg)


def get_or_create_counter(
    name: str,
    documentation: str,
    labelnames: Sequence[str] | None = None,
    *,
    registry: CollectorRegistry | None = None,
) -> Counter:
    """Return an existing counter or register a new one."""
    return _get_or_create(Counter, name, documentation, labelnames, registry)


def get_or_create_gauge(
    name: str,
    documentation: str,
    labelnames: Sequence[str] | None = None,
    *,
    registry: CollectorRegistry | None = None,
) -> Gauge:
    """Return an existing gauge or register a new one."""
    return _get_or_create(Gauge, name, documentation, labelnames, registry)


__all__ = ["get_or_create_counter", "get_or_create_gauge"]
