"""Compute the desired job topology from a registry snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from fsplane.services.registry.snapshot import RegistrySnapshot
from fsplane.services.registry.store_config import config_version
from fsplane.services.registry.subscriptions import resolve

from .models import DesiredJob


@dataclass(frozen=True)
class TopologyPlan:
    """Desired jobs keyed by store name, tagged with the snapshot version."""

    version: int
    desired: Mapping[str, DesiredJob] = field(default_factory=dict)

    def __contains__(self, store_name: object) -> bool:
        return store_name in self.desired

    def __len__(self) -> int:
        return len(self.desired)

    def topology(self) -> dict[str, frozenset]:
        return {name: job.feature_set_refs for name, job in self.desired.items()}


def plan(snapshot: RegistrySnapshot) -> TopologyPlan:
    """Resolve every feature set against every store in ``snapshot``.

    Stores that resolve to no feature set get no desired job.
    """

    refs = snapshot.references()
    desired: dict[str, DesiredJob] = {}
    for name in sorted(snapshot.stores):
        store = snapshot.stores[name]
        matched = frozenset(r for r in refs if resolve(r, store.subscriptions))
        if not matched:
            continue
        sources = sorted({snapshot.feature_sets[r].source.descriptor() for r in matched})
        desired[name] = DesiredJob(
            store_name=name,
            store_type=store.type,
            config_version=config_version(store.type, store.config),
            feature_set_refs=matched,
            sources=tuple(sources),
        )
    return TopologyPlan(version=snapshot.version, desired=desired)


__all__ = ["TopologyPlan", "plan"]
