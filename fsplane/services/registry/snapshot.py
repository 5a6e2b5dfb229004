"""Immutable, version-stamped views of the registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from .models import FeatureSet, FeatureSetReference, Store
from .subscriptions import subscribed_stores


def _freeze(data: Mapping) -> Mapping:
    return MappingProxyType(dict(data))


@dataclass(frozen=True)
class RegistrySnapshot:
    version: int = 0
    feature_sets: Mapping[FeatureSetReference, FeatureSet] = field(
        default_factory=lambda: _freeze({})
    )
    stores: Mapping[str, Store] = field(default_factory=lambda: _freeze({}))

    def __post_init__(self) -> None:
        object.__setattr__(self, "feature_sets", _freeze(self.feature_sets))
        object.__setattr__(self, "stores", _freeze(self.stores))

    def references(self) -> list[FeatureSetReference]:
        return sorted(self.feature_sets)

    def get_subscribed_stores(self, ref: FeatureSetReference) -> frozenset[str]:
        return subscribed_stores(ref, self.stores)

    def evolve(
        self,
        *,
        feature_sets: Mapping[FeatureSetReference, FeatureSet] | None = None,
        stores: Mapping[str, Store] | None = None,
    ) -> "RegistrySnapshot":
        """Return the successor snapshot with the version bumped."""
        return RegistrySnapshot(
            version=self.version + 1,
            feature_sets=self.feature_sets if feature_sets is None else feature_sets,
            stores=self.stores if stores is None else stores,
        )


__all__ = ["RegistrySnapshot"]
