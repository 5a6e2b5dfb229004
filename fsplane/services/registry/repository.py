"""Persistence boundary for registry entities.

The engine behind :class:`RegistryRepository` is an external collaborator;
:class:`InMemoryRegistryRepository` is used for local runs and tests. Records
cross the boundary in their flattened form (config bytes, subscription
string) and are converted by the pure ``*_to_record``/``*_from_record``
helpers below.
"""

from __future__ import annotations

import json
from typing import Dict, Iterable, Protocol

from fsplane.foundation.errors import DataIntegrityError, ValidationError

from .models import FeatureSet, FeatureSetReference, Store, StoreRecord
from .store_config import coerce_store_type, decode, encode
from .subscriptions import format_subscriptions, parse_subscriptions


def store_to_record(store: Store) -> StoreRecord:
    return StoreRecord(
        name=store.name,
        type=store.type.value,
        config=encode(store.type, store.config),
        subscriptions=format_subscriptions(store.subscriptions),
        version=store.version,
    )


def store_from_record(record: StoreRecord) -> Store:
    """Rebuild a :class:`Store`; any decoding problem is a data integrity error."""

    store_type = coerce_store_type(record.type)
    config = decode(store_type, record.config)
    try:
        subscriptions = tuple(parse_subscriptions(record.subscriptions))
    except ValidationError as exc:
        raise DataIntegrityError(
            f"store {record.name!r} has corrupt subscriptions: {exc}"
        ) from exc
    return Store(
        name=record.name,
        type=store_type,
        config=config,
        subscriptions=subscriptions,
        version=record.version,
    )


def feature_set_to_record(feature_set: FeatureSet) -> bytes:
    return json.dumps(feature_set.to_mapping(), sort_keys=True).encode("utf-8")


def feature_set_from_record(data: bytes) -> FeatureSet:
    try:
        payload = json.loads(data)
        return FeatureSet.from_mapping(payload)
    except (ValueError, TypeError, ValidationError) as exc:
        raise DataIntegrityError(f"corrupt feature set record: {exc}") from exc


class RegistryRepository(Protocol):
    """CRUD interface implemented by the registry persistence engine."""

    def load_stores(self) -> Iterable[StoreRecord]:
        ...

    def save_store(self, record: StoreRecord) -> None:
        ...

    def delete_store(self, name: str) -> None:
        ...

    def load_feature_sets(self) -> Iterable[bytes]:
        ...

    def save_feature_set(self, ref: FeatureSetReference, data: bytes) -> None:
        ...

    def delete_feature_set(self, ref: FeatureSetReference) -> None:
        ...


class InMemoryRegistryRepository:
    """Dictionary-backed :class:`RegistryRepository`."""

    def __init__(self) -> None:
        self.stores: Dict[str, StoreRecord] = {}
        self.feature_sets: Dict[str, bytes] = {}

    def load_stores(self) -> Iterable[StoreRecord]:
        return list(self.stores.values())

    def save_store(self, record: StoreRecord) -> None:
        self.stores[record.name] = record

    def delete_store(self, name: str) -> None:
        self.stores.pop(name, None)

    def load_feature_sets(self) -> Iterable[bytes]:
        return list(self.feature_sets.values())

    def save_feature_set(self, ref: FeatureSetReference, data: bytes) -> None:
        self.feature_sets[str(ref)] = data

    def delete_feature_set(self, ref: FeatureSetReference) -> None:
        self.feature_sets.pop(str(ref), None)


__all__ = [
    "RegistryRepository",
    "InMemoryRegistryRepository",
    "store_to_record",
    "store_from_record",
    "feature_set_to_record",
    "feature_set_from_record",
]
