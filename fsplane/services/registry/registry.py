"""Versioned, copy-on-write registry of feature sets and stores."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from fsplane.foundation.errors import ConflictError, DataIntegrityError

from .models import FeatureSet, FeatureSetReference, Store
from .repository import (
    InMemoryRegistryRepository,
    RegistryRepository,
    feature_set_from_record,
    feature_set_to_record,
    store_from_record,
    store_to_record,
)
from .snapshot import RegistrySnapshot

logger = logging.getLogger(__name__)

Listener = Callable[[RegistrySnapshot], None]


class Registry:
    """Holds the current :class:`RegistrySnapshot` and applies mutations.

    Mutations are serialized by a lock and each one publishes a brand new
    snapshot with ``version + 1``; readers only ever see complete snapshots.
    Store writes may pass ``expected_version`` (the store's resource version
    the caller based its change on) to get compare-and-swap semantics.
    """

    def __init__(self, repository: RegistryRepository | None = None) -> None:
        self._repo = repository if repository is not None else InMemoryRegistryRepository()
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._snapshot = self._load()

    def _load(self) -> RegistrySnapshot:
        stores: dict[str, Store] = {}
        for record in self._repo.load_stores():
            try:
                stores[record.name] = store_from_record(record)
            except DataIntegrityError:
                logger.error("store %s has a corrupt persisted record", record.name)
                raise
        feature_sets: dict[FeatureSetReference, FeatureSet] = {}
        for data in self._repo.load_feature_sets():
            fs = feature_set_from_record(data)
            feature_sets[fs.reference] = fs
        return RegistrySnapshot(version=0, feature_sets=feature_sets, stores=stores)

    # reads ----------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._snapshot.version

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def get_store(self, name: str) -> Store | None:
        return self._snapshot.stores.get(name)

    def get_feature_set(self, ref: FeatureSetReference) -> FeatureSet | None:
        return self._snapshot.feature_sets.get(ref)

    def get_subscribed_stores(self, ref: FeatureSetReference) -> set[str]:
        return set(self._snapshot.get_subscribed_stores(ref))

    # listeners ------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` after every committed mutation."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, snapshot: RegistrySnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("registry listener %r failed", listener)

    # mutations ------------------------------------------------------------

    def register_feature_set(self, feature_set: FeatureSet) -> FeatureSetReference:
        """Register or extend a feature set.

        Re-registering an identical spec is a no-op. An update must be schema
        compatible with the current version or :class:`VersionConflict` is
        raised.
        """

        ref = feature_set.reference
        with self._lock:
            current = self._snapshot.feature_sets.get(ref)
            if current == feature_set:
                return ref
            if current is not None:
                current.check_compatible(feature_set)
            self._repo.save_feature_set(ref, feature_set_to_record(feature_set))
            feature_sets = dict(self._snapshot.feature_sets)
            feature_sets[ref] = feature_set
            snapshot = self._commit(feature_sets=feature_sets)
        logger.info("registered feature set %s (registry v%d)", ref, snapshot.version)
        self._publish(snapshot)
        return ref

    def delete_feature_set(self, ref: FeatureSetReference) -> None:
        with self._lock:
            if ref not in self._snapshot.feature_sets:
                raise KeyError(str(ref))
            self._repo.delete_feature_set(ref)
            feature_sets = dict(self._snapshot.feature_sets)
            del feature_sets[ref]
            snapshot = self._commit(feature_sets=feature_sets)
        logger.info("deleted feature set %s (registry v%d)", ref, snapshot.version)
        self._publish(snapshot)

    def apply_store(self, store: Store, *, expected_version: int | None = None) -> Store:
        """Create or update ``store`` and return the committed value.

        ``expected_version`` of ``0`` means "create only". Applying content
        identical to the current store is a no-op.
        """

        with self._lock:
            current = self._snapshot.stores.get(store.name)
            current_version = current.version if current is not None else 0
            self._check_expected(store.name, expected_version, current_version)
            if current is not None and current.same_content(store):
                return current
            committed = Store(
                name=store.name,
                type=store.type,
                config=store.config,
                subscriptions=store.subscriptions,
                version=current_version + 1,
            )
            self._repo.save_store(store_to_record(committed))
            stores = dict(self._snapshot.stores)
            stores[committed.name] = committed
            snapshot = self._commit(stores=stores)
        logger.info(
            "applied store %s v%d (registry v%d)",
            committed.name,
            committed.version,
            snapshot.version,
        )
        self._publish(snapshot)
        return committed

    def delete_store(self, name: str, *, expected_version: int | None = None) -> None:
        with self._lock:
            current = self._snapshot.stores.get(name)
            if current is None:
                raise KeyError(name)
            self._check_expected(name, expected_version, current.version)
            self._repo.delete_store(name)
            stores = dict(self._snapshot.stores)
            del stores[name]
            snapshot = self._commit(stores=stores)
        logger.info("deleted store %s (registry v%d)", name, snapshot.version)
        self._publish(snapshot)

    def _check_expected(self, name: str, expected: int | None, actual: int) -> None:
        if expected is not None and expected != actual:
            raise ConflictError(
                f"store {name!r} is at version {actual}, expected {expected}",
                expected=expected,
                actual=actual,
            )

    def _commit(self, **changes) -> RegistrySnapshot:
        self._snapshot = self._snapshot.evolve(**changes)
        return self._snapshot


__all__ = ["Registry", "Listener"]
