import threading

import pytest

from fsplane.foundation.errors import ConflictError, CorruptConfig, DataIntegrityError, VersionConflict
from fsplane.services.registry.models import StoreRecord
from fsplane.services.registry.registry import Registry
from fsplane.services.registry.repository import InMemoryRegistryRepository
from tests.builders import feature_set, redis_store, ref, sub


def test_register_feature_set_is_idempotent():
    registry = Registry()

    assert registry.register_feature_set(feature_set("p/a", "x")) == ref("p/a")
    assert registry.version == 1
    assert registry.register_feature_set(feature_set("p/a", "x")) == ref("p/a")
    assert registry.version == 1


def test_register_feature_set_rejects_incompatible_update():
    registry = Registry()
    registry.register_feature_set(feature_set("p/a", "x"))

    with pytest.raises(VersionConflict):
        registry.register_feature_set(feature_set("p/a"))
    assert registry.version == 1

    registry.register_feature_set(feature_set("p/a", "x", "y"))
    assert registry.version == 2


def test_snapshots_are_immutable_and_versioned():
    registry = Registry()
    before = registry.snapshot()
    registry.apply_store(redis_store("s", sub("*", "*")))
    after = registry.snapshot()

    assert before.version == 0 and not before.stores
    assert after.version == 1 and set(after.stores) == {"s"}
    with pytest.raises(TypeError):
        after.stores["x"] = None  # type: ignore[index]


def test_apply_store_bumps_resource_version():
    registry = Registry()

    first = registry.apply_store(redis_store("s", sub("*", "*")))
    same = registry.apply_store(redis_store("s", sub("*", "*")))
    changed = registry.apply_store(redis_store("s", sub("p", "*")), expected_version=1)

    assert first.version == 1
    assert same.version == 1
    assert changed.version == 2
    assert registry.version == 2


def test_apply_store_expected_version_mismatch():
    registry = Registry()
    registry.apply_store(redis_store("s", sub("*", "*")))

    with pytest.raises(ConflictError) as exc:
        registry.apply_store(redis_store("s", sub("p", "*")), expected_version=0)
    assert (exc.value.expected, exc.value.actual) == (0, 1)
    with pytest.raises(ConflictError):
        registry.apply_store(redis_store("t", sub("p", "*")), expected_version=3)


def test_concurrent_writers_on_same_store_commit_once():
    registry = Registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    barrier = threading.Barrier(2)
    outcomes: list[str] = []

    def writer(project: str) -> None:
        barrier.wait()
        try:
            registry.apply_store(redis_store("s", sub(project, "*")), expected_version=1)
            outcomes.append("committed")
        except ConflictError:
            outcomes.append("conflict")

    threads = [threading.Thread(target=writer, args=(p,)) for p in ("a", "b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["committed", "conflict"]
    assert registry.get_store("s").version == 2


def test_delete_store():
    registry = Registry()
    registry.apply_store(redis_store("s", sub("*", "*")))

    with pytest.raises(ConflictError):
        registry.delete_store("s", expected_version=5)
    registry.delete_store("s", expected_version=1)
    assert registry.get_store("s") is None
    with pytest.raises(KeyError):
        registry.delete_store("s")


def test_delete_feature_set():
    registry = Registry()
    registry.register_feature_set(feature_set("p/a"))

    registry.delete_feature_set(ref("p/a"))

    assert registry.get_feature_set(ref("p/a")) is None
    with pytest.raises(KeyError):
        registry.delete_feature_set(ref("p/a"))


def test_get_subscribed_stores_reflects_latest_snapshot():
    registry = Registry()
    registry.register_feature_set(feature_set("fraud/txn"))
    registry.apply_store(redis_store("all", sub("*", "*")))
    registry.apply_store(redis_store("no_fraud", sub("*", "*"), sub("fraud", "*", True)))

    assert registry.get_subscribed_stores(ref("fraud/txn")) == {"all"}

    registry.apply_store(redis_store("no_fraud", sub("*", "*")))
    assert registry.get_subscribed_stores(ref("fraud/txn")) == {"all", "no_fraud"}


def test_listeners_receive_committed_snapshots():
    registry = Registry()
    seen: list[int] = []

    def broken(_snapshot):
        raise RuntimeError("boom")

    registry.subscribe(broken)
    unsubscribe = registry.subscribe(lambda s: seen.append(s.version))
    registry.apply_store(redis_store("s", sub("*", "*")))
    registry.apply_store(redis_store("s", sub("*", "*")))  # no-op, no event
    unsubscribe()
    registry.register_feature_set(feature_set("p/a"))

    assert seen == [1]


def test_registry_persists_and_reloads():
    repo = InMemoryRegistryRepository()
    registry = Registry(repo)
    registry.register_feature_set(feature_set("p/a", "x"))
    registry.apply_store(redis_store("s", sub("p", "*"), sub("p", "b", True)))

    reloaded = Registry(repo)

    assert reloaded.get_store("s") == registry.get_store("s")
    assert reloaded.get_feature_set(ref("p/a")) == feature_set("p/a", "x")
    assert repo.stores["s"].subscriptions == "p:*:false,p:b:true"


def test_corrupt_record_fails_load():
    repo = InMemoryRegistryRepository()
    repo.save_store(StoreRecord(name="s", type="REDIS", config=b"{", subscriptions="*:*:false"))

    with pytest.raises(CorruptConfig):
        Registry(repo)


def test_unknown_type_record_fails_load():
    repo = InMemoryRegistryRepository()
    repo.save_store(StoreRecord(name="s", type="HBASE", config=b"{}", subscriptions=""))

    with pytest.raises(DataIntegrityError):
        Registry(repo)
