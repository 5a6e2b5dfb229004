from pathlib import Path

import pytest

from fsplane.foundation.errors import ValidationError
from fsplane.services.registry.registry import Registry
from fsplane.services.registry.seed import apply_document, load_registry, read_document
from tests.builders import ref


def test_apply_document_registers_everything():
    registry = apply_document(
        Registry(),
        {
            "feature_sets": [
                {
                    "project": "p",
                    "name": "a",
                    "entities": [{"name": "id", "value_type": "int64"}],
                }
            ],
            "stores": [
                {
                    "name": "s",
                    "type": "redis",
                    "config": {"host": "r", "port": 1},
                    "subscriptions": [{"project": "p", "name": "*"}],
                }
            ],
        },
    )

    assert registry.get_subscribed_stores(ref("p/a")) == {"s"}
    assert registry.version == 2


def test_empty_document():
    assert apply_document(Registry(), {}).version == 0


def test_load_registry(tmp_path: Path):
    path = tmp_path / "registry.yml"
    path.write_text("stores:\n  - {name: s, type: REDIS, config: {host: r, port: 6379}}\n")

    assert load_registry(str(path)).get_store("s").version == 1


def test_read_document_errors(tmp_path: Path):
    path = tmp_path / "registry.yml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValidationError):
        read_document(str(path))

    path.write_text("stores: [\n")
    with pytest.raises(ValueError):
        read_document(str(path))

    with pytest.raises(FileNotFoundError):
        read_document(str(tmp_path / "missing.yml"))


def _store_document(exclude):
    return {
        "feature_sets": [
            {"project": "p", "name": "a", "entities": [{"name": "id", "value_type": "int64"}]}
        ],
        "stores": [
            {
                "name": "s",
                "type": "redis",
                "config": {"host": "r", "port": 1},
                "subscriptions": [{"project": "p", "name": "*", "exclude": exclude}],
            }
        ],
    }


def test_quoted_exclude_flag_read_as_boolean(tmp_path: Path):
    path = tmp_path / "registry.yml"
    path.write_text(
        "feature_sets:\n"
        "  - {project: p, name: a, entities: [{name: id, value_type: int64}]}\n"
        "stores:\n"
        "  - name: s\n"
        "    type: REDIS\n"
        "    config: {host: r, port: 6379}\n"
        "    subscriptions: [{project: p, name: '*', exclude: 'false'}]\n"
    )

    registry = load_registry(str(path))

    assert registry.get_subscribed_stores(ref("p/a")) == {"s"}


@pytest.mark.parametrize("flag, subscribed", [("TRUE", set()), ("False", {"s"}), (True, set())])
def test_exclude_flag_spellings(flag, subscribed):
    registry = apply_document(Registry(), _store_document(flag))

    assert registry.get_subscribed_stores(ref("p/a")) == subscribed


@pytest.mark.parametrize("flag", ["maybe", "0", 1, None])
def test_unknown_exclude_flag_rejected(flag):
    with pytest.raises(ValidationError):
        apply_document(Registry(), _store_document(flag))
