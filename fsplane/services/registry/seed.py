"""Load a registry from a declarative YAML document.

The document lists feature sets and stores in the same shape the admin API
accepts::

    feature_sets:
      - project: fraud
        name: txn
        entities: [{name: customer_id, value_type: INT64}]
        features: [{name: amount, value_type: DOUBLE}]
    stores:
      - name: online
        type: REDIS
        config: {host: redis, port: 6379}
        subscriptions:
          - {project: "*", name: "*"}
          - {project: fraud, name: "*", exclude: true}
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import yaml

from fsplane.foundation.errors import ValidationError

from .models import FeatureSet, Store
from .registry import Registry
from .repository import RegistryRepository

logger = logging.getLogger(__name__)


def read_document(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            try:
                data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                logger.error("Failed to parse registry file %s: %s", path, exc)
                raise ValueError(f"Failed to parse registry file {path}") from exc
    except (FileNotFoundError, OSError) as exc:
        logger.error("Unable to open registry file %s: %s", path, exc)
        raise
    if not isinstance(data, dict):
        raise ValidationError("registry document must be a mapping")
    return data


def apply_document(registry: Registry, document: Mapping[str, Any]) -> Registry:
    """Register every feature set and store of ``document`` into ``registry``."""
    for entry in document.get("feature_sets") or []:
        registry.register_feature_set(FeatureSet.from_mapping(entry))
    for entry in document.get("stores") or []:
        registry.apply_store(Store.from_mapping(entry))
    return registry


def load_registry(path: str, repository: RegistryRepository | None = None) -> Registry:
    return apply_document(Registry(repository), read_document(path))


__all__ = ["read_document", "apply_document", "load_registry"]
