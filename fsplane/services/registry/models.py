"""Immutable registry entities: feature sets, subscriptions and stores."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from fsplane.foundation.errors import UnsupportedStoreType, ValidationError, VersionConflict

from .store_config import StoreConfig, StoreType, coerce_store_type, parse_config

WILDCARD = "*"

_LITERAL_RE = re.compile(r"^[^\s*:,/]+$")
_NAME_RE = re.compile(r"^[^\s/]+$")

VALUE_TYPES = frozenset(
    {
        "BYTES",
        "STRING",
        "INT32",
        "INT64",
        "DOUBLE",
        "FLOAT",
        "BOOL",
        "BYTES_LIST",
        "STRING_LIST",
        "INT32_LIST",
        "INT64_LIST",
        "DOUBLE_LIST",
        "FLOAT_LIST",
        "BOOL_LIST",
    }
)


def _require_name(value: object, what: str) -> str:
    if not isinstance(value, str) or not _NAME_RE.match(value):
        raise ValidationError(f"{what} must be a non-empty string without '/' or spaces: {value!r}")
    return value


@dataclass(frozen=True, order=True)
class FeatureSetReference:
    """``(project, name)`` identity of a feature set."""

    project: str
    name: str

    def __post_init__(self) -> None:
        _require_name(self.project, "feature set project")
        _require_name(self.name, "feature set name")

    def __str__(self) -> str:
        return f"{self.project}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> "FeatureSetReference":
        project, sep, name = str(value).strip().partition("/")
        if not sep:
            raise ValidationError(f"feature set reference must be 'project/name': {value!r}")
        return cls(project, name)


@dataclass(frozen=True)
class FieldSpec:
    name: str
    value_type: str

    def __post_init__(self) -> None:
        _require_name(self.name, "field name")
        if self.value_type not in VALUE_TYPES:
            raise ValidationError(f"unknown value type {self.value_type!r} for field {self.name!r}")


@dataclass(frozen=True)
class SourceSpec:
    """Stream source a feature set is ingested from."""

    type: str = "KAFKA"
    bootstrap_servers: str = ""
    topic: str = ""

    def descriptor(self) -> str:
        return f"{self.type.lower()}://{self.bootstrap_servers}/{self.topic}"


@dataclass(frozen=True)
class FeatureSet:
    reference: FeatureSetReference
    entities: tuple[FieldSpec, ...]
    features: tuple[FieldSpec, ...] = ()
    source: SourceSpec = field(default_factory=SourceSpec)
    max_age_seconds: int = 0
    labels: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if not self.entities:
            raise ValidationError(f"feature set {self.reference} must declare at least one entity")
        names = [f.name for f in self.entities] + [f.name for f in self.features]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValidationError(f"feature set {self.reference} has duplicate fields: {dupes}")
        if self.max_age_seconds < 0:
            raise ValidationError("max_age_seconds must be >= 0")

    def check_compatible(self, update: "FeatureSet") -> None:
        """Raise :class:`VersionConflict` unless ``update`` may replace ``self``.

        Entities must be identical; existing features keep their name and value
        type; new features may be appended.
        """

        if update.reference != self.reference:
            raise VersionConflict(f"reference mismatch: {self.reference} != {update.reference}")
        if update.entities != self.entities:
            raise VersionConflict(f"{self.reference}: entities cannot change")
        new_features = {f.name: f.value_type for f in update.features}
        for feature in self.features:
            new_type = new_features.get(feature.name)
            if new_type is None:
                raise VersionConflict(f"{self.reference}: feature {feature.name!r} cannot be removed")
            if new_type != feature.value_type:
                raise VersionConflict(
                    f"{self.reference}: feature {feature.name!r} cannot change type "
                    f"{feature.value_type} -> {new_type}"
                )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "FeatureSet":
        try:
            reference = FeatureSetReference(str(payload["project"]), str(payload["name"]))
        except KeyError as exc:
            raise ValidationError(f"feature set payload missing {exc.args[0]!r}") from exc
        source = payload.get("source") or {}
        if not isinstance(source, Mapping):
            raise ValidationError("feature set source must be a mapping")
        labels = payload.get("labels") or {}
        return cls(
            reference=reference,
            entities=tuple(_fields(payload.get("entities"), "entities")),
            features=tuple(_fields(payload.get("features"), "features")),
            source=SourceSpec(
                type=str(source.get("type", "KAFKA")).upper(),
                bootstrap_servers=str(source.get("bootstrap_servers", "")),
                topic=str(source.get("topic", "")),
            ),
            max_age_seconds=int(payload.get("max_age_seconds", 0) or 0),
            labels=tuple(sorted((str(k), str(v)) for k, v in dict(labels).items())),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "project": self.reference.project,
            "name": self.reference.name,
            "entities": [{"name": f.name, "value_type": f.value_type} for f in self.entities],
            "features": [{"name": f.name, "value_type": f.value_type} for f in self.features],
            "source": {
                "type": self.source.type,
                "bootstrap_servers": self.source.bootstrap_servers,
                "topic": self.source.topic,
            },
            "max_age_seconds": self.max_age_seconds,
            "labels": dict(self.labels),
        }


def _fields(raw: object, what: str) -> Iterable[FieldSpec]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(f"{what} must be a list")
    out = []
    for entry in raw:
        if not isinstance(entry, Mapping):
            raise ValidationError(f"{what} entries must be mappings")
        out.append(FieldSpec(str(entry.get("name", "")), str(entry.get("value_type", "")).upper()))
    return out


def validate_pattern(pattern: object, component: str) -> str:
    if not isinstance(pattern, str):
        raise ValidationError(f"{component} pattern must be a string")
    if pattern == WILDCARD or _LITERAL_RE.match(pattern):
        return pattern
    if not pattern:
        raise ValidationError(f"{component} pattern must not be empty")
    raise ValidationError(f"malformed {component} pattern {pattern!r}")


def _exclude_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
    raise ValidationError(f"subscription exclude flag must be true or false, got {value!r}")


@dataclass(frozen=True)
class Subscription:
    """Pattern rule selecting feature sets for a store."""

    project_pattern: str
    name_pattern: str
    exclude: bool = False

    def __post_init__(self) -> None:
        validate_pattern(self.project_pattern, "project")
        validate_pattern(self.name_pattern, "name")
        if not isinstance(self.exclude, bool):
            raise ValidationError("subscription exclude flag must be a boolean")

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Subscription":
        return cls(
            str(payload.get("project", "")),
            str(payload.get("name", "")),
            _exclude_flag(payload.get("exclude", False)),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {"project": self.project_pattern, "name": self.name_pattern, "exclude": self.exclude}


@dataclass(frozen=True)
class Store:
    name: str
    type: StoreType
    config: StoreConfig
    subscriptions: tuple[Subscription, ...] = ()
    version: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValidationError("store name must be a non-empty string")
        try:
            store_type = coerce_store_type(self.type)
        except UnsupportedStoreType as exc:
            raise ValidationError(str(exc)) from exc
        object.__setattr__(self, "type", store_type)
        object.__setattr__(self, "config", parse_config(store_type, self.config))
        object.__setattr__(self, "subscriptions", tuple(self.subscriptions))

    def same_content(self, other: "Store") -> bool:
        """Compare everything but the resource version."""
        return (
            self.name == other.name
            and self.type == other.type
            and self.config == other.config
            and self.subscriptions == other.subscriptions
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Store":
        if "name" not in payload or "type" not in payload:
            raise ValidationError("store payload requires 'name' and 'type'")
        subs = payload.get("subscriptions") or []
        if not isinstance(subs, list):
            raise ValidationError("store subscriptions must be a list")
        config = payload.get("config") or {}
        if not isinstance(config, Mapping):
            raise ValidationError("store config must be a mapping")
        return cls(
            name=str(payload["name"]),
            type=payload["type"],
            config=parse_config(payload["type"], config),
            subscriptions=tuple(Subscription.from_mapping(s) for s in subs),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "config": self.config.model_dump(),
            "subscriptions": [s.to_mapping() for s in self.subscriptions],
            "version": self.version,
        }


@dataclass(frozen=True)
class StoreRecord:
    """Persisted layout of a store row."""

    name: str
    type: str
    config: bytes
    subscriptions: str
    version: int = 0


__all__ = [
    "WILDCARD",
    "VALUE_TYPES",
    "FeatureSetReference",
    "FieldSpec",
    "SourceSpec",
    "FeatureSet",
    "Subscription",
    "Store",
    "StoreRecord",
    "validate_pattern",
]
