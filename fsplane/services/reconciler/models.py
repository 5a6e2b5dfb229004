"""Job-side value types shared by the planner, diff and reconciler."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from fsplane.foundation.common import hash_parts
from fsplane.services.registry.models import FeatureSetReference
from fsplane.services.registry.store_config import StoreType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    ABORTING = "ABORTING"
    ABORTED = "ABORTED"
    ERROR = "ERROR"


def target_fingerprint(config_version: str, refs: Iterable[FeatureSetReference]) -> str:
    """Digest of what a job ingests: the store config plus its feature sets."""
    return hash_parts([config_version, *sorted(str(r) for r in refs)])


@dataclass(frozen=True)
class DesiredJob:
    store_name: str
    store_type: StoreType
    config_version: str
    feature_set_refs: frozenset[FeatureSetReference]
    sources: tuple[str, ...] = ()

    @property
    def target_fingerprint(self) -> str:
        return target_fingerprint(self.config_version, self.feature_set_refs)


@dataclass
class IngestionJob:
    """Mutable record of a job owned by the reconciler.

    ``id`` survives replacements; ``generation`` counts them.
    """

    store_name: str
    config_version: str
    feature_set_refs: frozenset[FeatureSetReference]
    source_descriptor: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    executor_handle: str | None = None
    attempts: int = 0
    next_retry_at: datetime | None = None
    replacement_key: str | None = None
    generation: int = 0
    last_error: str | None = None
    previous_handles: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def target_fingerprint(self) -> str:
        return target_fingerprint(self.config_version, self.feature_set_refs)

    @property
    def is_live(self) -> bool:
        return self.status is not JobStatus.ABORTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "store_name": self.store_name,
            "source_descriptor": self.source_descriptor,
            "feature_set_refs": sorted(str(r) for r in self.feature_set_refs),
            "config_version": self.config_version,
            "status": self.status.value,
            "executor_handle": self.executor_handle,
            "attempts": self.attempts,
            "next_retry_at": _iso(self.next_retry_at),
            "replacement_key": self.replacement_key,
            "generation": self.generation,
            "last_error": self.last_error,
            "previous_handles": list(self.previous_handles),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IngestionJob":
        return cls(
            id=data["id"],
            store_name=data["store_name"],
            source_descriptor=data.get("source_descriptor", ""),
            feature_set_refs=frozenset(
                FeatureSetReference.parse(r) for r in data.get("feature_set_refs", [])
            ),
            config_version=data["config_version"],
            status=JobStatus(data["status"]),
            executor_handle=data.get("executor_handle"),
            attempts=int(data.get("attempts", 0)),
            next_retry_at=_parse_iso(data.get("next_retry_at")),
            replacement_key=data.get("replacement_key"),
            generation=int(data.get("generation", 0)),
            last_error=data.get("last_error"),
            previous_handles=list(data.get("previous_handles", [])),
            created_at=_parse_iso(data.get("created_at")) or utcnow(),
            updated_at=_parse_iso(data.get("updated_at")) or utcnow(),
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class JobSpec:
    """What is handed to the executor for one submission."""

    job_id: str
    store_name: str
    store_type: StoreType
    store_config: dict[str, Any]
    feature_set_refs: tuple[str, ...]
    sources: tuple[str, ...]
    idempotency_key: str
    resume_from: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "store": {
                "name": self.store_name,
                "type": self.store_type.value,
                "config": self.store_config,
            },
            "feature_sets": list(self.feature_set_refs),
            "sources": list(self.sources),
            "idempotency_key": self.idempotency_key,
            "resume_from": self.resume_from,
        }


class ActionKind(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    STOP = "STOP"
    RETRY = "RETRY"


@dataclass(frozen=True)
class JobAction:
    kind: ActionKind
    store_name: str
    desired: DesiredJob | None = None
    job_id: str | None = None


def current_jobs(jobs: Iterable[IngestionJob]) -> dict[str, IngestionJob]:
    """Index jobs by store, preferring a live job over an aborted one."""

    out: dict[str, IngestionJob] = {}
    for job in jobs:
        existing = out.get(job.store_name)
        if existing is None:
            out[job.store_name] = job
            continue
        if existing.is_live and not job.is_live:
            continue
        if job.is_live and not existing.is_live:
            out[job.store_name] = job
        elif job.updated_at > existing.updated_at:
            out[job.store_name] = job
    return out


__all__ = [
    "JobStatus",
    "DesiredJob",
    "IngestionJob",
    "JobSpec",
    "ActionKind",
    "JobAction",
    "current_jobs",
    "target_fingerprint",
    "utcnow",
]
