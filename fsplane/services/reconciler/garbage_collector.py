from __future__ import annotations

"""Garbage collection of finished ingestion jobs."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fsplane.services.registry.registry import Registry

from . import metrics
from .job_store import JobStore
from .models import IngestionJob, JobStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GcRule:
    ttl: timedelta


DEFAULT_POLICY = {
    JobStatus.ABORTED: GcRule(ttl=timedelta(days=1)),
    JobStatus.ERROR: GcRule(ttl=timedelta(days=7)),
}


class JobGarbageCollector:
    """Remove ``ABORTED``/``ERROR`` jobs past their retention window.

    An ``ERROR`` job whose store still exists stays visible to operators
    until it is replaced or the store is deleted.
    """

    def __init__(
        self,
        jobs: JobStore,
        *,
        policy: dict[JobStatus, GcRule] | None = None,
        batch_size: int = 50,
        registry: Registry | None = None,
    ) -> None:
        self.jobs = jobs
        self.policy = policy or DEFAULT_POLICY
        self.batch_size = batch_size
        self.registry = registry

    def _expired(self, job: IngestionJob, now: datetime) -> bool:
        rule = self.policy.get(job.status)
        if rule is None:
            return False
        if job.status is JobStatus.ERROR and self.registry is not None:
            if self.registry.get_store(job.store_name) is not None:
                return False
        return now - job.updated_at >= rule.ttl

    async def collect(self, now: Optional[datetime] = None) -> list[IngestionJob]:
        """Run one GC batch and return the removed jobs."""
        now = now or utcnow()
        candidates = [j for j in await self.jobs.list() if self._expired(j, now)]
        candidates.sort(key=lambda j: j.updated_at)
        removed = candidates[: self.batch_size]
        for job in removed:
            await self.jobs.delete(job.id)
        if removed:
            logger.info("garbage collected %d job(s)", len(removed))
        metrics.gc_last_run_timestamp.set(now.timestamp())
        return removed


__all__ = ["GcRule", "DEFAULT_POLICY", "JobGarbageCollector"]
