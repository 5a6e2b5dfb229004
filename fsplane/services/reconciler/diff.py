"""Diff current jobs against a desired topology."""

from __future__ import annotations

from datetime import datetime
from typing import Mapping

from .models import ActionKind, DesiredJob, IngestionJob, JobAction, JobStatus, utcnow


def action_for(
    job: IngestionJob | None,
    desired: DesiredJob | None,
    *,
    now: datetime,
) -> ActionKind | None:
    """Decide what to do with one store, or ``None`` when it is converged."""

    if desired is None:
        if job is None or job.status is JobStatus.ABORTED:
            return None
        if job.status is JobStatus.ABORTING and job.executor_handle is not None:
            # waiting for the executor to confirm termination
            return None
        return ActionKind.STOP

    if job is None or job.status is JobStatus.ABORTED:
        return ActionKind.CREATE
    changed = job.target_fingerprint != desired.target_fingerprint
    if job.status is JobStatus.ERROR:
        if changed:
            return ActionKind.UPDATE
        if job.next_retry_at is not None and now >= job.next_retry_at:
            return ActionKind.RETRY
        # exhausted or still backing off
        return None
    if changed or job.status is JobStatus.ABORTING:
        return ActionKind.UPDATE
    if job.status is JobStatus.PENDING and job.executor_handle is None:
        # submission was interrupted before a handle was recorded
        return ActionKind.RETRY
    return None


def diff_jobs(
    current: Mapping[str, IngestionJob],
    desired: Mapping[str, DesiredJob],
    *,
    now: datetime | None = None,
) -> list[JobAction]:
    """Return the actions converging ``current`` onto ``desired``.

    Pure; actions are ordered by store name. Running the diff on a converged
    topology yields an empty list.
    """

    now = now or utcnow()
    actions: list[JobAction] = []
    for name in sorted(set(current) | set(desired)):
        job = current.get(name)
        want = desired.get(name)
        kind = action_for(job, want, now=now)
        if kind is None:
            continue
        actions.append(
            JobAction(
                kind=kind,
                store_name=name,
                desired=want,
                job_id=job.id if job is not None else None,
            )
        )
    return actions


__all__ = ["action_for", "diff_jobs"]
