"""Ingestion job lifecycle."""

from __future__ import annotations

from enum import Enum

from fsplane.foundation.common import Machine, State

from .models import IngestionJob, JobStatus, utcnow


class JobEvent(str, Enum):
    CONFIRM = "CONFIRM"
    FAIL = "FAIL"
    ABORT = "ABORT"
    TERMINATED = "TERMINATED"
    REPLACE = "REPLACE"
    RETRY = "RETRY"


JOB_MACHINE = Machine(
    {
        "id": "ingestion-job",
        "initial": JobStatus.PENDING.value,
        "states": {
            "PENDING": {"on": {"CONFIRM": "RUNNING", "FAIL": "ERROR", "ABORT": "ABORTING"}},
            "RUNNING": {"on": {"FAIL": "ERROR", "ABORT": "ABORTING"}},
            "ABORTING": {"on": {"TERMINATED": "ABORTED", "REPLACE": "PENDING", "FAIL": "ERROR"}},
            "ABORTED": {},
            "ERROR": {"on": {"RETRY": "PENDING", "ABORT": "ABORTING"}},
        },
    }
)


def next_status(status: JobStatus, event: JobEvent) -> JobStatus:
    """Return the status reached from ``status`` on ``event``.

    Raises :class:`~fsplane.foundation.errors.TransitionError` when the
    event is not valid in ``status``.
    """

    state = JOB_MACHINE.transition(State(status.value), event.value)
    return JobStatus(state.value)


def apply_event(job: IngestionJob, event: JobEvent) -> IngestionJob:
    job.status = next_status(job.status, event)
    job.updated_at = utcnow()
    return job


__all__ = ["JobEvent", "JOB_MACHINE", "next_status", "apply_event"]
