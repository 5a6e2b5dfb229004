"""Reconciliation loop converging ingestion jobs onto the planned topology."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Optional

from opentelemetry import trace

from fsplane.foundation.errors import ConflictError, ExecutorError, TransitionError
from fsplane.services.registry.registry import Registry
from fsplane.services.registry.snapshot import RegistrySnapshot

from . import metrics
from .alerts import AlertManager
from .diff import action_for, diff_jobs
from .executor import ExecutorClient, ExecutorGateway, ExecutorStatus, RetryPolicy
from .job_fsm import JobEvent, apply_event
from .job_store import JobStore
from .models import (
    ActionKind,
    DesiredJob,
    IngestionJob,
    JobAction,
    JobSpec,
    JobStatus,
    current_jobs,
    utcnow,
)
from .planner import TopologyPlan, plan

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class CycleResult:
    """Outcome of one :meth:`Reconciler.reconcile_once` call."""

    version: int
    actions: list[JobAction] = field(default_factory=list)
    superseded: int = 0
    conflict: bool = False

    @property
    def converged(self) -> bool:
        return not self.actions and not self.conflict


@dataclass
class _StoreLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class Reconciler:
    """Drives jobs in ``jobs`` towards the topology planned from ``registry``.

    Planning is synchronous and works off one immutable snapshot. Actions run
    concurrently across stores, bounded by ``max_workers``, and strictly one at
    a time per store. Before an action touches the executor the snapshot
    version it was planned from is compared with the registry; a newer version
    aborts the cycle with :class:`ConflictError` and a fresh plan is computed.
    """

    def __init__(
        self,
        registry: Registry,
        jobs: JobStore,
        executor: ExecutorGateway | ExecutorClient,
        *,
        max_workers: int = 8,
        conflict_retry_limit: int = 3,
        job_retry: RetryPolicy | None = None,
        poll_interval: float = 30.0,
        alerts: AlertManager | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.jobs = jobs
        self.executor = (
            executor if isinstance(executor, ExecutorGateway) else ExecutorGateway(executor)
        )
        self.max_workers = max_workers
        self.conflict_retry_limit = conflict_retry_limit
        self.job_retry = job_retry or RetryPolicy(
            attempts=5, initial_delay=10.0, max_delay=600.0
        )
        self.poll_interval = poll_interval
        self.alerts = alerts
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_workers)
        self._locks: dict[str, _StoreLock] = {}
        self._outbox: list[tuple[str, str, str]] = []
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event = asyncio.Event()
        self._wake = asyncio.Event()
        self._unsubscribe: Callable[[], None] | None = None

    # cycle ----------------------------------------------------------------

    async def reconcile_once(self) -> CycleResult:
        """Plan against the latest snapshot and apply the resulting actions."""

        started = time.perf_counter()
        superseded = 0
        with tracer.start_as_current_span("reconcile.cycle") as span:
            while True:
                snapshot = self.registry.snapshot()
                topology = plan(snapshot)
                try:
                    result = await self._apply(snapshot, topology)
                except ConflictError as exc:
                    superseded += 1
                    metrics.reconcile_conflicts_total.inc()
                    if superseded >= self.conflict_retry_limit:
                        logger.error(
                            "giving up after %d superseded cycles (last planned at v%d): %s",
                            superseded,
                            topology.version,
                            exc,
                        )
                        await self._alert_slack(
                            f"reconciliation superseded {superseded} times in a row"
                        )
                        result = CycleResult(
                            version=topology.version, superseded=superseded, conflict=True
                        )
                        break
                    logger.warning(
                        "cycle planned at registry v%d superseded: %s", topology.version, exc
                    )
                    continue
                result.superseded = superseded
                break
            span.set_attribute("registry.version", result.version)
            span.set_attribute("reconcile.actions", len(result.actions))
            span.set_attribute("reconcile.superseded", superseded)

        metrics.reconcile_cycles_total.inc()
        metrics.registry_version.set(result.version)
        metrics.observe_cycle_duration((time.perf_counter() - started) * 1000)
        await self._refresh_job_gauge()
        return result

    async def _apply(self, snapshot: RegistrySnapshot, topology: TopologyPlan) -> CycleResult:
        jobs = current_jobs(await self.jobs.list())
        actions = diff_jobs(jobs, topology.desired, now=self._clock())
        if not actions:
            return CycleResult(version=topology.version)
        self._check_version(topology.version)
        logger.info(
            "registry v%d: %d action(s) %s",
            topology.version,
            len(actions),
            [f"{a.kind.value}:{a.store_name}" for a in actions],
        )
        outcomes = await asyncio.gather(
            *(self._dispatch(a, snapshot, topology) for a in actions),
            return_exceptions=True,
        )
        conflict: ConflictError | None = None
        applied: list[JobAction] = []
        for outcome in outcomes:
            if isinstance(outcome, ConflictError):
                conflict = conflict or outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome is not None:
                applied.append(outcome)
        if conflict is not None:
            raise conflict
        return CycleResult(version=topology.version, actions=applied)

    def _check_version(self, planned: int) -> None:
        latest = self.registry.version
        if latest != planned:
            raise ConflictError(
                f"registry moved from v{planned} to v{latest}",
                expected=planned,
                actual=latest,
            )

    @asynccontextmanager
    async def _store_lock(self, store_name: str) -> AsyncIterator[None]:
        """Serialize work on one store; the entry lives only while in use."""
        entry = self._locks.get(store_name)
        if entry is None:
            entry = self._locks[store_name] = _StoreLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(store_name) is entry:
                del self._locks[store_name]

    async def _dispatch(
        self, action: JobAction, snapshot: RegistrySnapshot, topology: TopologyPlan
    ) -> JobAction | None:
        try:
            return await self._dispatch_locked(action, snapshot, topology)
        finally:
            await self._flush_alerts()

    async def _dispatch_locked(
        self, action: JobAction, snapshot: RegistrySnapshot, topology: TopologyPlan
    ) -> JobAction | None:
        async with self._semaphore:
            async with self._store_lock(action.store_name):
                self._check_version(topology.version)
                # the job may have moved since the diff was computed
                job = current_jobs(await self.jobs.get_by_store(action.store_name)).get(
                    action.store_name
                )
                desired = topology.desired.get(action.store_name)
                kind = action_for(job, desired, now=self._clock())
                if kind is None:
                    return None
                with tracer.start_as_current_span("reconcile.action") as span:
                    span.set_attribute("store", action.store_name)
                    span.set_attribute("action", kind.value)
                    if kind is ActionKind.STOP:
                        await self._stop(_require(job, kind, action.store_name))
                    else:
                        if desired is None:
                            raise TransitionError(
                                f"{kind.value} for store {action.store_name!r} without a desired job"
                            )
                        handler = {
                            ActionKind.CREATE: self._create,
                            ActionKind.UPDATE: self._update,
                            ActionKind.RETRY: self._retry,
                        }[kind]
                        job = await handler(job, desired, snapshot)
                metrics.record_action(kind.value)
                return JobAction(
                    kind=kind,
                    store_name=action.store_name,
                    desired=desired,
                    job_id=job.id if job is not None else None,
                )

    # actions --------------------------------------------------------------

    @staticmethod
    def submission_key(job: IngestionJob, desired: DesiredJob) -> str:
        return f"{job.id}:{desired.target_fingerprint}:{job.generation}"

    def _job_spec(
        self,
        job: IngestionJob,
        desired: DesiredJob,
        snapshot: RegistrySnapshot,
        key: str,
        resume_from: str | None,
    ) -> JobSpec:
        store = snapshot.stores[desired.store_name]
        return JobSpec(
            job_id=job.id,
            store_name=desired.store_name,
            store_type=desired.store_type,
            store_config=store.config.model_dump(mode="json"),
            feature_set_refs=tuple(sorted(str(r) for r in desired.feature_set_refs)),
            sources=desired.sources,
            idempotency_key=key,
            resume_from=resume_from,
        )

    def _retarget(self, job: IngestionJob, desired: DesiredJob) -> None:
        job.config_version = desired.config_version
        job.feature_set_refs = desired.feature_set_refs
        job.source_descriptor = ",".join(desired.sources)

    async def _create(
        self, old: IngestionJob | None, desired: DesiredJob, snapshot: RegistrySnapshot
    ) -> IngestionJob:
        job = IngestionJob(
            store_name=desired.store_name,
            config_version=desired.config_version,
            feature_set_refs=desired.feature_set_refs,
            source_descriptor=",".join(desired.sources),
        )
        job.replacement_key = self.submission_key(job, desired)
        # persisted before submitting so an interrupted submit is retried with the same key
        await self.jobs.put(job)
        logger.info("creating job %s for store %s", job.id, job.store_name)
        await self._submit(job, desired, snapshot, resume_from=None)
        return job

    async def _update(
        self, job: IngestionJob | None, desired: DesiredJob, snapshot: RegistrySnapshot
    ) -> IngestionJob:
        job = _require(job, ActionKind.UPDATE, desired.store_name)
        old_handle = job.executor_handle
        if job.status is not JobStatus.ABORTING:
            apply_event(job, JobEvent.ABORT)
            await self.jobs.put(job)
        if old_handle is not None:
            if not await self._request_stop(job, old_handle):
                # stays ABORTING with the old handle; the next cycle drains it again
                logger.warning(
                    "job %s for store %s: replacement deferred until %s stops",
                    job.id,
                    job.store_name,
                    old_handle,
                )
                return job
            job.previous_handles.append(old_handle)
        job.generation += 1
        self._retarget(job, desired)
        job.executor_handle = None
        job.attempts = 0
        job.next_retry_at = None
        job.last_error = None
        job.replacement_key = self.submission_key(job, desired)
        apply_event(job, JobEvent.REPLACE)
        await self.jobs.put(job)
        resume_from = job.previous_handles[-1] if job.previous_handles else None
        logger.info(
            "replacing job %s for store %s (generation %d, resume from %s)",
            job.id,
            job.store_name,
            job.generation,
            resume_from,
        )
        await self._submit(job, desired, snapshot, resume_from=resume_from)
        return job

    async def _retry(
        self, job: IngestionJob | None, desired: DesiredJob, snapshot: RegistrySnapshot
    ) -> IngestionJob:
        job = _require(job, ActionKind.RETRY, desired.store_name)
        if job.status is JobStatus.ERROR:
            apply_event(job, JobEvent.RETRY)
            if job.executor_handle is not None:
                job.previous_handles.append(job.executor_handle)
            job.executor_handle = None
            job.generation += 1
            job.next_retry_at = None
            job.replacement_key = self.submission_key(job, desired)
            await self.jobs.put(job)
            logger.info(
                "retrying job %s for store %s (attempt %d)",
                job.id,
                job.store_name,
                job.attempts + 1,
            )
        elif job.replacement_key is None:
            job.replacement_key = self.submission_key(job, desired)
            await self.jobs.put(job)
        resume_from = job.previous_handles[-1] if job.previous_handles else None
        await self._submit(job, desired, snapshot, resume_from=resume_from)
        return job

    async def _submit(
        self,
        job: IngestionJob,
        desired: DesiredJob,
        snapshot: RegistrySnapshot,
        *,
        resume_from: str | None,
    ) -> None:
        key = job.replacement_key
        if key is None:
            raise TransitionError(f"job {job.id} has no submission key")
        spec = self._job_spec(job, desired, snapshot, key, resume_from)
        try:
            handle = await self.executor.submit(spec)
        except ExecutorError as exc:
            logger.warning("submit of job %s for store %s failed: %s", job.id, job.store_name, exc)
            await self._fail(job, f"submit failed: {exc}")
            await self.jobs.put(job)
            return
        job.executor_handle = handle
        job.updated_at = utcnow()
        await self.jobs.put(job)

    async def _stop(self, job: IngestionJob) -> None:
        if job.status is not JobStatus.ABORTING:
            apply_event(job, JobEvent.ABORT)
            await self.jobs.put(job)
        handle = job.executor_handle
        if handle is None:
            apply_event(job, JobEvent.TERMINATED)
            await self.jobs.put(job)
            logger.info("job %s for store %s aborted", job.id, job.store_name)
            return
        if not await self._request_stop(job, handle):
            return
        try:
            status = await self.executor.status(handle)
        except ExecutorError as exc:
            logger.warning("job %s: termination not confirmed yet: %s", job.id, exc)
            return
        if status is not ExecutorStatus.RUNNING:
            apply_event(job, JobEvent.TERMINATED)
            await self.jobs.put(job)
            logger.info("job %s for store %s aborted", job.id, job.store_name)

    async def _request_stop(self, job: IngestionJob, handle: str) -> bool:
        """Return whether the executor received the stop request."""
        try:
            acknowledged = await self.executor.stop(handle)
        except ExecutorError as exc:
            logger.warning("stop of %s for job %s failed: %s", handle, job.id, exc)
            return False
        if not acknowledged:
            logger.info("executor has no running %s for job %s", handle, job.id)
        return True

    async def _fail(self, job: IngestionJob, reason: str) -> None:
        apply_event(job, JobEvent.FAIL)
        job.attempts += 1
        job.last_error = reason
        if job.attempts > self.job_retry.attempts:
            job.next_retry_at = None
            logger.error(
                "job %s for store %s exhausted %d retries: %s",
                job.id,
                job.store_name,
                self.job_retry.attempts,
                reason,
            )
            # sent once the store lock is released
            self._outbox.append(
                (
                    f"ingestion job for store {job.store_name} failed permanently: {reason}",
                    job.store_name,
                    job.id,
                )
            )
        else:
            delay = self.job_retry.delay_for(job.attempts)
            job.next_retry_at = self._clock() + timedelta(seconds=delay)
            logger.info(
                "job %s for store %s failed (%s); retry %d in %.1fs",
                job.id,
                job.store_name,
                reason,
                job.attempts,
                delay,
            )

    # status feedback ------------------------------------------------------

    async def poll_jobs(self) -> list[IngestionJob]:
        """Query the executor for every job with a handle and apply the result."""

        updated: list[IngestionJob] = []
        for job in await self.jobs.list():
            if job.executor_handle is None or job.status in (JobStatus.ABORTED, JobStatus.ERROR):
                continue
            try:
                status = await self.executor.status(job.executor_handle)
            except ExecutorError as exc:
                logger.warning("status of job %s unavailable: %s", job.id, exc)
                continue
            result = await self.handle_status(job.id, status, handle=job.executor_handle)
            if result is not None:
                updated.append(result)
        await self._refresh_job_gauge()
        return updated

    async def handle_status(
        self, job_id: str, status: ExecutorStatus, *, handle: str | None = None
    ) -> IngestionJob | None:
        """Feed one executor status report into the job state machine.

        Reports for a handle the job no longer runs are ignored.
        """

        known = await self.jobs.get(job_id)
        if known is None:
            logger.warning("status %s for unknown job %s", status.value, job_id)
            return None
        try:
            async with self._store_lock(known.store_name):
                job = await self.jobs.get(job_id)
                if job is None:
                    return None
                if handle is not None and job.executor_handle != handle:
                    logger.debug(
                        "ignoring %s for stale handle %s of job %s", status.value, handle, job_id
                    )
                    return job
                if await self._apply_status(job, status):
                    await self.jobs.put(job)
                return job
        finally:
            await self._flush_alerts()

    async def _apply_status(self, job: IngestionJob, status: ExecutorStatus) -> bool:
        if job.status is JobStatus.ABORTING:
            if status is ExecutorStatus.RUNNING:
                if job.executor_handle is not None:
                    await self._request_stop(job, job.executor_handle)
                return False
            apply_event(job, JobEvent.TERMINATED)
            logger.info("job %s for store %s aborted", job.id, job.store_name)
            return True
        if job.status not in (JobStatus.PENDING, JobStatus.RUNNING):
            return False
        if status is ExecutorStatus.RUNNING:
            if job.status is JobStatus.RUNNING:
                return False
            apply_event(job, JobEvent.CONFIRM)
            job.next_retry_at = None
            job.last_error = None
            return True
        if status is ExecutorStatus.FAILED:
            await self._fail(job, "executor reported failure")
        else:
            await self._fail(job, "streaming job exited unexpectedly")
        return True

    # operator -------------------------------------------------------------

    async def list_jobs(self) -> list[IngestionJob]:
        return sorted(await self.jobs.list(), key=lambda j: (j.store_name, j.created_at))

    async def reset_job(self, store_name: str) -> IngestionJob:
        """Give the store's errored job a fresh retry budget."""

        async with self._store_lock(store_name):
            job = current_jobs(await self.jobs.get_by_store(store_name)).get(store_name)
            if job is None:
                raise KeyError(store_name)
            if job.status is JobStatus.ERROR:
                job.attempts = 0
                job.next_retry_at = self._clock()
                job.updated_at = utcnow()
                await self.jobs.put(job)
                logger.info("retry budget of job %s for store %s reset", job.id, store_name)
        self.notify()
        return job

    async def _refresh_job_gauge(self) -> None:
        counts = Counter(j.status.value for j in await self.jobs.list())
        metrics.set_job_counts({s.value: counts.get(s.value, 0) for s in JobStatus})

    async def _alert_slack(self, message: str) -> None:
        if self.alerts is not None:
            await self.alerts.send_slack(message)

    async def _flush_alerts(self) -> None:
        pending, self._outbox = self._outbox, []
        if self.alerts is None:
            return
        for message, store, job_id in pending:
            await self.alerts.send_pagerduty(message, store=store, job_id=job_id)

    # background loop ------------------------------------------------------

    def notify(self) -> None:
        """Wake the background loop; safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._wake.set)

    async def start(self) -> None:
        """Begin reconciling in the background."""
        if self._task is None:
            self._loop = asyncio.get_running_loop()
            self._stop_event.clear()
            self._unsubscribe = self.registry.subscribe(lambda _snapshot: self.notify())
            self._task = asyncio.create_task(self.run())

    async def run(self) -> None:
        """Reconcile on every registry change, or every ``poll_interval``."""
        try:
            while not self._stop_event.is_set():
                self._wake.clear()
                try:
                    await self.reconcile_once()
                    await self.poll_jobs()
                except Exception:
                    logger.exception("reconciliation cycle failed")
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:  # pragma: no cover - background task
            pass

    async def stop(self) -> None:
        """Stop the background loop."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task is not None:
            self._stop_event.set()
            self._wake.set()
            try:
                await self._task
            finally:
                self._task = None
                self._loop = None
                self._stop_event = asyncio.Event()
                self._wake = asyncio.Event()


def _require(job: IngestionJob | None, kind: ActionKind, store_name: str) -> IngestionJob:
    if job is None:
        raise TransitionError(f"{kind.value} for store {store_name!r} needs an existing job")
    return job


__all__ = ["CycleResult", "Reconciler"]
