import asyncio
from datetime import timedelta

import pytest

from fsplane.foundation.errors import TransitionError
from fsplane.services.reconciler import metrics
from fsplane.services.reconciler.executor import (
    ExecutorGateway,
    ExecutorStatus,
    InMemoryExecutor,
    RetryPolicy,
)
from fsplane.services.reconciler.job_store import InMemoryJobStore
from fsplane.services.reconciler.loop import Reconciler
from fsplane.services.reconciler.models import ActionKind, JobStatus, utcnow
from fsplane.services.reconciler.planner import plan
from fsplane.services.registry.registry import Registry
from tests.builders import feature_set, redis_store, ref, sub


class Clock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeAlerts:
    def __init__(self):
        self.slack = []
        self.pagerduty = []

    async def send_slack(self, message, **kw):
        self.slack.append(message)

    async def send_pagerduty(self, message, **kw):
        self.pagerduty.append((message, kw))


def _registry(*refs: str) -> Registry:
    registry = Registry()
    for r in refs or ("p/a", "p/b", "p/c"):
        registry.register_feature_set(feature_set(r, "x", topic=r.replace("/", "-")))
    return registry


def _reconciler(registry, executor=None, **kw):
    executor = executor or InMemoryExecutor()
    gateway = ExecutorGateway(executor, timeout=1.0, retry=RetryPolicy(attempts=1))
    jobs = kw.pop("jobs", None) or InMemoryJobStore()
    return Reconciler(registry, jobs, gateway, **kw), jobs, executor


def _kinds(result):
    return [(a.kind, a.store_name) for a in result.actions]


@pytest.mark.asyncio
async def test_creates_jobs_then_converges():
    registry = _registry()
    registry.apply_store(redis_store("online", sub("p", "*")))
    registry.apply_store(redis_store("offline", sub("p", "a")))
    registry.apply_store(redis_store("idle", sub("q", "*")))
    rec, jobs, executor = _reconciler(registry)

    first = await rec.reconcile_once()
    second = await rec.reconcile_once()

    assert sorted(_kinds(first)) == [
        (ActionKind.CREATE, "offline"),
        (ActionKind.CREATE, "online"),
    ]
    assert first.version == registry.version
    assert second.converged and second.actions == []
    assert len(executor.submitted) == 2
    online = next(j for j in jobs.jobs.values() if j.store_name == "online")
    assert online.status is JobStatus.PENDING
    assert online.feature_set_refs == {ref("p/a"), ref("p/b"), ref("p/c")}
    spec = next(s for s in executor.submitted if s.store_name == "online")
    assert spec.feature_set_refs == ("p/a", "p/b", "p/c")
    assert spec.store_config["host"] == "redis"
    assert spec.idempotency_key == online.replacement_key
    assert metrics.reconcile_actions_total.labels(action="CREATE")._value.get() == 2
    assert metrics.reconcile_cycles_total._value.get() == 2
    assert metrics.registry_version._value.get() == registry.version


@pytest.mark.asyncio
async def test_subscription_change_replaces_job_in_place():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("p", "*"), sub("p", "c", True)))
    rec, jobs, executor = _reconciler(registry)
    await rec.reconcile_once()
    (original,) = jobs.jobs.values()

    registry.apply_store(redis_store("s", sub("p", "*"), sub("p", "a", True)))
    result = await rec.reconcile_once()

    assert _kinds(result) == [(ActionKind.UPDATE, "s")]
    assert result.actions[0].job_id == original.id
    (job,) = jobs.jobs.values()
    assert job.id == original.id
    assert job.feature_set_refs == {ref("p/b"), ref("p/c")}
    assert job.generation == 1
    assert job.previous_handles == ["run-1"]
    assert job.executor_handle == "run-2"
    assert executor.stopped == ["run-1"]
    assert executor.submitted[-1].resume_from == "run-1"
    assert executor.submitted[-1].idempotency_key != original.replacement_key
    assert (await rec.reconcile_once()).actions == []


@pytest.mark.asyncio
async def test_store_config_change_is_an_update():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    rec, jobs, executor = _reconciler(registry)
    await rec.reconcile_once()

    registry.apply_store(redis_store("s", sub("*", "*"), host="redis-2"))
    result = await rec.reconcile_once()

    assert _kinds(result) == [(ActionKind.UPDATE, "s")]
    assert executor.submitted[-1].store_config["host"] == "redis-2"


@pytest.mark.asyncio
async def test_deleted_store_job_is_stopped():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    rec, jobs, executor = _reconciler(registry)
    await rec.reconcile_once()

    registry.delete_store("s")
    result = await rec.reconcile_once()

    assert _kinds(result) == [(ActionKind.STOP, "s")]
    (job,) = jobs.jobs.values()
    assert job.status is JobStatus.ABORTED
    assert executor.stopped == ["run-1"]
    assert (await rec.reconcile_once()).actions == []


@pytest.mark.asyncio
async def test_stop_waits_for_executor_confirmation():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    rec, jobs, executor = _reconciler(registry, InMemoryExecutor(stop_completes=False))
    await rec.reconcile_once()

    registry.delete_store("s")
    await rec.reconcile_once()
    (job,) = jobs.jobs.values()
    assert job.status is JobStatus.ABORTING
    assert (await rec.reconcile_once()).actions == []

    await rec.poll_jobs()
    assert executor.stopped == ["run-1", "run-1"]

    executor.set_status("run-1", ExecutorStatus.DONE)
    await rec.poll_jobs()
    (job,) = jobs.jobs.values()
    assert job.status is JobStatus.ABORTED


@pytest.mark.asyncio
async def test_readding_store_creates_new_job():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    rec, jobs, _ = _reconciler(registry)
    await rec.reconcile_once()
    registry.delete_store("s")
    await rec.reconcile_once()

    registry.apply_store(redis_store("s", sub("*", "*")))
    result = await rec.reconcile_once()

    assert _kinds(result) == [(ActionKind.CREATE, "s")]
    statuses = sorted(j.status.value for j in jobs.jobs.values())
    assert statuses == ["ABORTED", "PENDING"]


@pytest.mark.asyncio
async def test_poll_confirms_running_and_reports_failures():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    clock = Clock()
    rec, jobs, executor = _reconciler(
        registry, clock=clock, job_retry=RetryPolicy(attempts=3, initial_delay=10, max_delay=60)
    )
    await rec.reconcile_once()

    await rec.poll_jobs()
    (job,) = jobs.jobs.values()
    assert job.status is JobStatus.RUNNING
    assert metrics.jobs_by_status.labels(status="RUNNING")._value.get() == 1

    # reports for a handle the job no longer owns are dropped
    await rec.handle_status(job.id, ExecutorStatus.FAILED, handle="run-0")
    assert jobs.jobs[job.id].status is JobStatus.RUNNING

    executor.set_status("run-1", ExecutorStatus.FAILED)
    await rec.poll_jobs()
    job = jobs.jobs[job.id]
    assert job.status is JobStatus.ERROR
    assert job.attempts == 1
    assert job.next_retry_at == clock.now + timedelta(seconds=10)

    clock.advance(10)
    result = await rec.reconcile_once()
    assert _kinds(result) == [(ActionKind.RETRY, "s")]
    job = jobs.jobs[job.id]
    assert job.status is JobStatus.PENDING
    assert job.executor_handle == "run-2"
    assert executor.submitted[-1].resume_from == "run-1"


@pytest.mark.asyncio
async def test_submit_failures_back_off_then_exhaust():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    clock = Clock()
    alerts = FakeAlerts()
    executor = InMemoryExecutor()
    executor.fail_submits = 10
    rec, jobs, _ = _reconciler(
        registry,
        executor,
        clock=clock,
        alerts=alerts,
        job_retry=RetryPolicy(attempts=2, initial_delay=10, max_delay=60),
    )

    await rec.reconcile_once()
    (job,) = jobs.jobs.values()
    assert job.status is JobStatus.ERROR
    assert job.attempts == 1
    assert "submit failed" in job.last_error

    assert (await rec.reconcile_once()).actions == []
    clock.advance(10)
    assert _kinds(await rec.reconcile_once()) == [(ActionKind.RETRY, "s")]
    assert jobs.jobs[job.id].attempts == 2
    clock.advance(20)
    await rec.reconcile_once()

    job = jobs.jobs[job.id]
    assert job.status is JobStatus.ERROR
    assert job.attempts == 3
    assert job.next_retry_at is None
    assert len(alerts.pagerduty) == 1
    assert alerts.pagerduty[0][1] == {"store": "s", "job_id": job.id}
    clock.advance(3600)
    assert (await rec.reconcile_once()).actions == []

    executor.fail_submits = 0
    await rec.reset_job("s")
    result = await rec.reconcile_once()
    assert _kinds(result) == [(ActionKind.RETRY, "s")]
    job = jobs.jobs[job.id]
    assert job.status is JobStatus.PENDING
    assert job.executor_handle == "run-1"
    assert metrics.executor_errors_total._value.get() == 3


@pytest.mark.asyncio
async def test_reset_job_unknown_store():
    rec, _, _ = _reconciler(_registry())

    with pytest.raises(KeyError):
        await rec.reset_job("nope")


@pytest.mark.asyncio
async def test_interrupted_submit_reuses_idempotency_key():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    rec, jobs, executor = _reconciler(registry)
    await rec.reconcile_once()
    (job,) = jobs.jobs.values()
    key = job.replacement_key

    # the executor accepted the job but its handle was never recorded
    job.executor_handle = None
    result = await rec.reconcile_once()

    assert _kinds(result) == [(ActionKind.RETRY, "s")]
    assert len(executor.submitted) == 1
    assert jobs.jobs[job.id].executor_handle == "run-1"
    assert jobs.jobs[job.id].replacement_key == key


@pytest.mark.asyncio
async def test_cycle_superseded_by_registry_write_replans():
    registry = _registry()
    registry.apply_store(redis_store("a", sub("p", "*")))
    registry.apply_store(redis_store("b", sub("p", "*")))
    executor = InMemoryExecutor()
    real_submit = executor.submit
    writes = []

    async def submit_and_write(spec):
        if not writes:
            # an unrelated writer commits while the cycle is in flight
            writes.append(registry.register_feature_set(feature_set("q/late", "x")))
        return await real_submit(spec)

    executor.submit = submit_and_write
    rec, jobs, _ = _reconciler(registry, executor, max_workers=1)

    result = await rec.reconcile_once()

    assert result.superseded == 1
    assert not result.conflict
    assert result.version == registry.version
    assert _kinds(result) == [(ActionKind.CREATE, "b")]
    assert sorted(j.store_name for j in jobs.jobs.values()) == ["a", "b"]
    assert metrics.reconcile_conflicts_total._value.get() == 1
    assert (await rec.reconcile_once()).converged


@pytest.mark.asyncio
async def test_conflict_surfaces_after_retry_limit():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    alerts = FakeAlerts()

    class RacingJobStore(InMemoryJobStore):
        async def list(self):
            # every read races with a registry write
            registry.register_feature_set(
                feature_set(f"race/n{registry.version}", "x")
            )
            return await super().list()

    rec, jobs, executor = _reconciler(
        registry, jobs=RacingJobStore(), conflict_retry_limit=3, alerts=alerts
    )

    result = await rec.reconcile_once()

    assert result.conflict is True
    assert result.superseded == 3
    assert not result.converged
    assert executor.submitted == []
    assert len(alerts.slack) == 1
    assert metrics.reconcile_conflicts_total._value.get() == 3


@pytest.mark.asyncio
async def test_actions_are_bounded_by_max_workers():
    registry = _registry()
    for i in range(6):
        registry.apply_store(redis_store(f"s{i}", sub("*", "*")))
    executor = InMemoryExecutor(delay=0.01)
    in_flight = 0
    peak = 0
    real_submit = executor.submit

    async def tracking_submit(spec):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        try:
            return await real_submit(spec)
        finally:
            in_flight -= 1

    executor.submit = tracking_submit
    rec, jobs, _ = _reconciler(registry, executor, max_workers=2)

    result = await rec.reconcile_once()

    assert len(result.actions) == 6
    assert peak == 2


@pytest.mark.asyncio
async def test_background_loop_reacts_to_registry_changes():
    registry = _registry()
    rec, jobs, executor = _reconciler(registry, poll_interval=60.0)

    await rec.start()
    try:
        registry.apply_store(redis_store("s", sub("*", "*")))
        for _ in range(200):
            if executor.submitted:
                break
            await asyncio.sleep(0.01)
    finally:
        await rec.stop()

    assert len(executor.submitted) == 1
    assert [j.store_name for j in await rec.list_jobs()] == ["s"]


@pytest.mark.asyncio
async def test_replacement_waits_until_old_run_stops():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("p", "*"), sub("p", "c", True)))
    rec, jobs, executor = _reconciler(registry)
    await rec.reconcile_once()

    registry.apply_store(redis_store("s", sub("p", "*")))
    executor.fail_stops = 1
    result = await rec.reconcile_once()

    assert _kinds(result) == [(ActionKind.UPDATE, "s")]
    (job,) = jobs.jobs.values()
    assert job.status is JobStatus.ABORTING
    assert job.executor_handle == "run-1"
    assert job.generation == 0
    assert len(executor.submitted) == 1

    result = await rec.reconcile_once()

    assert _kinds(result) == [(ActionKind.UPDATE, "s")]
    (job,) = jobs.jobs.values()
    assert job.status is JobStatus.PENDING
    assert job.executor_handle == "run-2"
    assert job.previous_handles == ["run-1"]
    assert executor.stopped == ["run-1"]
    assert executor.active_handles() == ["run-2"]


@pytest.mark.asyncio
async def test_flapping_job_exhausts_retry_budget():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    clock = Clock()
    alerts = FakeAlerts()
    rec, jobs, executor = _reconciler(
        registry,
        clock=clock,
        alerts=alerts,
        job_retry=RetryPolicy(attempts=2, initial_delay=10, max_delay=60),
    )
    await rec.reconcile_once()
    (job_id,) = jobs.jobs

    # each replacement starts fine, is confirmed, then crashes
    for _ in range(3):
        await rec.poll_jobs()
        assert jobs.jobs[job_id].status is JobStatus.RUNNING
        executor.set_status(jobs.jobs[job_id].executor_handle, ExecutorStatus.FAILED)
        await rec.poll_jobs()
        clock.advance(3600)
        await rec.reconcile_once()

    job = jobs.jobs[job_id]
    assert job.status is JobStatus.ERROR
    assert job.attempts == 3
    assert job.next_retry_at is None
    assert len(executor.submitted) == 3
    assert len(alerts.pagerduty) == 1
    clock.advance(3600)
    assert (await rec.reconcile_once()).actions == []


@pytest.mark.asyncio
async def test_concurrent_cycles_submit_once_per_store():
    registry = _registry()
    registry.apply_store(redis_store("a", sub("*", "*")))
    registry.apply_store(redis_store("b", sub("p", "a")))
    rec, jobs, executor = _reconciler(registry, InMemoryExecutor(delay=0.01))

    first, second = await asyncio.gather(rec.reconcile_once(), rec.reconcile_once())

    assert sorted(s.store_name for s in executor.submitted) == ["a", "b"]
    assert sorted(_kinds(first) + _kinds(second)) == [
        (ActionKind.CREATE, "a"),
        (ActionKind.CREATE, "b"),
    ]
    assert len(jobs.jobs) == 2


@pytest.mark.asyncio
async def test_status_report_waits_for_in_flight_action():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    rec, jobs, executor = _reconciler(registry, InMemoryExecutor(delay=0.05))

    cycle = asyncio.create_task(rec.reconcile_once())
    for _ in range(100):
        if jobs.jobs:
            break
        await asyncio.sleep(0.001)
    (job,) = jobs.jobs.values()
    assert job.executor_handle is None

    reported = await rec.handle_status(job.id, ExecutorStatus.RUNNING)
    await cycle

    assert reported.status is JobStatus.RUNNING
    assert reported.executor_handle == "run-1"
    assert jobs.jobs[job.id].status is JobStatus.RUNNING
    assert len(executor.submitted) == 1


@pytest.mark.asyncio
async def test_update_interrupted_before_stop_submits_one_replacement():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("p", "*"), sub("p", "c", True)))
    rec, jobs, executor = _reconciler(registry)
    await rec.reconcile_once()
    registry.apply_store(redis_store("s", sub("p", "*")))

    # the abort was recorded but the old run was never stopped
    (job,) = jobs.jobs.values()
    job.status = JobStatus.ABORTING
    result = await rec.reconcile_once()

    assert _kinds(result) == [(ActionKind.UPDATE, "s")]
    job = jobs.jobs[job.id]
    assert job.status is JobStatus.PENDING
    assert job.executor_handle == "run-2"
    assert job.generation == 1
    assert executor.stopped == ["run-1"]
    assert (await rec.reconcile_once()).actions == []
    assert len(executor.submitted) == 2


@pytest.mark.asyncio
async def test_update_interrupted_after_submit_reuses_replacement_key():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("p", "*"), sub("p", "c", True)))
    rec, jobs, executor = _reconciler(registry)
    await rec.reconcile_once()
    registry.apply_store(redis_store("s", sub("p", "*")))
    await rec.reconcile_once()
    (job,) = jobs.jobs.values()
    key = job.replacement_key

    # the replacement was accepted but its handle was never recorded
    job.executor_handle = None
    result = await rec.reconcile_once()

    assert _kinds(result) == [(ActionKind.RETRY, "s")]
    job = jobs.jobs[job.id]
    assert len(executor.submitted) == 2
    assert job.executor_handle == "run-2"
    assert job.replacement_key == key
    assert job.generation == 1


@pytest.mark.asyncio
async def test_store_locks_dropped_once_idle():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    rec, jobs, _ = _reconciler(registry)
    await rec.reconcile_once()
    await rec.poll_jobs()

    registry.delete_store("s")
    await rec.reconcile_once()
    await rec.poll_jobs()
    await rec.reset_job("s")

    (job,) = jobs.jobs.values()
    assert job.status is JobStatus.ABORTED
    assert rec._locks == {}


@pytest.mark.asyncio
async def test_permanent_failure_alert_sent_outside_store_lock():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    executor = InMemoryExecutor()
    executor.fail_submits = 1

    class LockAwareAlerts(FakeAlerts):
        def __init__(self):
            super().__init__()
            self.held = []

        async def send_pagerduty(self, message, **kw):
            self.held.append("s" in rec._locks)
            await super().send_pagerduty(message, **kw)

    alerts = LockAwareAlerts()
    rec, jobs, _ = _reconciler(
        registry, executor, alerts=alerts, job_retry=RetryPolicy(attempts=0)
    )

    await rec.reconcile_once()

    (job,) = jobs.jobs.values()
    assert job.status is JobStatus.ERROR
    assert job.next_retry_at is None
    assert alerts.held == [False]
    assert len(alerts.pagerduty) == 1


@pytest.mark.asyncio
async def test_actions_without_a_job_are_rejected():
    registry = _registry()
    registry.apply_store(redis_store("s", sub("*", "*")))
    rec, _, executor = _reconciler(registry)
    snapshot = registry.snapshot()
    desired = plan(snapshot).desired["s"]

    for handler in (rec._update, rec._retry):
        with pytest.raises(TransitionError):
            await handler(None, desired, snapshot)
    assert executor.submitted == []
