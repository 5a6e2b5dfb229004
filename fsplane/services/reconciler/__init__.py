from .alerts import AlertManager, PagerDutyClient, SlackClient
from .config import ReconcilerConfig, load_reconciler_config
from .diff import action_for, diff_jobs
from .executor import (
    ExecutorClient,
    ExecutorGateway,
    ExecutorStatus,
    HttpExecutorClient,
    InMemoryExecutor,
    RetryPolicy,
)
from .garbage_collector import DEFAULT_POLICY, GcRule, JobGarbageCollector
from .gc_scheduler import GCScheduler
from .job_fsm import JOB_MACHINE, JobEvent, apply_event
from .job_store import InMemoryJobStore, JobStore, RedisJobStore
from .loop import CycleResult, Reconciler
from .models import (
    ActionKind,
    DesiredJob,
    IngestionJob,
    JobAction,
    JobSpec,
    JobStatus,
    current_jobs,
)
from .planner import TopologyPlan, plan

__all__ = [
    "AlertManager",
    "PagerDutyClient",
    "SlackClient",
    "ReconcilerConfig",
    "load_reconciler_config",
    "action_for",
    "diff_jobs",
    "ExecutorClient",
    "ExecutorGateway",
    "ExecutorStatus",
    "HttpExecutorClient",
    "InMemoryExecutor",
    "RetryPolicy",
    "DEFAULT_POLICY",
    "GcRule",
    "JobGarbageCollector",
    "GCScheduler",
    "JOB_MACHINE",
    "JobEvent",
    "apply_event",
    "JobStore",
    "InMemoryJobStore",
    "RedisJobStore",
    "CycleResult",
    "Reconciler",
    "ActionKind",
    "DesiredJob",
    "IngestionJob",
    "JobAction",
    "JobSpec",
    "JobStatus",
    "current_jobs",
    "TopologyPlan",
    "plan",
]
