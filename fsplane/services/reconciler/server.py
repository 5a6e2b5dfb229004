from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

import uvicorn

from fsplane.foundation.common import AsyncCircuitBreaker
from fsplane.foundation.common.tracing import setup_tracing
from fsplane.foundation.config import find_config_file, load_config
from fsplane.services.api import create_app
from fsplane.services.registry.registry import Registry
from fsplane.services.registry.seed import load_registry

from .alerts import AlertManager
from .config import ReconcilerConfig
from .executor import (
    ExecutorClient,
    ExecutorGateway,
    HttpExecutorClient,
    InMemoryExecutor,
    RetryPolicy,
)
from .garbage_collector import GcRule, JobGarbageCollector
from .gc_scheduler import GCScheduler
from .job_store import InMemoryJobStore, JobStore, RedisJobStore
from .loop import Reconciler
from .models import JobStatus


def _log_config_source(cfg_path: str | None, *, cli_override: str | None) -> None:
    if cli_override:
        logging.info("Reconciler configuration loaded from %s (--config)", cli_override)
        return
    if cfg_path:
        logging.info("Reconciler configuration loaded from %s", cfg_path)
    else:
        logging.info("Reconciler configuration file not provided; using built-in defaults")


@dataclass
class Services:
    """Everything the server wires together from one configuration."""

    registry: Registry
    jobs: JobStore
    reconciler: Reconciler
    gc: GCScheduler


def build_services(cfg: ReconcilerConfig) -> Services:
    registry = load_registry(cfg.registry_file) if cfg.registry_file else Registry()

    jobs: JobStore
    if cfg.redis_dsn:
        jobs = RedisJobStore.from_dsn(cfg.redis_dsn)
    else:
        jobs = InMemoryJobStore()

    client: ExecutorClient
    if cfg.executor_url:
        client = HttpExecutorClient(
            cfg.executor_url,
            timeout=cfg.executor_timeout_seconds,
            breaker=AsyncCircuitBreaker(max_failures=5, reset_timeout=30.0),
        )
    else:
        logging.warning("no executor_url configured; jobs run on the in-memory executor")
        client = InMemoryExecutor()

    gateway = ExecutorGateway(
        client,
        timeout=cfg.executor_timeout_seconds,
        retry=RetryPolicy(
            attempts=cfg.executor_retry_attempts,
            initial_delay=cfg.executor_retry_initial_delay,
            max_delay=cfg.executor_retry_max_delay,
        ),
    )
    reconciler = Reconciler(
        registry,
        jobs,
        gateway,
        max_workers=cfg.max_workers,
        conflict_retry_limit=cfg.conflict_retry_limit,
        job_retry=RetryPolicy(
            attempts=cfg.job_max_retries,
            initial_delay=cfg.job_retry_initial_delay,
            max_delay=cfg.job_retry_max_delay,
        ),
        poll_interval=cfg.poll_interval_seconds,
        alerts=AlertManager.from_urls(cfg.slack_webhook_url, cfg.pagerduty_webhook_url),
    )
    gc = JobGarbageCollector(
        jobs,
        policy={
            JobStatus.ABORTED: GcRule(ttl=timedelta(seconds=cfg.aborted_retention_seconds)),
            JobStatus.ERROR: GcRule(ttl=timedelta(seconds=cfg.error_retention_seconds)),
        },
        registry=registry,
    )
    return Services(
        registry=registry,
        jobs=jobs,
        reconciler=reconciler,
        gc=GCScheduler(gc, interval=cfg.gc_interval_seconds),
    )


async def _run(cfg: ReconcilerConfig) -> None:
    services = build_services(cfg)
    app = create_app(services.registry, services.reconciler, gc_scheduler=services.gc)
    config = uvicorn.Config(
        app,
        host=cfg.http_host,
        port=cfg.http_port,
        loop="asyncio",
        log_level="info",
    )
    http_server = uvicorn.Server(config)
    await services.reconciler.start()
    await services.gc.start()
    try:
        await http_server.serve()
    finally:
        await services.gc.stop()
        await services.reconciler.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="fsplane server",
        description="Run the reconciler with its admin HTTP API",
    )
    parser.add_argument("--config", help="Path to configuration file")
    args = parser.parse_args(argv)

    cfg_path = args.config or find_config_file()
    _log_config_source(cfg_path, cli_override=args.config)

    cfg = ReconcilerConfig()
    telemetry_endpoint: str | None = None
    if cfg_path:
        unified = load_config(cfg_path)
        if "reconciler" not in unified.present_sections:
            logging.error(
                "Configuration file %s does not define the 'reconciler' section.", cfg_path
            )
            raise SystemExit(2)
        cfg = unified.reconciler
        telemetry_endpoint = unified.telemetry.otel_exporter_endpoint
        logging.getLogger().setLevel(unified.telemetry.log_level.upper())

    setup_tracing("fsplane", exporter_endpoint=telemetry_endpoint)
    asyncio.run(_run(cfg))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    main()
