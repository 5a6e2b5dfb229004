from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import logging
import yaml


@dataclass
class ReconcilerConfig:
    """Configuration for the reconciler service."""
    executor_url: Optional[str] = None
    executor_timeout_seconds: float = 5.0
    executor_retry_attempts: int = 3
    executor_retry_initial_delay: float = 0.5
    executor_retry_max_delay: float = 4.0
    max_workers: int = 8
    poll_interval_seconds: float = 30.0
    conflict_retry_limit: int = 3
    job_max_retries: int = 5
    job_retry_initial_delay: float = 10.0
    job_retry_max_delay: float = 600.0
    gc_interval_seconds: float = 3600.0
    aborted_retention_seconds: float = 86400.0
    error_retention_seconds: float = 604800.0
    redis_dsn: Optional[str] = None
    registry_file: Optional[str] = None
    http_host: str = "0.0.0.0"
    http_port: int = 8080
    slack_webhook_url: Optional[str] = None
    pagerduty_webhook_url: Optional[str] = None


def load_reconciler_config(path: str) -> ReconcilerConfig:
    """Load :class:`ReconcilerConfig` from a YAML file."""
    logger = logging.getLogger(__name__)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            try:
                data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                logger.error("Failed to parse configuration file %s: %s", path, exc)
                raise ValueError(f"Failed to parse configuration file {path}") from exc
    except (FileNotFoundError, OSError) as exc:
        logger.error("Unable to open configuration file %s: %s", path, exc)
        raise
    if not isinstance(data, dict):
        raise TypeError("Reconciler config must be a mapping")
    # accept *_url/*_uri spellings for the redis dsn
    for alias in ("redis_url", "redis_uri"):
        if "redis_dsn" in data:
            data.pop(alias, None)
        elif alias in data:
            data["redis_dsn"] = data.pop(alias)
    return ReconcilerConfig(**data)


__all__ = ["ReconcilerConfig", "load_reconciler_config"]
