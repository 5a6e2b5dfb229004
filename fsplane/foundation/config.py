from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, FrozenSet, Mapping

import yaml  # type: ignore[import-untyped]

from fsplane.services.reconciler.config import ReconcilerConfig

logger = logging.getLogger(__name__)


CONFIG_SECTION_NAMES: tuple[str, ...] = ("reconciler", "telemetry")

_RECONCILER_ALIASES: dict[str, str] = {
    "redis_url": "redis_dsn",
    "redis_uri": "redis_dsn",
}


@dataclass
class TelemetryConfig:
    """Telemetry sinks and tracing exporters."""

    otel_exporter_endpoint: str | None = None
    enable_fastapi_otel: bool = False
    log_level: str = "INFO"


@dataclass
class UnifiedConfig:
    """Configuration aggregating every service section of ``fsplane.yml``."""

    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    present_sections: FrozenSet[str] = field(default_factory=frozenset)


def find_config_file(cwd: Path | None = None) -> str | None:
    """Return the first discoverable configuration file in ``cwd``."""

    base = Path.cwd() if cwd is None else cwd

    for name in ("fsplane.yml", "fsplane.yaml"):
        candidate = base / name
        if candidate.is_file():
            return str(candidate)
    return None


def _read_config_mapping(path: str) -> dict[str, Any]:
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
        raise TypeError("Unified config must be a mapping")
    return data


def _extract_sections(data: Mapping[str, Any]) -> tuple[dict[str, dict[str, Any]], FrozenSet[str]]:
    present_sections: FrozenSet[str] = frozenset(
        section
        for section in CONFIG_SECTION_NAMES
        if section in data and isinstance(data.get(section), dict)
    )

    sections: dict[str, dict[str, Any]] = {}
    for section_name in CONFIG_SECTION_NAMES:
        raw_section = data.get(section_name, {})
        if raw_section is None:
            raw_section = {}
        if not isinstance(raw_section, dict):
            raise TypeError(f"{section_name} section must be a mapping")
        sections[section_name] = dict(raw_section)
    return sections, present_sections


def _apply_aliases(section: Mapping[str, Any], aliases: Mapping[str, str]) -> dict[str, Any]:
    data = dict(section)
    for alias, canonical in aliases.items():
        if alias not in data:
            continue
        if canonical in data:
            logger.warning("ignoring %s; %s is already set", alias, canonical)
            data.pop(alias)
        else:
            data[canonical] = data.pop(alias)
    return data


def load_config(path: str) -> UnifiedConfig:
    """Parse ``fsplane.yml`` and populate :class:`UnifiedConfig`.

    Unknown keys inside a section raise :class:`TypeError`.
    """
    data = _read_config_mapping(path)
    sections, present_sections = _extract_sections(data)
    reconciler_data = _apply_aliases(sections["reconciler"], _RECONCILER_ALIASES)
    return UnifiedConfig(
        reconciler=ReconcilerConfig(**reconciler_data),
        telemetry=TelemetryConfig(**sections["telemetry"]),
        present_sections=present_sections,
    )


__all__ = [
    "CONFIG_SECTION_NAMES",
    "TelemetryConfig",
    "UnifiedConfig",
    "find_config_file",
    "load_config",
]
