"""Public API surface for the fsplane package."""

from __future__ import annotations

from .foundation.errors import (
    ConflictError,
    ControlPlaneError,
    CorruptConfig,
    DataIntegrityError,
    ExecutorError,
    ExecutorTimeout,
    TransitionError,
    UnsupportedStoreType,
    ValidationError,
    VersionConflict,
)

__version__ = "0.1.0"

__all__ = [
    "ControlPlaneError",
    "DataIntegrityError",
    "CorruptConfig",
    "UnsupportedStoreType",
    "ConflictError",
    "VersionConflict",
    "ExecutorError",
    "ExecutorTimeout",
    "ValidationError",
    "TransitionError",
    "__version__",
]
