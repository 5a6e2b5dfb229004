"""Error taxonomy shared by the registry and the reconciler."""

from __future__ import annotations


class ControlPlaneError(Exception):
    """Base class for all control plane errors."""


class DataIntegrityError(ControlPlaneError):
    """Persisted data cannot be interpreted; never retried."""


class CorruptConfig(DataIntegrityError):
    """Store config bytes do not parse under the schema of their type."""

    def __init__(self, store_type: str, reason: str) -> None:
        super().__init__(f"corrupt {store_type} config: {reason}")
        self.store_type = store_type
        self.reason = reason


class UnsupportedStoreType(DataIntegrityError):
    """The store type is not a recognized backend."""

    def __init__(self, store_type: object) -> None:
        super().__init__(f"unsupported store type: {store_type!r}")
        self.store_type = store_type


class ConflictError(ControlPlaneError):
    """Optimistic concurrency check failed."""

    def __init__(
        self,
        message: str,
        *,
        expected: int | None = None,
        actual: int | None = None,
    ) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class VersionConflict(ConflictError):
    """Incompatible schema change submitted for an existing feature set."""


class ExecutorError(ControlPlaneError):
    """The external executor rejected or failed a request."""


class ExecutorTimeout(ExecutorError):
    """An executor call did not complete within its timeout."""


class ValidationError(ControlPlaneError):
    """Malformed input rejected before it reaches the registry."""


class TransitionError(ControlPlaneError):
    """Raised when a job state transition is not allowed."""


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
]
