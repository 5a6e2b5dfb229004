from __future__ import annotations

"""Asynchronous circuit breaker guarding executor calls."""

import time
from typing import Any, Awaitable, Callable, TypeVar

from fsplane.foundation.errors import ExecutorError

T = TypeVar("T")


class CircuitOpenError(ExecutorError):
    """Raised instead of calling through while the circuit is open."""


class AsyncCircuitBreaker:
    """Circuit breaker for async callables.

    After ``max_failures`` consecutive failures the circuit opens and calls
    fail fast with :class:`CircuitOpenError`. When ``reset_timeout`` is set,
    the next call after that many seconds is let through as a probe; success
    closes the circuit again.
    """

    def __init__(
        self,
        max_failures: int = 3,
        *,
        reset_timeout: float | None = None,
        on_open: Callable[[], None] | None = None,
        on_close: Callable[[], None] | None = None,
        on_failure: Callable[[int], None] | None = None,
    ) -> None:
        self._max_failures = max_failures
        self._reset_timeout = reset_timeout
        self._on_open = on_open
        self._on_close = on_close
        self._on_failure = on_failure
        self._failures = 0
        self._opened_at: float | None = None

    # --- internal helpers -------------------------------------------------
    def _now(self) -> float:
        return time.monotonic()

    def _probe_allowed(self) -> bool:
        if self._opened_at is None or self._reset_timeout is None:
            return False
        return self._now() - self._opened_at >= self._reset_timeout

    # --- public API -------------------------------------------------------
    @property
    def is_open(self) -> bool:
        return self._opened_at is not None

    @property
    def failures(self) -> int:
        return self._failures

    def reset(self) -> None:
        """Manually close the circuit and clear failure count."""
        was_open = self._opened_at is not None
        self._opened_at = None
        self._failures = 0
        if was_open and self._on_close:
            self._on_close()

    def __call__(
        self, func: Callable[..., Awaitable[T]]
    ) -> Callable[..., Awaitable[T]]:
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            if self.is_open and not self._probe_allowed():
                raise CircuitOpenError("circuit open")
            try:
                result = await func(*args, **kwargs)
            except Exception:
                self._failures += 1
                if self._on_failure:
                    self._on_failure(self._failures)
                if self._failures >= self._max_failures:
                    first_open = self._opened_at is None
                    # a failed probe restarts the reset window
                    self._opened_at = self._now()
                    if first_open and self._on_open:
                        self._on_open()
                raise
            else:
                if self.is_open:
                    self.reset()
                elif self._failures:
                    self._failures = 0
                return result

        return wrapper


__all__ = ["AsyncCircuitBreaker", "CircuitOpenError"]
