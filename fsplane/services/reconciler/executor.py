from __future__ import annotations

"""Boundary to the external stream-execution runtime."""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Protocol, TypeVar

import httpx

from fsplane.foundation.common import AsyncCircuitBreaker
from fsplane.foundation.common.circuit_breaker import CircuitOpenError
from fsplane.foundation.common.tracing import inject_trace_headers
from fsplane.foundation.errors import ExecutorError, ExecutorTimeout

from . import metrics
from .models import JobSpec

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExecutorStatus(str, Enum):
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


class ExecutorClient(Protocol):
    """Contract of the execution backend."""

    async def submit(self, spec: JobSpec) -> str:
        """Start a job and return its handle.

        Submissions carrying an ``idempotency_key`` already seen return the
        existing handle instead of starting another run.
        """
        ...

    async def status(self, handle: str) -> ExecutorStatus:
        ...

    async def stop(self, handle: str) -> bool:
        """Request termination; the acknowledgment is best effort."""
        ...


@dataclass
class _Run:
    handle: str
    spec: JobSpec
    status: ExecutorStatus = ExecutorStatus.RUNNING


class InMemoryExecutor:
    """Executor that keeps runs in a dictionary.

    Used for local runs and tests. ``fail_submits`` and ``fail_stops`` make the
    next submissions or stop requests raise, ``delay`` makes every call slow.
    """

    def __init__(self, *, stop_completes: bool = True, delay: float = 0.0) -> None:
        self.stop_completes = stop_completes
        self.delay = delay
        self.fail_submits = 0
        self.fail_stops = 0
        self.runs: dict[str, _Run] = {}
        self.submitted: list[JobSpec] = []
        self.stopped: list[str] = []
        self._by_key: dict[str, str] = {}
        self._ids = itertools.count(1)

    async def _pause(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)

    async def submit(self, spec: JobSpec) -> str:
        await self._pause()
        if self.fail_submits > 0:
            self.fail_submits -= 1
            raise ExecutorError(f"submit rejected for job {spec.job_id}")
        existing = self._by_key.get(spec.idempotency_key)
        if existing is not None:
            return existing
        handle = f"run-{next(self._ids)}"
        self.runs[handle] = _Run(handle, spec)
        self._by_key[spec.idempotency_key] = handle
        self.submitted.append(spec)
        return handle

    async def status(self, handle: str) -> ExecutorStatus:
        await self._pause()
        run = self.runs.get(handle)
        if run is None:
            raise ExecutorError(f"unknown handle {handle}")
        return run.status

    async def stop(self, handle: str) -> bool:
        await self._pause()
        if self.fail_stops > 0:
            self.fail_stops -= 1
            raise ExecutorError(f"stop rejected for {handle}")
        run = self.runs.get(handle)
        if run is None:
            return False
        self.stopped.append(handle)
        if self.stop_completes:
            run.status = ExecutorStatus.DONE
        return True

    # test helpers ---------------------------------------------------------

    def set_status(self, handle: str, status: ExecutorStatus) -> None:
        self.runs[handle].status = status

    def active_handles(self) -> list[str]:
        return [h for h, r in self.runs.items() if r.status is ExecutorStatus.RUNNING]


class HttpExecutorClient:
    """JSON-over-HTTP executor client.

    ``POST /jobs`` returns ``{"handle": ...}``, ``GET /jobs/{handle}`` returns
    ``{"status": ...}`` and ``POST /jobs/{handle}/stop`` returns
    ``{"stopped": bool}``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        breaker: AsyncCircuitBreaker | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url
        self.breaker = breaker
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        headers: dict[str, str] = {}
        inject_trace_headers(headers)

        async def send() -> httpx.Response:
            resp = await self._client.request(method, path, json=payload, headers=headers)
            if resp.status_code >= 400:
                raise ExecutorError(f"{method} {path} failed with status {resp.status_code}")
            return resp

        wrapped = self.breaker(send) if self.breaker else send
        try:
            resp = await wrapped()
        except httpx.TimeoutException as exc:
            raise ExecutorTimeout(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise ExecutorError(f"{method} {path} failed: {exc}") from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise ExecutorError(f"{method} {path} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise ExecutorError(f"{method} {path} returned {type(data).__name__}")
        return data

    async def submit(self, spec: JobSpec) -> str:
        data = await self._request("POST", "/jobs", spec.to_payload())
        handle = data.get("handle")
        if not handle:
            raise ExecutorError("executor response is missing 'handle'")
        return str(handle)

    async def status(self, handle: str) -> ExecutorStatus:
        data = await self._request("GET", f"/jobs/{handle}")
        try:
            return ExecutorStatus(str(data.get("status", "")).upper())
        except ValueError as exc:
            raise ExecutorError(f"unknown executor status {data.get('status')!r}") from exc

    async def stop(self, handle: str) -> bool:
        data = await self._request("POST", f"/jobs/{handle}/stop")
        return bool(data.get("stopped", True))


@dataclass
class RetryStep:
    attempt: int
    delay: float
    is_last: bool


@dataclass
class RetryPolicy:
    """Bounded exponential backoff."""

    attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 4.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = max(0.0, float(self.initial_delay)) * (max(0.0, self.multiplier) ** max(0, attempt - 1))
        return min(max(float(self.initial_delay), float(self.max_delay)), delay)

    def plan(self) -> Iterable[RetryStep]:
        total_attempts = max(1, int(self.attempts))
        for attempt in range(1, total_attempts + 1):
            yield RetryStep(attempt, self.delay_for(attempt), attempt == total_attempts)


@dataclass
class ExecutorGateway:
    """Applies timeouts and retries to every executor call."""

    client: ExecutorClient
    timeout: float = 5.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def submit(self, spec: JobSpec) -> str:
        return await self._call("submit", self.client.submit, spec)

    async def status(self, handle: str) -> ExecutorStatus:
        return await self._call("status", self.client.status, handle)

    async def stop(self, handle: str) -> bool:
        return await self._call("stop", self.client.stop, handle)

    async def _call(self, op: str, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        last_error: ExecutorError | None = None
        for step in self.retry.plan():
            try:
                return await asyncio.wait_for(fn(*args), timeout=self.timeout)
            except asyncio.TimeoutError:
                last_error = ExecutorTimeout(f"executor {op} timed out after {self.timeout}s")
            except CircuitOpenError:
                metrics.executor_errors_total.inc()
                raise
            except ExecutorError as exc:
                last_error = exc
            logger.warning(
                "executor %s attempt %d/%d failed: %s",
                op,
                step.attempt,
                self.retry.attempts,
                last_error,
            )
            if step.is_last:
                break
            await self.sleep(step.delay)
        metrics.executor_errors_total.inc()
        if last_error is None:
            raise ExecutorError(f"executor {op} was not attempted")
        raise last_error


__all__ = [
    "ExecutorStatus",
    "ExecutorClient",
    "InMemoryExecutor",
    "HttpExecutorClient",
    "RetryStep",
    "RetryPolicy",
    "ExecutorGateway",
]
