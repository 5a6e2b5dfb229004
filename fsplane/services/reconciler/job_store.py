"""Persistence of ingestion jobs."""

from __future__ import annotations

import copy
import json
from typing import Any, Protocol

import redis.asyncio as redis

from .models import IngestionJob


class JobStore(Protocol):
    async def list(self) -> list[IngestionJob]:
        ...

    async def get(self, job_id: str) -> IngestionJob | None:
        ...

    async def get_by_store(self, store_name: str) -> list[IngestionJob]:
        ...

    async def put(self, job: IngestionJob) -> None:
        ...

    async def delete(self, job_id: str) -> None:
        ...


class InMemoryJobStore:
    """Dictionary backed store; returns copies so callers cannot mutate it."""

    def __init__(self) -> None:
        self.jobs: dict[str, IngestionJob] = {}

    async def list(self) -> list[IngestionJob]:
        return [copy.deepcopy(j) for j in self.jobs.values()]

    async def get(self, job_id: str) -> IngestionJob | None:
        job = self.jobs.get(job_id)
        return copy.deepcopy(job) if job is not None else None

    async def get_by_store(self, store_name: str) -> list[IngestionJob]:
        return [copy.deepcopy(j) for j in self.jobs.values() if j.store_name == store_name]

    async def put(self, job: IngestionJob) -> None:
        self.jobs[job.id] = copy.deepcopy(job)

    async def delete(self, job_id: str) -> None:
        self.jobs.pop(job_id, None)


class RedisJobStore:
    """Jobs as JSON documents under ``{prefix}:job:{id}`` plus an index set."""

    def __init__(self, client: Any, *, prefix: str = "fsplane") -> None:
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_dsn(cls, dsn: str, **kwargs: Any) -> "RedisJobStore":
        return cls(redis.from_url(dsn, decode_responses=True), **kwargs)

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    @property
    def _index(self) -> str:
        return f"{self.prefix}:jobs"

    @staticmethod
    def _decode(raw: Any) -> IngestionJob:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return IngestionJob.from_dict(json.loads(raw))

    async def list(self) -> list[IngestionJob]:
        ids = sorted(await self.client.smembers(self._index))
        if not ids:
            return []
        raws = await self.client.mget([self._key(i) for i in ids])
        return [self._decode(r) for r in raws if r is not None]

    async def get(self, job_id: str) -> IngestionJob | None:
        raw = await self.client.get(self._key(job_id))
        return self._decode(raw) if raw is not None else None

    async def get_by_store(self, store_name: str) -> list[IngestionJob]:
        return [j for j in await self.list() if j.store_name == store_name]

    async def put(self, job: IngestionJob) -> None:
        payload = json.dumps(job.to_dict(), sort_keys=True)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self._key(job.id), payload)
            pipe.sadd(self._index, job.id)
            await pipe.execute()

    async def delete(self, job_id: str) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(job_id))
            pipe.srem(self._index, job_id)
            await pipe.execute()


__all__ = ["JobStore", "InMemoryJobStore", "RedisJobStore"]
