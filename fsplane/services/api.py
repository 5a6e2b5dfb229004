from __future__ import annotations

"""Admin HTTP API over the registry and the reconciler."""

import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from pydantic import BaseModel, Field

from fsplane.foundation.common.tracing import setup_tracing
from fsplane.foundation.errors import ConflictError, DataIntegrityError, ValidationError
from fsplane.services.reconciler.gc_scheduler import GCScheduler
from fsplane.services.reconciler.loop import Reconciler
from fsplane.services.registry.models import FeatureSet, FeatureSetReference, Store
from fsplane.services.registry.registry import Registry

logger = logging.getLogger(__name__)


class FieldPayload(BaseModel):
    name: str
    value_type: str


class SourcePayload(BaseModel):
    type: str = "KAFKA"
    bootstrap_servers: str = ""
    topic: str = ""


class FeatureSetPayload(BaseModel):
    """Payload for RegisterFeatureSet."""

    project: str
    name: str
    entities: list[FieldPayload]
    features: list[FieldPayload] = Field(default_factory=list)
    source: SourcePayload = Field(default_factory=SourcePayload)
    max_age_seconds: int = 0
    labels: dict[str, str] = Field(default_factory=dict)


class SubscriptionPayload(BaseModel):
    project: str
    name: str
    exclude: bool = False


class StorePayload(BaseModel):
    """Payload for ApplyStore; the store name comes from the path."""

    type: str
    config: dict[str, Any] = Field(default_factory=dict)
    subscriptions: list[SubscriptionPayload] = Field(default_factory=list)
    expected_version: Optional[int] = None


class ReferenceResponse(BaseModel):
    project: str
    name: str
    registry_version: int


class SubscribedStoresResponse(BaseModel):
    reference: str
    stores: list[str]
    registry_version: int


class CycleResponse(BaseModel):
    version: int
    actions: list[str]
    superseded: int
    conflict: bool


class GcResponse(BaseModel):
    removed: list[str]


def create_app(
    registry: Registry,
    reconciler: Reconciler,
    *,
    gc_scheduler: GCScheduler | None = None,
) -> FastAPI:
    """Return a FastAPI app exposing registry mutations and admin routes."""
    setup_tracing("fsplane")
    app = FastAPI(title="fsplane")
    FastAPIInstrumentor().instrument_app(app)
    tracer = trace.get_tracer(__name__)

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def _conflict_error(request: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "expected": exc.expected, "actual": exc.actual},
        )

    @app.exception_handler(DataIntegrityError)
    async def _integrity_error(request: Request, exc: DataIntegrityError) -> JSONResponse:
        logger.error("data integrity failure serving %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.get("/status")
    async def status_endpoint() -> dict[str, Any]:
        jobs = await reconciler.list_jobs()
        counts: dict[str, int] = {}
        for job in jobs:
            counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return {"status": "ok", "registry_version": registry.version, "jobs": counts}

    @app.get("/registry/version")
    async def registry_version() -> dict[str, int]:
        return {"version": registry.version}

    @app.post("/feature-sets", status_code=status.HTTP_201_CREATED)
    async def register_feature_set(payload: FeatureSetPayload) -> ReferenceResponse:
        with tracer.start_as_current_span("fsplane.register_feature_set"):
            ref = registry.register_feature_set(FeatureSet.from_mapping(payload.model_dump()))
            return ReferenceResponse(
                project=ref.project, name=ref.name, registry_version=registry.version
            )

    @app.put("/stores/{name}")
    async def apply_store(name: str, payload: StorePayload) -> dict[str, Any]:
        with tracer.start_as_current_span("fsplane.apply_store"):
            body = payload.model_dump(exclude={"expected_version"})
            store = Store.from_mapping({"name": name, **body})
            committed = registry.apply_store(store, expected_version=payload.expected_version)
            return committed.to_mapping()

    @app.delete("/stores/{name}")
    async def delete_store(name: str, expected_version: Optional[int] = None) -> dict[str, Any]:
        with tracer.start_as_current_span("fsplane.delete_store"):
            try:
                registry.delete_store(name, expected_version=expected_version)
            except KeyError:
                raise HTTPException(status_code=404, detail=f"store {name!r} not found")
            return {"deleted": name, "registry_version": registry.version}

    @app.get("/feature-sets/{project}/{name}/stores")
    async def subscribed_stores(project: str, name: str) -> SubscribedStoresResponse:
        ref = FeatureSetReference(project, name)
        snapshot = registry.snapshot()
        return SubscribedStoresResponse(
            reference=str(ref),
            stores=sorted(snapshot.get_subscribed_stores(ref)),
            registry_version=snapshot.version,
        )

    @app.get("/jobs")
    async def list_jobs() -> list[dict[str, Any]]:
        return [job.to_dict() for job in await reconciler.list_jobs()]

    @app.post("/jobs/{store}/reset")
    async def reset_job(store: str) -> dict[str, Any]:
        try:
            job = await reconciler.reset_job(store)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"no job for store {store!r}")
        return job.to_dict()

    @app.post("/admin/reconcile")
    async def trigger_reconcile() -> CycleResponse:
        with tracer.start_as_current_span("fsplane.reconcile_trigger"):
            result = await reconciler.reconcile_once()
            return CycleResponse(
                version=result.version,
                actions=[f"{a.kind.value}:{a.store_name}" for a in result.actions],
                superseded=result.superseded,
                conflict=result.conflict,
            )

    @app.post("/admin/gc-trigger", status_code=status.HTTP_202_ACCEPTED)
    async def trigger_gc() -> GcResponse:
        if gc_scheduler is None:
            raise HTTPException(status_code=404, detail="garbage collection disabled")
        with tracer.start_as_current_span("fsplane.gc_trigger"):
            removed = await gc_scheduler.trigger()
            return GcResponse(removed=[job.id for job in removed])

    return app


__all__ = [
    "FeatureSetPayload",
    "StorePayload",
    "SubscriptionPayload",
    "CycleResponse",
    "GcResponse",
    "create_app",
]
