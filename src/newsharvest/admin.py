from __future__ import annotations

import logging
import os
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from . import __version__
from .cache.keys import InvalidationScopes
from .config import ConfigError, config_to_dict, get_runtime_config, set_runtime_config
from .models import JobOptions, JobState
from .pipelines.batch import enqueue_batch
from .services.runtime import Runtime
from .services.sources_service import enabled_sources, list_source_rows
from .storage import get_source
from .utils import log_event

ADMIN_TOKEN_HEADER = "X-Admin-Token"


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("NH_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get(ADMIN_TOKEN_HEADER) != token:
        raise HTTPException(status_code=401, detail="unauthorized")


class BatchRequest(BaseModel):
    source_ids: list[str] | None = None
    attempts: int | None = None
    backoff_seconds: float | None = None
    timeout_seconds: float | None = None


class InvalidateRequest(BaseModel):
    prefix: str | None = None
    owner_ids: list[str] | None = None
    domains: list[str] | None = None


class RuntimeConfigRequest(BaseModel):
    config: dict


def create_app(runtime: Runtime) -> FastAPI:
    app = FastAPI(title="NewsHarvest Admin API")
    logger = logging.getLogger("newsharvest.admin")
    admin = APIRouter(dependencies=[Depends(_require_admin_token)])

    @app.get("/health")
    def health() -> dict[str, object]:
        cache_health = runtime.cache.health()
        queue_stats = runtime.queue.stats()
        return {
            "ok": True,
            "version": __version__,
            "time": datetime.now(tz=timezone.utc).isoformat(),
            "cache": cache_health,
            "queue": {
                "backend": queue_stats["backend"],
                "available": queue_stats["backend_available"],
            },
        }

    @app.get("/jobs/stats")
    def job_stats() -> dict[str, object]:
        return runtime.queue.stats()

    @app.get("/jobs")
    def jobs(limit: int = 20, state: str | None = None) -> list[dict[str, object]]:
        try:
            job_state = JobState(state) if state else None
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"unknown state {state}") from exc
        return [job.to_dict() for job in runtime.queue.list_jobs(limit=limit, state=job_state)]

    @app.get("/jobs/{job_id}")
    def job_status(job_id: str) -> dict[str, object]:
        record = runtime.queue.get_status(job_id)
        if record is None:
            raise HTTPException(status_code=404, detail="job_not_found")
        return record.to_dict()

    @app.get("/sources")
    def sources() -> list[dict[str, object]]:
        return list_source_rows(runtime.connections.get())

    @app.get("/cache/stats")
    def cache_stats() -> dict[str, object]:
        return runtime.cache.stats()

    @app.get("/cache/breaker")
    def cache_breaker() -> dict[str, object]:
        return runtime.cache.breaker.status().to_dict()

    @admin.post("/batches")
    def create_batch(payload: BatchRequest) -> dict[str, object]:
        conn = runtime.connections.get()
        if payload.source_ids:
            selected = []
            for source_id in payload.source_ids:
                source = get_source(conn, source_id)
                if source is None:
                    raise HTTPException(status_code=404, detail=f"source_not_found: {source_id}")
                selected.append(source)
        else:
            selected = enabled_sources(conn)
        if not selected:
            raise HTTPException(status_code=400, detail="no_sources")
        options = None
        overrides = payload.model_dump(exclude_none=True, exclude={"source_ids"})
        if overrides:
            options = JobOptions.from_dict(
                overrides, JobOptions(attempts=1, timeout_seconds=0)
            )
        record = enqueue_batch(runtime.queue, selected, options)
        log_event(
            logger,
            logging.INFO,
            "batch_enqueued",
            job_id=record.id,
            sources=len(selected),
            synchronous=record.executed_synchronously,
        )
        return record.to_dict()

    @admin.delete("/jobs/{job_id}")
    def cancel_job(job_id: str) -> dict[str, object]:
        if not runtime.queue.cancel(job_id):
            raise HTTPException(status_code=409, detail="job_not_cancellable")
        log_event(logger, logging.INFO, "job_cancel_requested", job_id=job_id)
        return {"job_id": job_id, "cancel_requested": True}

    @admin.delete("/cache/keys/{key:path}")
    def delete_cache_key(key: str) -> dict[str, object]:
        return {"key": key, "deleted": runtime.cache.delete(key)}

    @admin.post("/cache/invalidate")
    def invalidate(payload: InvalidateRequest) -> dict[str, object]:
        removed = 0
        if payload.prefix is not None:
            try:
                removed += runtime.cache.delete_by_prefix(payload.prefix)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        if payload.owner_ids or payload.domains:
            scopes = InvalidationScopes()
            for owner_id in payload.owner_ids or []:
                scopes.add(owner_id=owner_id)
            for domain in payload.domains or []:
                scopes.add(domain=domain)
            removed += scopes.flush(runtime.cache)
        log_event(logger, logging.INFO, "cache_invalidated", removed=removed)
        return {"removed": removed}

    @admin.post("/cache/breaker/reset")
    def reset_breaker() -> dict[str, object]:
        runtime.cache.breaker.reset()
        return runtime.cache.breaker.status().to_dict()

    @admin.get("/admin/config/runtime")
    def runtime_config_get() -> dict[str, object]:
        try:
            cfg = get_runtime_config(runtime.connections.get(), config_to_dict(runtime.config))
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"config": cfg}

    @admin.put("/admin/config/runtime")
    def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
        try:
            set_runtime_config(runtime.connections.get(), payload.config)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        log_event(logger, logging.INFO, "runtime_config_saved")
        # Read by load_effective_config when the next process starts.
        return {"status": "ok", "restart_required": True}

    app.include_router(admin)
    return app
