"""
Operator job endpoints.

POST /v1/jobs/{name}/trigger  Enqueue a registered job now.
GET  /v1/jobs/status          Scheduler/queue status and recent outcomes.
GET  /v1/jobs/logs            Persisted job records, newest first.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from shared.utils.logging import get_logger

from api.dependencies import get_runtime
from scheduler.runtime import SyncRuntime

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/jobs", tags=["jobs"])


@router.post("/{name}/trigger", status_code=202)
async def trigger_job(name: str, runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    try:
        job = runtime.trigger(name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown job: {name}")
    return {"status": "enqueued", "job": job}


@router.get("/status")
async def job_status(runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return await runtime.status()


@router.get("/logs")
async def job_logs(
    limit: int = Query(50, ge=1, le=500),
    runtime: SyncRuntime = Depends(get_runtime),
) -> list[dict[str, Any]]:
    records = await runtime.logs(limit)
    return [r.model_dump(mode="json") for r in records]
