"""
Leaderboard read endpoints. Only settled periods are ever ranked.

GET /v1/leaderboard/week/{period}      Ranking for one settled period.
GET /v1/leaderboard/season             Ranking across all settled periods.
GET /v1/subjects/{subject_id}/stats    Totals, weekly breakdown, favorite teams.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from api.dependencies import get_runtime
from scheduler.runtime import SyncRuntime

router = APIRouter(prefix="/v1", tags=["leaderboard"])


@router.get("/leaderboard/week/{period}")
async def weekly_leaderboard(period: str, runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    entries = await runtime.weekly_leaderboard(period)
    return {"period": period, "entries": [e.model_dump(mode="json") for e in entries]}


@router.get("/leaderboard/season")
async def season_leaderboard(runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    entries = await runtime.season_leaderboard()
    return {"entries": [e.model_dump(mode="json") for e in entries]}


@router.get("/subjects/{subject_id}/stats")
async def subject_stats(subject_id: str, runtime: SyncRuntime = Depends(get_runtime)) -> dict[str, Any]:
    stats = await runtime.subject_stats(subject_id)
    return stats.model_dump(mode="json")
