"""Read-only analytics router over the shared log store."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from codemeter.budgets import BudgetMonitor
from codemeter.date_utils import DAY_MS, now_ms
from codemeter.db.factory import (
    get_analytics_repository,
    get_project_repository,
    get_sync_state_repository,
)
from codemeter.db.log_store import LogStore

logger = logging.getLogger("codemeter.api")

analytics_router = APIRouter(prefix="/api/analytics", tags=["analytics"])

DEFAULT_RANGE_DAYS = 30


def _get_store(request: Request) -> LogStore:
    store = getattr(request.app.state, "log_store", None)
    if not store:
        raise HTTPException(status_code=503, detail="Log store not initialized")
    return store


def _resolve_range(start_ms: Optional[int], end_ms: Optional[int]) -> tuple[int, int]:
    end = end_ms if end_ms is not None else now_ms()
    start = start_ms if start_ms is not None else max(0, end - DEFAULT_RANGE_DAYS * DAY_MS)
    if start > end:
        raise HTTPException(status_code=400, detail="start_ms must not be after end_ms")
    return start, end


@analytics_router.get("/projects")
async def list_projects(request: Request):
    projects = await get_project_repository(_get_store(request)).get_all()
    return {"count": len(projects), "items": [p.model_dump() for p in projects]}


@analytics_router.get("/costs")
async def get_cost_totals(
    request: Request,
    start_ms: Optional[int] = Query(None, ge=0),
    end_ms: Optional[int] = Query(None, ge=0),
):
    """Cost totals per project over a time range."""
    start, end = _resolve_range(start_ms, end_ms)
    totals = await get_analytics_repository(_get_store(request)).get_cost_totals_by_project(start, end)
    return {"startMs": start, "endMs": end, "items": [t.model_dump() for t in totals]}


@analytics_router.get("/projects/{project_key}/metrics")
async def get_project_metrics(
    request: Request,
    project_key: str,
    start_ms: Optional[int] = Query(None, ge=0),
    end_ms: Optional[int] = Query(None, ge=0),
):
    start, end = _resolve_range(start_ms, end_ms)
    metrics = await get_analytics_repository(_get_store(request)).get_project_metrics(project_key, start, end)
    return metrics.model_dump()


@analytics_router.get("/heatmap")
async def get_hourly_heatmap(
    request: Request,
    start_ms: Optional[int] = Query(None, ge=0),
    end_ms: Optional[int] = Query(None, ge=0),
    utc_offset_minutes: int = Query(0, ge=-14 * 60, le=14 * 60),
):
    start, end = _resolve_range(start_ms, end_ms)
    heatmaps = await get_analytics_repository(_get_store(request)).get_hourly_heatmap(
        start, end, utc_offset_minutes
    )
    return {"items": [h.model_dump() for h in heatmaps]}


@analytics_router.get("/daily")
async def get_daily_costs(
    request: Request,
    start_ms: Optional[int] = Query(None, ge=0),
    end_ms: Optional[int] = Query(None, ge=0),
    project_key: Optional[str] = Query(None),
):
    start, end = _resolve_range(start_ms, end_ms)
    days = await get_analytics_repository(_get_store(request)).get_daily_costs(start, end, project_key)
    return {"items": [d.model_dump() for d in days]}


@analytics_router.get("/unattributed")
async def get_unattributed_summary(
    request: Request,
    start_ms: Optional[int] = Query(None, ge=0),
    end_ms: Optional[int] = Query(None, ge=0),
):
    start, end = _resolve_range(start_ms, end_ms)
    summary = await get_analytics_repository(_get_store(request)).get_unattributed_summary(start, end)
    return summary.model_dump()


@analytics_router.get("/conflicts")
async def get_conflict_summary(
    request: Request,
    start_ms: Optional[int] = Query(None, ge=0),
    end_ms: Optional[int] = Query(None, ge=0),
):
    """Events attributed to a project with low confidence."""
    start, end = _resolve_range(start_ms, end_ms)
    summary = await get_analytics_repository(_get_store(request)).get_conflict_summary(start, end)
    return summary.model_dump()


@analytics_router.get("/review")
async def get_review_candidates(request: Request, limit: int = Query(200, ge=1, le=1000)):
    candidates = await get_analytics_repository(_get_store(request)).get_review_candidates(limit=limit)
    return {"count": len(candidates), "items": [c.model_dump() for c in candidates]}


@analytics_router.get("/budgets")
async def get_budget_status(request: Request):
    statuses = await BudgetMonitor(_get_store(request)).evaluate_budgets()
    return {"items": [s.model_dump() for s in statuses]}


@analytics_router.get("/sync-state")
async def get_sync_state(request: Request):
    states = await get_sync_state_repository(_get_store(request)).list_all()
    return {"items": [s.model_dump() for s in states]}
