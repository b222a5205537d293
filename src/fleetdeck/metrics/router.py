"""Metrics routes: history, DORA grades, alerts and cost breakdown."""

from __future__ import annotations

import time

from fastapi import APIRouter, Query

from ..deps import Ctx, Protected
from ..stores.events_db import load_events
from ..stores.readers import read_budget, read_cost_entries
from .dora import DAY, compute_dora
from .history import cost_breakdown, metrics_history, stage_performance

router = APIRouter(prefix="/api", tags=["metrics"], dependencies=Protected)


@router.get("/metrics/history")
async def history(ctx: Ctx, period: int = Query(30, ge=1, le=365)):
    now = time.time()
    events = await load_events(ctx.paths, now - period * DAY)
    return metrics_history(events, now, period)


@router.get("/metrics/dora")
async def dora(ctx: Ctx, period: int = Query(30, ge=1, le=365)):
    now = time.time()
    events = await load_events(ctx.paths, now - period * DAY)
    return compute_dora(events, now, period).to_dict()


@router.get("/metrics/stage-performance")
async def stages(ctx: Ctx, period: int = Query(7, ge=1, le=365)):
    now = time.time()
    events = await load_events(ctx.paths, now - period * DAY)
    return {"stages": stage_performance(events, now, period)}


@router.get("/alerts")
async def alerts(ctx: Ctx):
    state = await ctx.snapshot()
    return {"alerts": [a.to_dict() for a in state.alerts]}


@router.get("/costs/breakdown")
async def costs(ctx: Ctx, period: int = Query(7, ge=1, le=365)):
    budget = read_budget(ctx.paths.budget_file)
    entries = read_cost_entries(ctx.paths.costs_file)
    return cost_breakdown(entries, budget.daily_budget_usd, time.time(), period)
