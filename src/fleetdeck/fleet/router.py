"""Fleet routes: snapshot, per-item detail and human interventions."""

from __future__ import annotations

import re
import time

from fastapi import APIRouter, Body, HTTPException, Query
from fastapi.responses import Response

from ..context import FleetContext
from ..deps import Ctx, Protected
from ..metrics.dora import DAY
from ..stores.events_db import load_events
from ..stores.readers import read_daemon_snapshot
from . import control, detail
from .models import BrakeRequest, BulkInterventionRequest, InterventionRequest, PauseRequest

router = APIRouter(prefix="/api", tags=["fleet"], dependencies=Protected)

_RANGE_RE = re.compile(r"^\s*(\d+)")


async def _history(ctx: FleetContext, now: float):
    events = await load_events(ctx.paths, now - ctx.config.lookback_days * DAY)
    return events, read_daemon_snapshot(ctx.paths.daemon_state)


@router.get("/status")
async def fleet_status(ctx: Ctx):
    state = await ctx.snapshot()
    return Response(content=state.to_json(), media_type="application/json")


@router.get("/agents")
async def agents(ctx: Ctx):
    state = await ctx.snapshot()
    return state.to_dict()["agents"]


@router.get("/pipeline/{issue}")
async def pipeline(issue: int, ctx: Ctx):
    now = time.time()
    events, snapshot = await _history(ctx, now)
    return detail.pipeline_detail(issue, events, snapshot, now)


@router.get("/timeline")
async def timeline(ctx: Ctx, range_: str = Query("24h", alias="range")):
    match = _RANGE_RE.match(range_)
    hours = int(match.group(1)) if match else 24
    now = time.time()
    events, snapshot = await _history(ctx, now)
    return detail.timeline(events, snapshot, now, hours or 24)


@router.get("/activity")
async def activity(
    ctx: Ctx,
    limit: int = Query(50, ge=0),
    offset: int = Query(0, ge=0),
    type: str = Query("all"),
    issue: int | None = None,
):
    events, snapshot = await _history(ctx, time.time())
    return detail.activity(events, snapshot, limit, offset, type, issue)


@router.get("/logs/{issue}")
async def logs(issue: int, ctx: Ctx):
    return {"issue": issue, "content": detail.log_tail(ctx.paths, issue)}


@router.get("/artifacts/{issue}/{kind}")
async def artifact(issue: int, kind: str, ctx: Ctx):
    snapshot = read_daemon_snapshot(ctx.paths.daemon_state)
    worktree = detail.worktree_path(snapshot, issue)
    return {"issue": issue, "type": kind, "content": detail.read_artifact(worktree, kind)}


@router.post("/intervention/bulk")
async def bulk_intervention(body: BulkInterventionRequest, ctx: Ctx):
    results = control.bulk_intervene(ctx.paths, body.issues, body.action, body.message)
    await ctx.hub.refresh()
    return {"results": results}


@router.post("/intervention/{issue}/{action}")
async def intervention(
    issue: int, action: str, ctx: Ctx, body: InterventionRequest | None = Body(None)
):
    result = control.intervene(ctx.paths, issue, action, body.message if body else "")
    await ctx.hub.refresh()
    return result


@router.post("/emergency-brake")
async def emergency_brake(ctx: Ctx, body: BrakeRequest | None = Body(None)):
    result = control.emergency_brake(ctx.paths, body.reason if body else "emergency brake")
    await ctx.hub.refresh()
    return result


@router.get("/daemon/config")
async def daemon_config(ctx: Ctx):
    return control.daemon_config(ctx.paths)


@router.post("/daemon/{action}")
async def daemon_action(action: str, ctx: Ctx, body: PauseRequest | None = Body(None)):
    if action not in ("pause", "resume"):
        raise HTTPException(status_code=400, detail=f"Unknown daemon action: {action}")
    flag = control.set_paused(ctx.paths, action == "pause", body.reason if body else "")
    await ctx.hub.refresh()
    return {"ok": True, "pause": flag}
