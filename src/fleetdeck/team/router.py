"""Team routes: developer heartbeats, team view and invites."""

from __future__ import annotations

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from ..deps import Ctx, Protected
from ..stores.tokens import TokenError
from .models import ConnectDisconnect, ConnectHeartbeat

router = APIRouter(prefix="/api/team", tags=["team"], dependencies=Protected)

# Pushed by `connect` agents on developer machines, which hold no session.
connect_router = APIRouter(prefix="/api/connect", tags=["team"])
invite_router = APIRouter(prefix="/api/team/invite", tags=["team"])


@connect_router.post("/heartbeat")
async def heartbeat(body: ConnectHeartbeat, ctx: Ctx):
    payload = body.model_dump(exclude={"developer_id", "machine_name"})
    ctx.team.heartbeat(body.developer_id, body.machine_name, payload)
    await ctx.hub.refresh()
    return {"ok": True}


@connect_router.post("/disconnect")
async def disconnect(body: ConnectDisconnect, ctx: Ctx):
    removed = ctx.team.disconnect(body.developer_id, body.machine_name)
    await ctx.hub.refresh()
    return {"ok": removed}


@router.get("")
async def team(ctx: Ctx):
    return ctx.team.view()


@router.get("/activity")
async def team_activity(ctx: Ctx, limit: int = Query(100, ge=1, le=1000)):
    return {"events": ctx.team.activity(limit)}


@router.post("/invite", status_code=201)
async def create_invite(ctx: Ctx):
    return ctx.invites.create()


@invite_router.get("/{token}")
async def verify_invite(token: str, ctx: Ctx):
    try:
        return ctx.invites.verify(token)
    except TokenError as e:
        return JSONResponse(status_code=404, content={"valid": False, "error": e.message})
