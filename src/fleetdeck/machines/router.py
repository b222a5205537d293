"""Machine routes: registry CRUD, health checks, scaling and join tokens."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse

from ..deps import Ctx, Protected
from .models import JoinTokenRequest, MachineCreate, MachineUpdate, ScaleRequest
from .remote import RemoteError
from .service import MachineConflict, MachineNotFound

router = APIRouter(prefix="/api", tags=["machines"], dependencies=Protected)

# Fetched by `curl | bash` on the new machine, so it cannot carry a session.
join_router = APIRouter(prefix="/api/join", tags=["machines"])


@router.get("/machines")
async def list_machines(ctx: Ctx):
    return {"machines": ctx.machines.describe()}


@router.post("/machines", status_code=201)
async def add_machine(body: MachineCreate, ctx: Ctx):
    try:
        record = ctx.machines.add(**body.model_dump())
    except MachineConflict as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    await ctx.hub.refresh()
    return record.to_dict()


@router.patch("/machines/{name}")
async def update_machine(name: str, body: MachineUpdate, ctx: Ctx):
    try:
        record = ctx.machines.update(name, **body.model_dump(exclude_unset=True))
    except MachineNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    return record.to_dict()


@router.delete("/machines/{name}")
async def remove_machine(name: str, ctx: Ctx):
    try:
        ctx.machines.remove(name)
    except MachineNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    await ctx.hub.refresh()
    return {"ok": True, "removed": name}


@router.post("/machines/{name}/health-check")
async def health_check(name: str, ctx: Ctx):
    try:
        health = await ctx.machines.health_check(name)
    except MachineNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    return {"machine": name, **health}


@router.post("/machines/{name}/scale")
async def scale_machine(name: str, body: ScaleRequest, ctx: Ctx):
    try:
        return await ctx.machines.scale(name, body.workers)
    except MachineNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    except RemoteError as e:
        raise HTTPException(status_code=502, detail=e.message) from None


@router.get("/join-token")
async def list_join_tokens(ctx: Ctx):
    return {"tokens": ctx.joins.tokens()}


@router.post("/join-token", status_code=201)
async def create_join_token(body: JoinTokenRequest, ctx: Ctx):
    return ctx.joins.issue(body.label, body.max_workers)


@join_router.get("/{token}", response_class=PlainTextResponse)
async def redeem_join_token(token: str, request: Request, ctx: Ctx):
    host = request.client.host if request.client else ""
    script = ctx.joins.redeem(token, host=host)
    return PlainTextResponse(script, media_type="text/x-shellscript")
