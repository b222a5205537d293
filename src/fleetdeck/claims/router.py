"""Claim routes, called by workers before they start on an issue."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..deps import Ctx
from .models import ClaimRequest, ReleaseRequest
from .service import AlreadyClaimed, ClaimError

router = APIRouter(prefix="/api/claim", tags=["claims"])


def _error(e: ClaimError) -> JSONResponse:
    return JSONResponse(status_code=e.status_code, content={"approved": False, "error": e.message})


@router.post("")
async def claim(body: ClaimRequest, ctx: Ctx):
    try:
        return await ctx.claims.claim(body.issue, body.machine)
    except AlreadyClaimed as e:
        return JSONResponse(
            status_code=409,
            content={"approved": False, "issue": body.issue, "claimed_by": e.owner},
        )
    except ClaimError as e:
        return _error(e)


@router.post("/release")
async def release(body: ReleaseRequest, ctx: Ctx):
    try:
        released = await ctx.claims.release(body.issue, body.machine)
    except ClaimError as e:
        return _error(e)
    return {"ok": True, "issue": body.issue, "released": released}


@router.get("/{issue}")
async def claim_status(issue: int, ctx: Ctx):
    try:
        owner = await ctx.claims.owner(issue)
    except ClaimError as e:
        return _error(e)
    return {"issue": issue, "claimed_by": owner}
