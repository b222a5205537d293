"""FastAPI app factory."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import FleetConfig
from .context import FleetContext

logger = logging.getLogger(__name__)


async def _reaper_loop(ctx: FleetContext) -> None:
    """Release claims of machines that stopped heartbeating."""
    while True:
        await asyncio.sleep(ctx.config.reaper_interval)
        try:
            reaped = await ctx.claims.reap_stale(
                ctx.team.developers, ctx.config.claim_stale_after
            )
            if reaped:
                await ctx.hub.refresh()
        except Exception:
            logger.exception("Stale claim reaper pass failed")


async def _token_cleanup_loop(ctx: FleetContext) -> None:
    """Drop expired invite and join tokens."""
    while True:
        await asyncio.sleep(ctx.config.invite_cleanup_interval)
        try:
            purged = ctx.invites.cleanup() + ctx.joins.store.purge_expired()
            if purged:
                logger.info("Purged %d expired tokens", purged)
        except Exception:
            logger.exception("Token cleanup pass failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """App lifespan: start the push hub and the background maintenance loops."""
    ctx: FleetContext = app.state.ctx
    ctx.hub.start()

    tasks = [asyncio.create_task(_token_cleanup_loop(ctx))]
    if ctx.claims.enabled:
        tasks.append(asyncio.create_task(_reaper_loop(ctx)))
    else:
        logger.info("No server GitHub token; claims and the stale claim reaper are disabled")

    logger.info(
        "fleetdeck ready (auth=%s, state=%s)", ctx.auth.mode, ctx.paths.state_dir
    )
    yield

    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await ctx.aclose()


def create_app(
    config: FleetConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    `transport` replaces the network under the GitHub client (tests use
    an in-memory transport).
    """
    config = config or FleetConfig.load()
    ctx = FleetContext.build(config, transport=transport)

    app = FastAPI(
        title="fleetdeck",
        description="Control plane for a fleet of autonomous delivery pipeline workers",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.ctx = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.public_url, "http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from .auth.router import router as auth_router
    from .claims.router import router as claims_router
    from .fleet.router import router as fleet_router
    from .machines.router import join_router
    from .machines.router import router as machines_router
    from .metrics.router import router as metrics_router
    from .realtime.router import events_router
    from .realtime.router import router as realtime_router
    from .team.router import connect_router, invite_router
    from .team.router import router as team_router

    app.include_router(auth_router)
    app.include_router(claims_router)
    app.include_router(fleet_router)
    app.include_router(machines_router)
    app.include_router(join_router)
    app.include_router(metrics_router)
    app.include_router(realtime_router)
    app.include_router(events_router)
    app.include_router(team_router)
    app.include_router(connect_router)
    app.include_router(invite_router)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "uptime_s": int(time.time() - ctx.started_at),
            "connections": ctx.hub.connections,
            "auth_mode": ctx.auth.mode,
            "watcher": ctx.hub.watcher_active,
        }

    return app
