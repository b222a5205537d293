"""Live endpoints: the dashboard WebSocket and an SSE fallback."""

from __future__ import annotations

import asyncio
import json
import time

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from sse_starlette.sse import EventSourceResponse

from ..deps import Ctx, Protected, websocket_session
from .hub import QueueSubscriber, WebSocketSubscriber

router = APIRouter(tags=["realtime"])
events_router = APIRouter(prefix="/api/events", tags=["realtime"], dependencies=Protected)


@router.websocket("/ws")
async def fleet_socket(websocket: WebSocket):
    """Full FleetState on connect, then again whenever it changes.

    Incoming messages are read and ignored; the loop only exists to
    notice the client going away.
    """
    if websocket_session(websocket) is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    hub = websocket.app.state.ctx.hub
    await websocket.accept()
    subscriber = WebSocketSubscriber(websocket)
    if not await hub.subscribe(subscriber):
        return
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(subscriber)


@events_router.get("/stream")
async def event_stream(ctx: Ctx):
    """SSE stream carrying the same snapshots as /ws."""

    async def generate():
        subscriber = QueueSubscriber()
        if not await ctx.hub.subscribe(subscriber):
            return
        try:
            while True:
                try:
                    payload = await asyncio.wait_for(subscriber.queue.get(), timeout=30.0)
                except TimeoutError:
                    yield {"data": json.dumps({"type": "heartbeat", "timestamp": time.time()})}
                    continue
                if payload is None:
                    break
                yield {"data": payload}
        finally:
            ctx.hub.unsubscribe(subscriber)

    return EventSourceResponse(generate())
