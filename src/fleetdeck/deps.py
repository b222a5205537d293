"""FastAPI dependency injection."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, WebSocket

from .auth.service import COOKIE_NAME, LOCAL_SESSION, Session
from .context import FleetContext


def get_context(request: Request) -> FleetContext:
    return request.app.state.ctx


Ctx = Annotated[FleetContext, Depends(get_context)]


def session_for(ctx: FleetContext, cookie: str | None) -> Session | None:
    """Resolve an observer session; everyone is the local operator when auth is off."""
    if ctx.auth.mode == "disabled":
        return LOCAL_SESSION
    session = ctx.sessions.resolve(cookie)
    if session is None or not session.authorized:
        return None
    return session


async def require_session(request: Request) -> Session:
    """Re-validate the session cookie on every request."""
    session = session_for(get_context(request), request.cookies.get(COOKIE_NAME))
    if session is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return session


CurrentSession = Annotated[Session, Depends(require_session)]
Protected = [Depends(require_session)]


def websocket_session(websocket: WebSocket) -> Session | None:
    ctx: FleetContext = websocket.app.state.ctx
    return session_for(ctx, websocket.cookies.get(COOKIE_NAME))
