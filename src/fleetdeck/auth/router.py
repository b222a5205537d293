"""Auth routes: login flows, logout and the current observer."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from ..claims.github import GitHubError
from ..context import FleetContext
from ..deps import Ctx, CurrentSession
from .models import LoginInfo, TokenLoginRequest
from .provider import AuthError, OAuthProvider
from .service import COOKIE_NAME, Session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


def _set_cookie(response: Response, ctx: FleetContext, session: Session) -> None:
    response.set_cookie(
        COOKIE_NAME,
        ctx.sessions.encode(session),
        max_age=int(ctx.sessions.ttl_s),
        httponly=True,
        samesite="lax",
    )


async def _login(ctx: FleetContext, credential: str) -> Session:
    """Authenticate then authorize; only authorized observers get a session."""
    try:
        identity = await ctx.auth.authenticate(credential)
        authorized = await ctx.auth.authorize(identity)
    except AuthError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message) from None
    except GitHubError as e:
        logger.warning("Login failed against GitHub: %s", e.message)
        raise HTTPException(status_code=502, detail=e.message) from None
    if not authorized:
        logger.info("Denied %s: insufficient permission", identity.login)
        raise HTTPException(
            status_code=403, detail=f"{identity.login} lacks access to the dashboard repository"
        )
    return ctx.sessions.create(identity, authorized=True)


@router.get("/login", response_model=LoginInfo)
async def login_info(ctx: Ctx):
    """Public: tells the frontend which login flow to offer."""
    login_url = {"oauth": "/auth/github", "token": "/auth/token-login"}.get(ctx.auth.mode, "")
    return LoginInfo(auth_mode=ctx.auth.mode, login_url=login_url)


@router.get("/auth/github")
async def github_login(ctx: Ctx):
    if not isinstance(ctx.auth, OAuthProvider):
        raise HTTPException(status_code=404, detail="OAuth login is not configured")
    return RedirectResponse(ctx.auth.authorize_url(), status_code=302)


@router.get("/auth/callback")
async def github_callback(ctx: Ctx, code: str = ""):
    if not isinstance(ctx.auth, OAuthProvider):
        raise HTTPException(status_code=404, detail="OAuth login is not configured")
    session = await _login(ctx, code)
    response = RedirectResponse("/", status_code=302)
    _set_cookie(response, ctx, session)
    return response


@router.post("/auth/token-login")
async def token_login(request: Request, ctx: Ctx):
    """Token mode: accepts `username` as a form field or JSON body."""
    if ctx.auth.mode != "token":
        raise HTTPException(status_code=404, detail="Token login is not configured")
    if request.headers.get("content-type", "").startswith("application/json"):
        body = TokenLoginRequest.model_validate(await request.json())
        username = body.username
    else:
        form = await request.form()
        username = str(form.get("username", ""))
    session = await _login(ctx, username)
    response = JSONResponse({"ok": True, "user": session.public()})
    _set_cookie(response, ctx, session)
    return response


@router.get("/auth/logout")
async def logout(request: Request, ctx: Ctx):
    session = ctx.sessions.resolve(request.cookies.get(COOKIE_NAME))
    if session is not None:
        ctx.sessions.delete(session.sid)
    response = RedirectResponse("/login", status_code=302)
    response.delete_cookie(COOKIE_NAME)
    return response


@router.get("/api/me")
async def me(session: CurrentSession):
    return session.public()
