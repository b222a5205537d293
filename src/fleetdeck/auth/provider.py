"""Auth provider variants selected once at startup.

All variants share one contract: `authenticate` turns a credential into
an Identity, and `authorize` decides whether that identity may observe
the fleet by checking its permission on the dashboard repository.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlencode

from ..claims.github import GitHubClient
from ..config import FleetConfig

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Raised when a credential cannot be turned into an identity."""

    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass
class Identity:
    login: str
    avatar_url: str = ""
    access_token: str = ""


class AuthProvider(Protocol):
    @property
    def mode(self) -> str: ...

    async def authenticate(self, credential: str) -> Identity: ...

    async def authorize(self, identity: Identity) -> bool: ...


class OAuthProvider:
    """Delegated flow: one-time code -> user token -> identity -> permission."""

    def __init__(
        self,
        client: GitHubClient,
        client_id: str,
        client_secret: str,
        repo: str,
        allowed: list[str],
    ):
        self.client = client
        self.client_id = client_id
        self.client_secret = client_secret
        self.repo = repo
        self.allowed = set(allowed)

    @property
    def mode(self) -> str:
        return "oauth"

    def authorize_url(self) -> str:
        query = urlencode({"client_id": self.client_id, "scope": "read:org repo"})
        return f"{self.client.web_url}/login/oauth/authorize?{query}"

    async def authenticate(self, credential: str) -> Identity:
        if not credential:
            raise AuthError("Missing code parameter", 400)
        token = await self.client.exchange_code(self.client_id, self.client_secret, credential)
        user = await self.client.get_user(token)
        return Identity(
            login=user["login"], avatar_url=user.get("avatar_url", ""), access_token=token
        )

    async def authorize(self, identity: Identity) -> bool:
        permission = await self.client.get_permission(
            self.repo, identity.login, token=identity.access_token
        )
        return permission in self.allowed


class TokenProvider:
    """Direct verification: a claimed login checked with the server's own credential."""

    def __init__(self, client: GitHubClient, repo: str, allowed: list[str]):
        self.client = client
        self.repo = repo
        self.allowed = set(allowed)

    @property
    def mode(self) -> str:
        return "token"

    async def authenticate(self, credential: str) -> Identity:
        login = credential.strip()
        if not login:
            raise AuthError("Please enter a GitHub username", 400)
        user = await self.client.get_user_by_login(login)
        if user is None:
            raise AuthError(f"Unknown GitHub user: {login}")
        return Identity(login=user.get("login", login), avatar_url=user.get("avatar_url", ""))

    async def authorize(self, identity: Identity) -> bool:
        permission = await self.client.get_permission(self.repo, identity.login)
        return permission in self.allowed


class DisabledProvider:
    """No credentials configured: every observer is the local operator."""

    @property
    def mode(self) -> str:
        return "disabled"

    async def authenticate(self, credential: str) -> Identity:
        return Identity(login="local")

    async def authorize(self, identity: Identity) -> bool:
        return True


def create_provider(config: FleetConfig, client: GitHubClient | None) -> AuthProvider:
    mode = config.auth_mode
    if mode != "disabled" and client is None:
        raise ValueError(f"Auth mode {mode} requires a GitHub client")
    if mode == "oauth":
        provider: AuthProvider = OAuthProvider(
            client,
            config.github_client_id,
            config.github_client_secret,
            config.dashboard_repo,
            config.allowed_permissions,
        )
    elif mode == "token":
        provider = TokenProvider(client, config.dashboard_repo, config.allowed_permissions)
    else:
        provider = DisabledProvider()
    logger.info("Auth mode: %s", provider.mode)
    return provider
