"""GitHub REST client for identity, permission and issue label operations.

Issue labels are the only shared ground truth for work-item claims, so
every call here is time-bounded and failures surface as GitHubError.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = "fleetdeck"


class GitHubError(Exception):
    """Raised when a GitHub API request fails."""

    def __init__(self, message: str, status_code: int = 0):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class GitHubClient:
    """Async client for the parts of the GitHub API the control plane uses.

    `token` is the server-held credential; identity calls made on behalf
    of an OAuth user pass that user's token explicitly.
    """

    def __init__(
        self,
        token: str = "",
        api_url: str = "https://api.github.com",
        web_url: str = "https://github.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token = token
        self.web_url = web_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={"Accept": "application/vnd.github+json", "User-Agent": USER_AGENT},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        allow_404: bool = False,
    ) -> Any:
        """Authenticated request returning decoded JSON (None for empty bodies).

        Raises:
            GitHubError: On HTTP errors, timeouts or connection failures.
        """
        headers = {}
        credential = token if token is not None else self.token
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.TimeoutException:
            raise GitHubError(f"GitHub request timed out: {method} {path}") from None
        except httpx.HTTPError as e:
            raise GitHubError(f"Cannot reach GitHub: {e}") from None

        if response.status_code == 404 and allow_404:
            return None
        if response.status_code >= 400:
            detail = response.text[:200]
            try:
                body = response.json()
                if isinstance(body, dict):
                    detail = body.get("message", detail)
            except ValueError:
                pass
            raise GitHubError(
                f"GitHub API error ({response.status_code}): {detail}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        return response.json()

    # -- Labels -------------------------------------------------------------

    async def list_labels(self, repo: str, number: int) -> list[str]:
        data = await self._request("GET", f"/repos/{repo}/issues/{number}/labels")
        return [label["name"] for label in data or [] if isinstance(label, dict)]

    async def add_labels(self, repo: str, number: int, labels: list[str]) -> list[str]:
        data = await self._request(
            "POST", f"/repos/{repo}/issues/{number}/labels", json={"labels": labels}
        )
        return [label["name"] for label in data or [] if isinstance(label, dict)]

    async def remove_label(self, repo: str, number: int, label: str) -> None:
        """Remove a label; a label that is already gone is not an error."""
        await self._request(
            "DELETE",
            f"/repos/{repo}/issues/{number}/labels/{quote(label, safe='')}",
            allow_404=True,
        )

    async def issues_with_label(self, repo: str, label: str, per_page: int = 100) -> list[int]:
        """Open issues carrying label, across every result page."""
        numbers: list[int] = []
        page = 1
        while True:
            data = await self._request(
                "GET",
                f"/repos/{repo}/issues",
                params={"labels": label, "state": "open", "per_page": per_page, "page": page},
            )
            data = data or []
            numbers.extend(issue["number"] for issue in data if isinstance(issue, dict))
            # A short page is the last one.
            if len(data) < per_page:
                return numbers
            page += 1

    # -- Identity -----------------------------------------------------------

    async def exchange_code(self, client_id: str, client_secret: str, code: str) -> str:
        """Trade a one-time OAuth code for a user access token."""
        try:
            response = await self._client.post(
                f"{self.web_url}/login/oauth/access_token",
                json={"client_id": client_id, "client_secret": client_secret, "code": code},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise GitHubError(f"Cannot reach GitHub: {e}") from None
        if response.status_code >= 400:
            raise GitHubError("Failed to exchange code for token", response.status_code)
        try:
            token = response.json().get("access_token")
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise GitHubError("Failed to exchange code for token", 401)
        return token

    async def get_user(self, token: str) -> dict[str, Any]:
        return await self._request("GET", "/user", token=token)

    async def get_user_by_login(self, login: str) -> dict[str, Any] | None:
        return await self._request("GET", f"/users/{quote(login)}", allow_404=True)

    async def get_permission(self, repo: str, username: str, token: str | None = None) -> str:
        """Permission level of username on repo; "" when not a collaborator."""
        data = await self._request(
            "GET",
            f"/repos/{repo}/collaborators/{quote(username)}/permission",
            token=token,
            allow_404=True,
        )
        if not isinstance(data, dict):
            return ""
        return str(data.get("permission") or "")
