"""Shared fixtures: a temporary state layout and an in-memory GitHub."""

from __future__ import annotations

import json
import re
from pathlib import Path
from urllib.parse import unquote

import httpx
import pytest

from fleetdeck.config import FleetConfig
from fleetdeck.stores.paths import StatePaths

REPO = "acme/app"


def write_json(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


def write_events(paths: StatePaths, records: list[dict]) -> None:
    paths.events_file.parent.mkdir(parents=True, exist_ok=True)
    with open(paths.events_file, "a") as f:
        for record in records:
            f.write(json.dumps(record) + "\n")


def event(type_: str, epoch: float, issue: int | None = None, **extra) -> dict:
    record = {"ts_epoch": epoch, "type": type_, **extra}
    if issue is not None:
        record["issue"] = issue
    return record


@pytest.fixture
def paths(tmp_path) -> StatePaths:
    return StatePaths(
        state_dir=tmp_path / "state",
        data_dir=tmp_path / "data",
        events_db=tmp_path / "data" / "events.db",
    )


@pytest.fixture
def config(tmp_path) -> FleetConfig:
    """Auth disabled, no GitHub, quiet timers."""
    return FleetConfig(
        state_dir=tmp_path / "state",
        data_dir=tmp_path / "data",
        push_interval=60.0,
        session_secret="test-session-secret-0123456789abc",
    )


class FakeGitHub(httpx.AsyncBaseTransport):
    """Enough of the GitHub REST API for labels, identity and permissions."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.labels: dict[int, list[str]] = {}
        self.users = {
            "alice": {"login": "alice", "avatar_url": "https://avatars/alice"},
            "mallory": {"login": "mallory", "avatar_url": ""},
        }
        self.permissions = {"alice": "write", "mallory": "read"}
        self.oauth_codes = {"good-code": ("user-token", "alice")}
        self.fail = False
        # Label another owner slips in between our read and our write.
        self.racer: str | None = None

    def _json(self, request: httpx.Request, body, status: int = 200) -> httpx.Response:
        return httpx.Response(status_code=status, json=body, request=request)

    def _label_list(self, request: httpx.Request, number: int) -> httpx.Response:
        return self._json(request, [{"name": n} for n in self.labels.get(number, [])])

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            return self._json(request, {"message": "Server Error"}, 500)

        path = unquote(request.url.path)
        method = request.method

        if request.url.host == "github.com" and path == "/login/oauth/access_token":
            code = json.loads(request.content).get("code")
            if code not in self.oauth_codes:
                return self._json(request, {"error": "bad_verification_code"})
            return self._json(request, {"access_token": self.oauth_codes[code][0]})

        if path == "/user":
            auth = request.headers.get("Authorization", "")
            for token, login in self.oauth_codes.values():
                if auth == f"Bearer {token}":
                    return self._json(request, self.users[login])
            return self._json(request, {"message": "Bad credentials"}, 401)

        m = re.fullmatch(r"/users/([^/]+)", path)
        if m:
            user = self.users.get(m.group(1))
            return self._json(request, user) if user else self._json(request, {}, 404)

        m = re.fullmatch(rf"/repos/{REPO}/collaborators/([^/]+)/permission", path)
        if m:
            permission = self.permissions.get(m.group(1))
            if permission is None:
                return self._json(request, {"message": "Not Found"}, 404)
            return self._json(request, {"permission": permission})

        m = re.fullmatch(rf"/repos/{REPO}/issues/(\d+)/labels(?:/(.+))?", path)
        if m:
            number = int(m.group(1))
            labels = self.labels.setdefault(number, [])
            if method == "GET":
                return self._label_list(request, number)
            if method == "POST":
                if self.racer:
                    labels.append(self.racer)
                for name in json.loads(request.content)["labels"]:
                    if name not in labels:
                        labels.append(name)
                return self._label_list(request, number)
            if method == "DELETE":
                name = m.group(2)
                if name not in labels:
                    return self._json(request, {"message": "Label does not exist"}, 404)
                labels.remove(name)
                return self._label_list(request, number)

        if path == f"/repos/{REPO}/issues" and method == "GET":
            wanted = request.url.params.get("labels")
            per_page = int(request.url.params.get("per_page", 30))
            page = int(request.url.params.get("page", 1))
            numbers = sorted(n for n, labels in self.labels.items() if wanted in labels)
            chunk = numbers[(page - 1) * per_page : page * per_page]
            return self._json(request, [{"number": n} for n in chunk])

        return self._json(request, {"message": f"No fake for {method} {path}"}, 404)


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()
