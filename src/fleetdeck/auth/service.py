"""Observer sessions: a signed cookie pointing at a persisted session record."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import asdict, dataclass
from pathlib import Path

import jwt

from ..stores.atomic import write_json_atomic
from ..stores.models import as_float
from ..stores.readers import read_json
from .provider import Identity

logger = logging.getLogger(__name__)

COOKIE_NAME = "fleet_session"
ALGORITHM = "HS256"


@dataclass
class Session:
    sid: str
    subject: str
    credential: str = ""
    avatar: str = ""
    authorized: bool = False
    created_at: float = 0.0
    expires_at: float = 0.0

    def expired(self, now: float) -> bool:
        return now >= self.expires_at

    def public(self) -> dict:
        return {"username": self.subject, "avatar_url": self.avatar, "is_admin": self.authorized}


LOCAL_SESSION = Session(sid="local", subject="local", authorized=True, expires_at=float("inf"))


class SessionStore:
    """Sessions keyed by id, mirrored to sessions.json on every change.

    Expired sessions are removed when they are next looked up; there is
    no background sweep.
    """

    def __init__(self, path: Path, secret: str = "", ttl_hours: float = 24):
        self.path = path
        self.secret = secret or secrets.token_hex(32)
        self.ttl_s = ttl_hours * 3600
        self._sessions = self._load()

    def _load(self) -> dict[str, Session]:
        data = read_json(self.path)
        if not isinstance(data, dict):
            return {}
        sessions = {}
        for sid, raw in data.items():
            if not isinstance(raw, dict):
                continue
            sessions[sid] = Session(
                sid=sid,
                subject=str(raw.get("subject") or ""),
                credential=str(raw.get("credential") or ""),
                avatar=str(raw.get("avatar") or ""),
                authorized=bool(raw.get("authorized", False)),
                created_at=as_float(raw.get("created_at")),
                expires_at=as_float(raw.get("expires_at")),
            )
        return sessions

    def _save(self) -> None:
        payload = {}
        for sid, session in self._sessions.items():
            record = asdict(session)
            del record["sid"]
            payload[sid] = record
        write_json_atomic(self.path, payload)

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, identity: Identity, authorized: bool, now: float | None = None) -> Session:
        now = time.time() if now is None else now
        session = Session(
            sid=secrets.token_urlsafe(24),
            subject=identity.login,
            credential=identity.access_token,
            avatar=identity.avatar_url,
            authorized=authorized,
            created_at=now,
            expires_at=now + self.ttl_s,
        )
        self._sessions[session.sid] = session
        self._save()
        logger.info("Session created for %s", identity.login)
        return session

    def encode(self, session: Session) -> str:
        return jwt.encode(
            {"sid": session.sid, "exp": int(session.expires_at)}, self.secret, algorithm=ALGORITHM
        )

    def resolve(self, cookie: str | None, now: float | None = None) -> Session | None:
        """Session for a cookie value, re-checked against its expiry."""
        if not cookie:
            return None
        try:
            # Expiry is enforced against the stored record below.
            payload = jwt.decode(
                cookie, self.secret, algorithms=[ALGORITHM], options={"verify_exp": False}
            )
        except jwt.InvalidTokenError:
            return None
        session = self._sessions.get(payload.get("sid", ""))
        if session is None:
            return None
        now = time.time() if now is None else now
        if session.expired(now):
            self.delete(session.sid)
            return None
        return session

    def delete(self, sid: str) -> bool:
        if self._sessions.pop(sid, None) is None:
            return False
        self._save()
        return True
