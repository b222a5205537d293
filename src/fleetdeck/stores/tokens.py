"""Single-use, time-bounded capability tokens mirrored to a JSON file."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .atomic import write_json_atomic
from .models import as_float
from .readers import read_json

logger = logging.getLogger(__name__)


class TokenError(Exception):
    """Raised when a token is unknown, expired or already used."""

    def __init__(self, message: str, reason: str = "invalid"):
        self.message = message
        self.reason = reason
        super().__init__(message)


@dataclass
class TokenRecord:
    token: str
    created_at: float
    expires_at: float
    used: bool = False
    used_at: float | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class TokenStore:
    """In-memory token map, rewritten in full to disk after every mutation."""

    def __init__(self, path: Path, ttl_hours: float, token_bytes: int = 24):
        self.path = path
        self.ttl_s = ttl_hours * 3600
        self.token_bytes = token_bytes
        self._tokens = self._load()

    def _load(self) -> dict[str, TokenRecord]:
        data = read_json(self.path)
        if not isinstance(data, dict):
            return {}
        tokens: dict[str, TokenRecord] = {}
        for token, raw in data.items():
            if not isinstance(raw, dict):
                continue
            tokens[token] = TokenRecord(
                token=token,
                created_at=as_float(raw.get("created_at")),
                expires_at=as_float(raw.get("expires_at")),
                used=bool(raw.get("used", False)),
                used_at=raw.get("used_at"),
                data=raw.get("data") if isinstance(raw.get("data"), dict) else {},
            )
        return tokens

    def _save(self) -> None:
        payload = {}
        for token, record in self._tokens.items():
            entry = asdict(record)
            del entry["token"]
            payload[token] = entry
        write_json_atomic(self.path, payload)

    def __len__(self) -> int:
        return len(self._tokens)

    def get(self, token: str) -> TokenRecord | None:
        return self._tokens.get(token)

    def records(self) -> list[TokenRecord]:
        return sorted(self._tokens.values(), key=lambda r: r.created_at)

    def issue(self, now: float | None = None, **data: Any) -> TokenRecord:
        now = time.time() if now is None else now
        record = TokenRecord(
            token=secrets.token_urlsafe(self.token_bytes),
            created_at=now,
            expires_at=now + self.ttl_s,
            data=data,
        )
        self._tokens[record.token] = record
        self._save()
        return record

    def redeem(self, token: str, now: float | None = None) -> TokenRecord:
        """Consume a token exactly once.

        The check and the write happen without yielding to the event loop,
        so of two concurrent redemptions only the first succeeds.

        Raises:
            TokenError: unknown, expired or already used.
        """
        now = time.time() if now is None else now
        record = self._tokens.get(token)
        if record is None:
            raise TokenError("Invalid token", reason="unknown")
        if record.used:
            raise TokenError("Token has already been used", reason="used")
        if record.expired(now):
            raise TokenError("Token has expired", reason="expired")
        record.used = True
        record.used_at = now
        self._save()
        return record

    def purge_expired(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        stale = [t for t, r in self._tokens.items() if r.expired(now)]
        for token in stale:
            del self._tokens[token]
        if stale:
            self._save()
            logger.info("Removed %d expired tokens from %s", len(stale), self.path.name)
        return len(stale)
