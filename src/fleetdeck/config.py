"""Server configuration.

Loads from ~/.fleetdeck/config.yaml with environment variable overrides.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path.home() / ".fleetdeck" / "config.yaml"


@dataclass
class FleetConfig:
    """Configuration for the control-plane server."""

    host: str = "0.0.0.0"
    port: int = 8767
    state_dir: Path = field(default_factory=lambda: Path.home() / ".claude-teams")
    data_dir: Path = field(default_factory=lambda: Path.home() / ".shipwright")
    events_db: Path | None = None  # defaults to <data_dir>/events.db
    public_url: str = ""
    team_name: str = ""

    push_interval: float = 2.0
    lookback_days: int = 30
    reaper_interval: float = 300.0
    claim_stale_after: float = 7200.0
    invite_cleanup_interval: float = 900.0
    probe_timeout: float = 5.0
    external_timeout: float = 10.0

    github_client_id: str = ""
    github_client_secret: str = ""
    github_token: str = ""  # server-held credential, used in token mode and for labels
    dashboard_repo: str = ""  # "owner/repo"
    github_api_url: str = "https://api.github.com"
    github_web_url: str = "https://github.com"
    allowed_permissions: list[str] = field(default_factory=lambda: ["admin", "write"])

    session_secret: str = ""
    session_ttl_hours: int = 24
    join_token_ttl_hours: int = 24
    invite_ttl_hours: int = 72

    def __post_init__(self) -> None:
        if self.events_db is None:
            self.events_db = self.data_dir / "events.db"
        if not self.public_url:
            self.public_url = f"http://localhost:{self.port}"

    @property
    def auth_mode(self) -> str:
        """Derived auth mode: "oauth", "token" or "disabled"."""
        if self.github_client_id and self.github_client_secret and self.dashboard_repo:
            return "oauth"
        if self.github_token and self.dashboard_repo:
            return "token"
        return "disabled"

    @classmethod
    def load(cls, config_path: Path | None = None) -> FleetConfig:
        """Load config from file and environment variables.

        Priority (highest wins):
          1. Environment variables (FLEETDECK_*, GITHUB_*, DASHBOARD_REPO, SESSION_SECRET)
          2. Config file (~/.fleetdeck/config.yaml, FLEETDECK_CONFIG, or custom path)
          3. Defaults
        """
        data: dict = {}
        file_path = config_path or Path(os.environ.get("FLEETDECK_CONFIG", DEFAULT_CONFIG_FILE))
        if file_path.exists():
            try:
                with open(file_path) as f:
                    data = yaml.safe_load(f) or {}
            except (yaml.YAMLError, OSError):
                logger.warning("Ignoring unreadable config file %s", file_path)
                data = {}
            if not isinstance(data, dict):
                data = {}

        def pick(env: str, key: str, default):
            value = os.environ.get(env)
            if value is not None and value != "":
                return value
            return data.get(key, default)

        defaults = cls()
        try:
            port = int(pick("FLEETDECK_PORT", "port", defaults.port))
            push_interval = float(
                pick("FLEETDECK_PUSH_INTERVAL", "push_interval", defaults.push_interval)
            )
            lookback_days = int(
                pick("FLEETDECK_LOOKBACK_DAYS", "lookback_days", defaults.lookback_days)
            )
            reaper_interval = float(
                pick("FLEETDECK_REAPER_INTERVAL", "reaper_interval", defaults.reaper_interval)
            )
            probe_timeout = float(
                pick("FLEETDECK_PROBE_TIMEOUT", "probe_timeout", defaults.probe_timeout)
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid numeric configuration value: {e}") from None

        state_dir = Path(pick("FLEETDECK_STATE_DIR", "state_dir", defaults.state_dir)).expanduser()
        data_dir = Path(pick("FLEETDECK_DATA_DIR", "data_dir", defaults.data_dir)).expanduser()
        events_db = pick("FLEETDECK_EVENTS_DB", "events_db", None)

        config = cls(
            host=pick("FLEETDECK_HOST", "host", defaults.host),
            port=port,
            state_dir=state_dir,
            data_dir=data_dir,
            events_db=Path(events_db).expanduser() if events_db else None,
            public_url=pick("FLEETDECK_PUBLIC_URL", "public_url", ""),
            team_name=pick("FLEETDECK_TEAM_NAME", "team_name", ""),
            push_interval=push_interval,
            lookback_days=lookback_days,
            reaper_interval=reaper_interval,
            claim_stale_after=float(data.get("claim_stale_after", defaults.claim_stale_after)),
            invite_cleanup_interval=float(
                data.get("invite_cleanup_interval", defaults.invite_cleanup_interval)
            ),
            probe_timeout=probe_timeout,
            external_timeout=float(data.get("external_timeout", defaults.external_timeout)),
            github_client_id=pick("GITHUB_CLIENT_ID", "github_client_id", ""),
            github_client_secret=pick("GITHUB_CLIENT_SECRET", "github_client_secret", ""),
            github_token=pick("GITHUB_PAT", "github_token", ""),
            dashboard_repo=pick("DASHBOARD_REPO", "dashboard_repo", ""),
            session_secret=pick("SESSION_SECRET", "session_secret", ""),
            session_ttl_hours=int(data.get("session_ttl_hours", defaults.session_ttl_hours)),
            join_token_ttl_hours=int(
                data.get("join_token_ttl_hours", defaults.join_token_ttl_hours)
            ),
            invite_ttl_hours=int(data.get("invite_ttl_hours", defaults.invite_ttl_hours)),
        )
        if "allowed_permissions" in data and isinstance(data["allowed_permissions"], list):
            config.allowed_permissions = [str(p) for p in data["allowed_permissions"]]

        if not config.session_secret:
            # Sessions survive restarts only if the secret does.
            config.session_secret = secrets.token_hex(32)
            if config.auth_mode != "disabled":
                logger.warning(
                    "SESSION_SECRET not set -- using random ephemeral secret. "
                    "Set SESSION_SECRET for sessions that survive restarts."
                )

        return config
