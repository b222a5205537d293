"""Well-known locations of the shared state artifacts."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..config import FleetConfig


@dataclass(frozen=True)
class StatePaths:
    state_dir: Path
    data_dir: Path
    events_db: Path

    @classmethod
    def from_config(cls, config: FleetConfig) -> StatePaths:
        return cls(
            state_dir=config.state_dir,
            data_dir=config.data_dir,
            events_db=config.events_db or config.data_dir / "events.db",
        )

    # Written by producers
    @property
    def events_file(self) -> Path:
        return self.state_dir / "events.jsonl"

    @property
    def daemon_state(self) -> Path:
        return self.state_dir / "daemon-state.json"

    @property
    def heartbeat_dir(self) -> Path:
        return self.state_dir / "heartbeats"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def machines_file(self) -> Path:
        return self.state_dir / "machines.json"

    @property
    def costs_file(self) -> Path:
        return self.data_dir / "costs.json"

    @property
    def budget_file(self) -> Path:
        return self.data_dir / "budget.json"

    @property
    def daemon_config(self) -> Path:
        return self.data_dir / "daemon-config.json"

    # Written by this server
    @property
    def pause_flag(self) -> Path:
        return self.data_dir / "daemon-pause.json"

    @property
    def health_cache(self) -> Path:
        return self.data_dir / "machine-health.json"

    @property
    def join_tokens(self) -> Path:
        return self.data_dir / "join-tokens.json"

    @property
    def invite_tokens(self) -> Path:
        return self.data_dir / "invite-tokens.json"

    @property
    def sessions_file(self) -> Path:
        return self.data_dir / "sessions.json"

    @property
    def developers_file(self) -> Path:
        return self.data_dir / "developers.json"

    @property
    def team_events(self) -> Path:
        return self.data_dir / "team-events.jsonl"

    def log_file(self, work_item_id: int) -> Path:
        return self.logs_dir / f"issue-{work_item_id}.log"
