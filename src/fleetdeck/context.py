"""Per-process service wiring shared by the routers and background loops."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

import httpx

from .auth.provider import AuthProvider, create_provider
from .auth.service import SessionStore
from .claims.github import GitHubClient
from .claims.service import ClaimCoordinator
from .config import FleetConfig
from .fleet.aggregator import aggregate
from .fleet.models import FleetState
from .machines.service import JoinService, MachinePool
from .realtime.hub import SyncHub
from .stores.paths import StatePaths
from .stores.tokens import TokenStore
from .team.service import InviteService, TeamRegistry


@dataclass
class FleetContext:
    config: FleetConfig
    paths: StatePaths
    github: GitHubClient | None
    claims: ClaimCoordinator
    machines: MachinePool
    joins: JoinService
    team: TeamRegistry
    invites: InviteService
    auth: AuthProvider
    sessions: SessionStore
    hub: SyncHub = field(init=False)
    started_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        self.hub = SyncHub(
            self.snapshot,
            interval=self.config.push_interval,
            watch_dir=self.paths.state_dir,
        )

    @classmethod
    def build(
        cls, config: FleetConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> FleetContext:
        paths = StatePaths.from_config(config)
        github = None
        if config.github_token or config.auth_mode == "oauth":
            github = GitHubClient(
                token=config.github_token,
                api_url=config.github_api_url,
                web_url=config.github_web_url,
                timeout=config.external_timeout,
                transport=transport,
            )
        # Labels are written with the server-held credential only.
        label_client = github if config.github_token else None
        machines = MachinePool(paths, probe_timeout=config.probe_timeout)
        return cls(
            config=config,
            paths=paths,
            github=github,
            claims=ClaimCoordinator(label_client, config.dashboard_repo),
            machines=machines,
            joins=JoinService(
                TokenStore(paths.join_tokens, config.join_token_ttl_hours),
                machines,
                config.public_url,
            ),
            team=TeamRegistry(paths.developers_file, paths.team_events),
            invites=InviteService(
                TokenStore(paths.invite_tokens, config.invite_ttl_hours),
                config.public_url,
                config.team_name,
            ),
            auth=create_provider(config, github),
            sessions=SessionStore(
                paths.sessions_file, config.session_secret, config.session_ttl_hours
            ),
        )

    async def snapshot(self, now: float | None = None) -> FleetState:
        return await aggregate(
            self.paths,
            now=now,
            lookback_days=self.config.lookback_days,
            claim_conflicts=self.claims.conflicts,
        )

    async def aclose(self) -> None:
        await self.hub.stop()
        if self.github is not None:
            await self.github.aclose()
