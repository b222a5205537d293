"""Claim coordinator - exclusive work-item ownership via `claimed:<owner>` labels.

The protocol is optimistic: read the label set, then add ours. GitHub
offers no add-if-absent, so two claimants racing through the read can
both succeed. The window is kept to a single round trip and any
double claim observed afterwards is recorded and raised as an alert.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from ..metrics.alerts import ClaimConflict
from ..stores.models import as_float
from .github import GitHubClient, GitHubError

logger = logging.getLogger(__name__)

CLAIM_PREFIX = "claimed:"


class ClaimError(Exception):
    """Base error for claim operations."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AlreadyClaimed(ClaimError):
    status_code = 409

    def __init__(self, work_item_id: int, owner: str):
        self.work_item_id = work_item_id
        self.owner = owner
        super().__init__(f"Issue #{work_item_id} already claimed by {owner}")


class LabelApiError(ClaimError):
    """The label API could not be reached or rejected the call."""

    status_code = 502


class ClaimsDisabled(ClaimError):
    status_code = 503


def claim_owners(labels: list[str]) -> list[str]:
    return [label.removeprefix(CLAIM_PREFIX) for label in labels if label.startswith(CLAIM_PREFIX)]


class ClaimCoordinator:
    def __init__(self, client: GitHubClient | None, repo: str):
        self.client = client
        self.repo = repo
        self._conflicts: dict[int, ClaimConflict] = {}

    @property
    def enabled(self) -> bool:
        return self.client is not None and bool(self.repo)

    @property
    def conflicts(self) -> list[ClaimConflict]:
        return [self._conflicts[k] for k in sorted(self._conflicts)]

    def _require_client(self) -> GitHubClient:
        if self.client is None or not self.repo:
            raise ClaimsDisabled("Claims require GITHUB_PAT and DASHBOARD_REPO")
        return self.client

    async def _labels(self, work_item_id: int) -> list[str]:
        client = self._require_client()
        try:
            return await client.list_labels(self.repo, work_item_id)
        except GitHubError as e:
            raise LabelApiError(e.message) from e

    async def owner(self, work_item_id: int) -> str | None:
        owners = claim_owners(await self._labels(work_item_id))
        return owners[0] if owners else None

    async def claim(self, work_item_id: int, owner: str) -> dict[str, Any]:
        """Unclaimed -> Claimed(owner).

        Raises:
            AlreadyClaimed: a `claimed:*` label is already present.
            LabelApiError: the label API failed.
        """
        if not owner:
            raise ValueError("owner is required")
        existing = claim_owners(await self._labels(work_item_id))
        if existing:
            raise AlreadyClaimed(work_item_id, existing[0])

        client = self._require_client()
        try:
            labels = await client.add_labels(self.repo, work_item_id, [CLAIM_PREFIX + owner])
        except GitHubError as e:
            raise LabelApiError(e.message) from e

        owners = claim_owners(labels)
        if len(owners) > 1:
            logger.warning("Double claim on issue #%d: %s", work_item_id, ", ".join(owners))
            self._conflicts[work_item_id] = ClaimConflict(work_item_id, tuple(sorted(owners)))
        logger.info("Issue #%d claimed by %s", work_item_id, owner)
        return {"approved": True, "issue": work_item_id, "claimed_by": owner}

    async def release(self, work_item_id: int, owner: str | None = None) -> list[str]:
        """Claimed -> Unclaimed. Returns the owners whose labels were removed."""
        client = self._require_client()
        owners = claim_owners(await self._labels(work_item_id))
        targets = [o for o in owners if owner is None or o == owner]
        try:
            for target in targets:
                await client.remove_label(self.repo, work_item_id, CLAIM_PREFIX + target)
        except GitHubError as e:
            raise LabelApiError(e.message) from e
        if targets:
            self._conflicts.pop(work_item_id, None)
            logger.info("Released issue #%d from %s", work_item_id, ", ".join(targets))
        return targets

    async def release_owner(self, owner: str) -> list[int]:
        """Release every open item claimed by owner."""
        client = self._require_client()
        try:
            items = await client.issues_with_label(self.repo, CLAIM_PREFIX + owner)
        except GitHubError as e:
            raise LabelApiError(e.message) from e
        released = []
        for item in items:
            if await self.release(item, owner):
                released.append(item)
        return released

    async def reap_stale(
        self,
        developers: dict[str, dict[str, Any]],
        stale_after: float,
        now: float | None = None,
    ) -> dict[str, list[int]]:
        """Release claims held by machines silent for longer than stale_after.

        One owner failing does not stop the pass.
        """
        if not self.enabled:
            return {}
        now = time.time() if now is None else now
        last_seen: dict[str, float] = {}
        for record in developers.values():
            machine = str(record.get("machine_name") or "")
            if machine:
                seen = as_float(record.get("last_heartbeat"))
                last_seen[machine] = max(seen, last_seen.get(machine, 0.0))

        reaped: dict[str, list[int]] = {}
        for machine in sorted(last_seen):
            if now - last_seen[machine] <= stale_after:
                continue
            try:
                released = await self.release_owner(machine)
            except ClaimError as e:
                logger.warning("Stale claim reaping failed for %s: %s", machine, e.message)
                continue
            if released:
                logger.info("Reaped %d stale claims from %s", len(released), machine)
                reaped[machine] = released
        return reaped
