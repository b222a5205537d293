"""Remote command channel to registered machines over ssh.

Used for exactly two things: probing whether a machine is reachable
and running its daemon, and changing its worker count.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Emits "<daemon pid|none>|<heartbeat files>|<active jobs>"
PROBE_SCRIPT = r"""
state_dir="$HOME/.claude-teams"
pid=none
if [ -f "$state_dir/daemon-state.json" ]; then
  p=$(grep -o '"pid"[^0-9]*[0-9]*' "$state_dir/daemon-state.json" | grep -o '[0-9]*$' | head -1)
  if [ -n "$p" ] && kill -0 "$p" 2>/dev/null; then pid="$p"; fi
fi
hb=$(ls -1 "$state_dir/heartbeats" 2>/dev/null | wc -l | tr -d ' ')
active=$(grep -o '"issue"' "$state_dir/daemon-state.json" 2>/dev/null | wc -l | tr -d ' ')
echo "${pid}|${hb:-0}|${active:-0}"
"""


class RemoteError(Exception):
    """Raised when a remote command cannot be run or fails."""

    def __init__(self, message: str, returncode: int | None = None):
        self.message = message
        self.returncode = returncode
        super().__init__(message)


@dataclass
class ProbeResult:
    daemon_pid: int | None
    heartbeat_count: int
    active_jobs: int


def ssh_args(target: str, command: str, connect_timeout: float) -> list[str]:
    return [
        "ssh",
        "-o", f"ConnectTimeout={max(1, int(connect_timeout))}",
        "-o", "BatchMode=yes",
        "-o", "StrictHostKeyChecking=accept-new",
        "--",
        target,
        command,
    ]  # fmt: skip


async def run_ssh(target: str, command: str, timeout: float) -> str:
    """Run command on target and return stdout.

    Raises:
        RemoteError: ssh missing, timed out, or the command exited non-zero.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *ssh_args(target, command, timeout),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise RemoteError("ssh client not installed") from None

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise RemoteError(f"{target} did not respond within {timeout:g}s") from None

    if proc.returncode != 0:
        detail = stderr.decode(errors="replace").strip()[:200]
        raise RemoteError(f"{target}: {detail or 'remote command failed'}", proc.returncode)
    return stdout.decode(errors="replace")


def parse_probe(output: str) -> ProbeResult:
    line = output.strip().splitlines()[-1] if output.strip() else ""
    parts = line.split("|")
    if len(parts) != 3:
        raise RemoteError(f"Unexpected probe output: {line[:80]!r}")
    pid, hb, active = parts
    return ProbeResult(
        daemon_pid=int(pid) if pid.isdigit() else None,
        heartbeat_count=int(hb) if hb.isdigit() else 0,
        active_jobs=int(active) if active.isdigit() else 0,
    )


async def probe(target: str, timeout: float) -> ProbeResult:
    return parse_probe(await run_ssh(target, PROBE_SCRIPT, timeout))


def scale_command(workers: int) -> str:
    """Shell command rewriting the remote daemon's max_parallel in place."""
    config = "$HOME/.shipwright/daemon-config.json"
    fallback = shlex.quote(f'{{"max_parallel": {workers}}}')
    return (
        'mkdir -p "$HOME/.shipwright" && '
        'tmp=$(mktemp "$HOME/.shipwright/.daemon-config.XXXXXX") && '
        f'{{ jq --argjson n {workers} ".max_parallel = \\$n" "{config}" 2>/dev/null '
        f"|| printf '%s\\n' {fallback}; }} > \"$tmp\" && "
        f'mv "$tmp" "{config}" && echo ok'
    )


async def scale(target: str, workers: int, timeout: float) -> None:
    await run_ssh(target, scale_command(workers), timeout)
