"""Live snapshot push to observers."""

from .hub import QueueSubscriber, SyncHub, WebSocketSubscriber

__all__ = ["QueueSubscriber", "SyncHub", "WebSocketSubscriber"]
