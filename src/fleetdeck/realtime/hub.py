"""SyncHub - pushes full FleetState snapshots to live observers.

Two triggers re-run the aggregator: a fixed-interval timer and a
filesystem watcher on the state directory. Either way a snapshot whose
`dedup_key()` matches the last one broadcast is not sent again.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Protocol

from fastapi import WebSocket
from watchfiles import awatch

from ..fleet.models import FleetState

logger = logging.getLogger(__name__)

SHUTDOWN_MESSAGE = json.dumps({"type": "shutdown", "message": "server shutting down"})
GOING_AWAY = 1001


class Subscriber(Protocol):
    async def send(self, payload: str) -> None: ...

    async def close(self) -> None: ...


class SubscriberGone(Exception):
    """The subscriber can no longer accept messages."""


class WebSocketSubscriber:
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, payload: str) -> None:
        await self.websocket.send_text(payload)

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            await self.websocket.send_text(SHUTDOWN_MESSAGE)
            await self.websocket.close(code=GOING_AWAY)


class QueueSubscriber:
    """Buffered subscriber drained by an SSE response. A full queue drops it."""

    def __init__(self, maxsize: int = 100):
        self.queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)

    async def send(self, payload: str) -> None:
        try:
            self.queue.put_nowait(payload)
        except asyncio.QueueFull:
            raise SubscriberGone("subscriber queue full") from None

    async def close(self) -> None:
        with contextlib.suppress(asyncio.QueueFull):
            self.queue.put_nowait(SHUTDOWN_MESSAGE)
            self.queue.put_nowait(None)


class SyncHub:
    def __init__(
        self,
        producer: Callable[[], Awaitable[FleetState]],
        interval: float = 2.0,
        watch_dir: Path | None = None,
        send_timeout: float = 5.0,
    ):
        self.producer = producer
        self.interval = interval
        self.watch_dir = watch_dir
        self.send_timeout = send_timeout
        self.watcher_active = False
        self._subscribers: set[Subscriber] = set()
        self._last_key: str | None = None
        self._lock = asyncio.Lock()
        self._tasks: list[asyncio.Task] = []

    @property
    def connections(self) -> int:
        return len(self._subscribers)

    async def subscribe(self, subscriber: Subscriber) -> bool:
        """Register a subscriber and immediately send it the current snapshot."""
        state = await self.producer()
        try:
            await asyncio.wait_for(subscriber.send(state.to_json()), self.send_timeout)
        except Exception:
            logger.debug("Subscriber failed on initial snapshot", exc_info=True)
            return False
        self._subscribers.add(subscriber)
        return True

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)

    async def _deliver(self, subscriber: Subscriber, payload: str) -> bool:
        try:
            await asyncio.wait_for(subscriber.send(payload), self.send_timeout)
        except Exception:
            logger.debug("Dropping subscriber after failed send", exc_info=True)
            self._subscribers.discard(subscriber)
            return False
        return True

    async def broadcast(self, payload: str) -> int:
        """Send payload to every subscriber; failing ones are dropped. Returns deliveries."""
        subscribers = list(self._subscribers)
        results = await asyncio.gather(*(self._deliver(s, payload) for s in subscribers))
        return sum(results)

    async def refresh(self) -> int:
        """Re-aggregate and broadcast if the snapshot changed. Returns deliveries."""
        async with self._lock:
            if not self._subscribers:
                return 0
            state = await self.producer()
            key = state.dedup_key()
            if key == self._last_key:
                return 0
            self._last_key = key
            return await self.broadcast(state.to_json())

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.refresh()
            except Exception:
                logger.exception("Periodic push failed")

    async def _watch_loop(self) -> None:
        if self.watch_dir is None:
            return
        try:
            async for _changes in awatch(self.watch_dir, debounce=500, recursive=True):
                self.watcher_active = True
                try:
                    await self.refresh()
                except Exception:
                    logger.exception("Push after file change failed")
        except Exception as e:
            logger.warning("File watcher unavailable (%s); relying on %ss timer", e, self.interval)
        finally:
            self.watcher_active = False

    def start(self) -> None:
        if self._tasks:
            return
        self.watcher_active = self.watch_dir is not None and self.watch_dir.is_dir()
        self._tasks = [asyncio.create_task(self._timer_loop())]
        if self.watcher_active:
            self._tasks.append(asyncio.create_task(self._watch_loop()))
        elif self.watch_dir is not None:
            logger.warning("State directory %s missing; file watcher disabled", self.watch_dir)

    async def stop(self) -> None:
        """Cancel the loops, tell every subscriber we are going away, forget them."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        subscribers = list(self._subscribers)
        self._subscribers.clear()
        await asyncio.gather(*(s.close() for s in subscribers))
        logger.info("Closed %d live connections", len(subscribers))
