"""In-process async event bus for orchestration status.

The orchestrator emits status lines, round/directive transitions,
compactions, tool failures and transcript records. Handlers run in
subscription order and a failing handler is logged and skipped. An
optional persister (the transcript store) sees every event first.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]

# Subscribe with this type to receive every event
ALL_EVENTS = "*"


@dataclass
class Event:
    """A typed event flowing through the bus."""

    type: str  # status, round_started, directive, compaction, tool_error, timeout, finished, transcript
    source: str  # director, actor, orchestrator
    data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Queue-backed event bus drained by one background task.

    Before start() (and in tests) emit() dispatches inline, so events are
    never lost to a bus nobody started.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None
        self._persister: EventHandler | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe ``handler`` to ``event_type``, or to everything with ALL_EVENTS."""
        self._handlers[event_type].append(handler)

    def set_persister(self, persister: EventHandler) -> None:
        self._persister = persister

    async def emit(self, event: Event) -> None:
        if not self.running:
            await self._deliver(event)
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full (%d), dropped %s event", self._queue.maxsize, event.type)

    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._drain_forever(), name="tandem-events")

    async def stop(self) -> None:
        """Cancel the worker, then deliver anything still queued."""
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
        while not self._queue.empty():
            await self._deliver(self._queue.get_nowait())

    async def _drain_forever(self) -> None:
        while True:
            event = await self._queue.get()
            await self._deliver(event)

    async def _deliver(self, event: Event) -> None:
        # The persister runs before handlers so stored order matches emit order
        if self._persister is not None:
            try:
                await self._persister(event)
            except Exception:
                logger.warning("Could not persist %s event", event.type, exc_info=True)

        targets = self._handlers.get(event.type, []) + self._handlers.get(ALL_EVENTS, [])
        for handler in targets:
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s event handler %s raised", event.type, handler.__qualname__)
