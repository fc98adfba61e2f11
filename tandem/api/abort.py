"""Cancellation primitives: a one-shot abort signal and an inactivity watchdog.

The signal is threaded through every suspension point of a turn (stream
reads, tool dispatch). The watchdog owns no state other than the time of
the last observed activity; it fires the signal with reason ``"timeout"``
when that timestamp is older than its limit.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMEOUT = "timeout"
INTERRUPT = "interrupt"


class Aborted(Exception):
    """Raised by run_abortable() when the signal fires before the awaitable finishes."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Aborted ({reason})")
        self.reason = reason


class AbortSignal:
    """One-shot cancellation flag with a reason."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    def fire(self, reason: str = INTERRUPT) -> bool:
        """Fire the signal. Returns False if it had already fired."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> str:
        await self._event.wait()
        return self.reason or INTERRUPT


async def run_abortable(aw: Awaitable[T], signal: AbortSignal | None) -> T:
    """Await ``aw`` unless ``signal`` fires first.

    The awaitable runs in its own task and is cancelled on abort, so all of
    its cleanup (closing an HTTP stream, killing a subprocess) happens in
    that one task.
    """
    if signal is None:
        return await aw
    if signal.fired:
        if asyncio.iscoroutine(aw):
            aw.close()
        raise Aborted(signal.reason or INTERRUPT)

    work = asyncio.ensure_future(aw)
    waiter = asyncio.create_task(signal.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (work, waiter):
            if not task.done():
                task.cancel()

    if work in done:
        return work.result()

    with contextlib.suppress(asyncio.CancelledError):
        await work
    raise Aborted(signal.reason or INTERRUPT)


class InactivityWatchdog:
    """Fires an AbortSignal when no activity is observed for ``timeout`` seconds.

    Checked every ``tick`` seconds against a monotonic clock; fires at most
    once. A timeout of 0 or less disables the watchdog.

    Usage:
        async with InactivityWatchdog(signal, 120.0) as watchdog:
            ... watchdog.touch() on every stream event ...
    """

    def __init__(
        self,
        signal: AbortSignal,
        timeout: float,
        tick: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._signal = signal
        self._timeout = timeout
        self._tick = tick
        self._clock = clock
        self._last = clock()
        self._task: asyncio.Task | None = None
        self.fired = False

    def touch(self) -> None:
        """Record activity now."""
        self._last = self._clock()

    @property
    def idle_seconds(self) -> float:
        return self._clock() - self._last

    async def __aenter__(self) -> InactivityWatchdog:
        self.touch()
        if self._timeout > 0:
            self._task = asyncio.create_task(self._run(), name="inactivity-watchdog")
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._tick)
            idle = self.idle_seconds
            if idle >= self._timeout:
                logger.warning("No stream activity for %.0fs, aborting", idle)
                self.fired = self._signal.fire(TIMEOUT)
                return
