"""Tick sources that drive the fleet simulation."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence
import asyncio
import time

TickCallback = Callable[[datetime], object]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _fire(callbacks: Sequence[TickCallback], now: datetime) -> int:
    failures = 0
    for callback in callbacks:
        try:
            callback(now)
        except Exception as exc:
            failures += 1
            name = getattr(callback, "__name__", repr(callback))
            print(f"[ticker] callback {name} failed: {exc}")
    return failures


class SimulationTicker:
    """
    Periodic tick source running as an asyncio background task.

    One tick runs all callbacks to completion before the next one is
    scheduled, so the simulator step and the feed publish that follows it
    never overlap.
    """

    def __init__(
        self,
        interval_s: float,
        callbacks: Optional[Sequence[TickCallback]] = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ):
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.interval_s = interval_s
        self.callbacks: List[TickCallback] = list(callbacks or [])
        self.clock = clock
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None

    def add_callback(self, callback: TickCallback) -> None:
        self.callbacks.append(callback)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def tick_once(self) -> datetime:
        now = self.clock()
        _fire(self.callbacks, now)
        self.ticks += 1
        return now

    async def _run(self) -> None:
        while True:
            start = time.monotonic()
            self.tick_once()
            elapsed = time.monotonic() - start
            await asyncio.sleep(max(0.0, self.interval_s - elapsed))

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._run())
        print(f"[ticker] started interval={self.interval_s}s callbacks={len(self.callbacks)}")
        return self._task

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        print(f"[ticker] stopped after {self.ticks} ticks")


class ManualTicker:
    """Tick source driven explicitly with timestamps, for tests and replays."""

    def __init__(self, callbacks: Optional[Sequence[TickCallback]] = None):
        self.callbacks: List[TickCallback] = list(callbacks or [])
        self.ticks = 0

    def add_callback(self, callback: TickCallback) -> None:
        self.callbacks.append(callback)

    def tick(self, now: datetime) -> int:
        failures = _fire(self.callbacks, now)
        self.ticks += 1
        return failures


__all__ = ["SimulationTicker", "ManualTicker"]
