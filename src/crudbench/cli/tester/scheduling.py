"""Timers used by the lifecycle monitor and the tester session.

Polling is expressed through a small ``Scheduler`` protocol so that the same
monitor runs on real asyncio timers in production and on a manually advanced
clock in tests.
"""

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger("crudbench.scheduling")

Callback = Callable[[], Awaitable[None]]


class TimerHandle(Protocol):
    def cancel(self) -> Any: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callback) -> TimerHandle: ...

    def call_every(self, interval: float, callback: Callback) -> TimerHandle: ...


# === asyncio ===


class AsyncioScheduler:
    """Runs callbacks as asyncio tasks on the running loop."""

    def __init__(self):
        self._tasks: set[asyncio.Task[None]] = set()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_later(self, delay: float, callback: Callback) -> None:
        await asyncio.sleep(delay)
        try:
            await callback()
        except Exception:
            logger.exception("Scheduled callback failed")

    async def _run_every(self, interval: float, callback: Callback) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await callback()
            except Exception:
                logger.exception("Periodic callback failed")

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        return self._spawn(self._run_later(delay, callback))

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        """Run ``callback`` every ``interval`` seconds, first run after one interval."""
        return self._spawn(self._run_every(interval, callback))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def aclose(self) -> None:
        """Cancel every scheduled task and wait for them to finish."""
        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


# === manual clock ===


@dataclass(order=True)
class ScheduledEntry:
    due: float
    seq: int
    callback: Callback = field(compare=False)
    interval: float | None = field(default=None, compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler driven by ``advance()`` instead of wall time.

    Callbacks run in due order (ties in scheduling order). Exceptions raised by
    a callback propagate to the caller of ``advance()``.
    """

    def __init__(self, start: float = 0.0):
        self.now: float = start
        self._entries: list[ScheduledEntry] = []
        self._seq = itertools.count()

    def clock(self) -> float:
        return self.now

    @property
    def pending(self) -> list[ScheduledEntry]:
        return sorted(entry for entry in self._entries if not entry.cancelled)

    def call_later(self, delay: float, callback: Callback) -> ScheduledEntry:
        entry = ScheduledEntry(self.now + delay, next(self._seq), callback)
        self._entries.append(entry)
        return entry

    def call_every(self, interval: float, callback: Callback) -> ScheduledEntry:
        entry = ScheduledEntry(self.now + interval, next(self._seq), callback, interval)
        self._entries.append(entry)
        return entry

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, running every callback that falls due."""
        target = self.now + seconds
        while True:
            due = [e for e in self._entries if not e.cancelled and e.due <= target]
            if not due:
                break
            entry = min(due)
            self.now = entry.due
            if entry.interval is None:
                self._entries.remove(entry)
            else:
                entry.due += entry.interval
                entry.seq = next(self._seq)
            await entry.callback()
        self.now = target
        self._entries = [e for e in self._entries if not e.cancelled]
