"""
Keyed, cancellable timers.

All timer-driven recovery in the system (connecting timeout, reconnect delay,
webhook retry tick, queue persistence, session expiry sweep) goes through a
Scheduler so that:
  - arming a timer under a key that is already armed replaces the old one
  - a profile's timers can be cancelled in one call
  - tests can drive time with VirtualScheduler instead of sleeping

Callbacks may be plain functions or coroutine functions.
"""
from __future__ import annotations

import abc
import asyncio
import inspect
import time
import structlog
from typing import Any, Callable, Hashable, Optional

logger = structlog.get_logger()


class TimerHandle:
    """A single armed timer. Cancelling it is idempotent."""

    def __init__(self, key: Hashable, when: float, interval: Optional[float] = None):
        self.key = key
        self.when = when
        self.interval = interval
        self.cancelled = False
        self._loop_handle: Optional[asyncio.TimerHandle] = None

    def cancel(self):
        self.cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()
            self._loop_handle = None

    def __repr__(self):
        state = "cancelled" if self.cancelled else "armed"
        return f"<TimerHandle {self.key!r} at={self.when:.3f} {state}>"


class Scheduler(abc.ABC):

    def __init__(self):
        self._timers: dict[Hashable, TimerHandle] = {}

    @abc.abstractmethod
    def now(self) -> float:
        """Current time in epoch seconds."""
        ...

    def now_ms(self) -> int:
        return int(self.now() * 1000)

    @abc.abstractmethod
    def _schedule(self, handle: TimerHandle, delay: float, callback: Callable) -> None:
        ...

    def arm(self, key: Hashable, delay: float, callback: Callable) -> TimerHandle:
        """Arm a one-shot timer, replacing any timer armed under `key`."""
        self.cancel(key)
        handle = TimerHandle(key, self.now() + max(delay, 0.0))
        self._timers[key] = handle
        self._schedule(handle, max(delay, 0.0), callback)
        return handle

    def every(self, key: Hashable, interval: float, callback: Callable) -> TimerHandle:
        """Arm a repeating timer, replacing any timer armed under `key`."""
        self.cancel(key)
        handle = TimerHandle(key, self.now() + interval, interval=interval)
        self._timers[key] = handle
        self._schedule(handle, interval, callback)
        return handle

    def cancel(self, key: Hashable) -> bool:
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_where(self, predicate: Callable[[Hashable], bool]) -> int:
        keys = [k for k in self._timers if predicate(k)]
        for k in keys:
            self.cancel(k)
        return len(keys)

    def cancel_all(self):
        for key in list(self._timers):
            self.cancel(key)

    def is_armed(self, key: Hashable) -> bool:
        return key in self._timers

    def pending(self) -> list[Hashable]:
        return list(self._timers)

    def _after_fire(self, handle: TimerHandle):
        """Drop a one-shot timer from the registry once it fired."""
        if handle.interval is None and self._timers.get(handle.key) is handle:
            del self._timers[handle.key]


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running event loop's call_later."""

    def __init__(self):
        super().__init__()
        self._tasks: set[asyncio.Task] = set()

    def now(self) -> float:
        return time.time()

    def _schedule(self, handle: TimerHandle, delay: float, callback: Callable) -> None:
        loop = asyncio.get_running_loop()
        handle._loop_handle = loop.call_later(delay, self._fire, handle, callback)

    def _fire(self, handle: TimerHandle, callback: Callable):
        if handle.cancelled:
            return
        if handle.interval is not None:
            handle.when = self.now() + handle.interval
            self._schedule(handle, handle.interval, callback)
        else:
            handle._loop_handle = None
            self._after_fire(handle)

        try:
            result = callback()
        except Exception as e:
            logger.error("timer_callback_error", key=str(handle.key), error=str(e))
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done(handle.key))

    def _task_done(self, key: Hashable):
        def done(task: asyncio.Task):
            self._tasks.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.error("timer_task_error", key=str(key), error=str(exc))
        return done

    async def drain(self):
        """Wait for callbacks that are still running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class VirtualScheduler(Scheduler):
    """
    Simulated clock. Nothing fires until `advance()` is awaited; due timers
    then fire in time order and async callbacks are awaited in place.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        super().__init__()
        self._now = start
        self._callbacks: dict[int, Callable] = {}

    def now(self) -> float:
        return self._now

    def _schedule(self, handle: TimerHandle, delay: float, callback: Callable) -> None:
        self._callbacks[id(handle)] = callback

    def cancel(self, key: Hashable) -> bool:
        handle = self._timers.get(key)
        if handle is not None:
            self._callbacks.pop(id(handle), None)
        return super().cancel(key)

    def _next_due(self, until: float) -> Optional[TimerHandle]:
        due = [h for h in self._timers.values() if not h.cancelled and h.when <= until]
        return min(due, key=lambda h: h.when) if due else None

    async def advance(self, seconds: float = 0.0):
        target = self._now + seconds
        while True:
            handle = self._next_due(target)
            if handle is None:
                break
            self._now = max(self._now, handle.when)
            callback = self._callbacks.get(id(handle))
            if handle.interval is not None:
                handle.when = self._now + handle.interval
            else:
                self._after_fire(handle)
                self._callbacks.pop(id(handle), None)
            if callback is None:
                continue
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("timer_callback_error", key=str(handle.key), error=str(e))
        self._now = target

    def set_time(self, when: float):
        self._now = when
