"""Concurrency and cache guards.

All of these run on the single event loop of an operator session: they keep
overlapping network requests from piling up, they do not synchronise threads.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], float]


class DebouncedMutex:
    """Per-key debounce + mutex around an async action.

    `trigger` replaces any still-pending call for the key (latest trigger
    wins), drops the call while the previous execution is younger than
    `window` seconds, and drops it while an execution is in flight. The
    mutex is always released when the action finishes, even on failure.
    """

    def __init__(self, *, window: float, settle: float = 0.0, clock: Clock = time.monotonic):
        self.window = window
        self.settle = settle
        self._clock = clock
        self._last_started: dict[Hashable, float] = {}
        self._pending: dict[Hashable, asyncio.Task] = {}
        self._in_flight: set[Hashable] = set()
        self._tasks: set[asyncio.Task] = set()

    def is_busy(self, key: Hashable) -> bool:
        return key in self._in_flight or key in self._pending

    def trigger(self, key: Hashable, action: Callable[[], Awaitable[None]]) -> bool:
        pending = self._pending.pop(key, None)
        if pending is not None and not pending.done():
            pending.cancel()

        last = self._last_started.get(key)
        if last is not None and self._clock() - last < self.window:
            logger.debug("Debounced trigger for %r (%.3fs since last run)", key, self._clock() - last)
            return False
        if key in self._in_flight:
            logger.debug("Dropped trigger for %r: execution in flight", key)
            return False

        task = asyncio.get_running_loop().create_task(self._run(key, action))
        self._pending[key] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, key: Hashable, action: Callable[[], Awaitable[None]]) -> None:
        if self.settle > 0:
            await asyncio.sleep(self.settle)
        if self._pending.get(key) is asyncio.current_task():
            del self._pending[key]
        if key in self._in_flight:
            return

        self._in_flight.add(key)
        self._last_started[key] = self._clock()
        try:
            await action()
        except Exception:
            logger.exception("Debounced action for %r failed", key)
        finally:
            self._in_flight.discard(key)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def reset(self, key: Hashable | None = None) -> None:
        keys = list(self._pending) if key is None else [key]
        for k in keys:
            task = self._pending.pop(k, None)
            if task is not None and not task.done():
                task.cancel()
        if key is None:
            self._last_started.clear()
        else:
            self._last_started.pop(key, None)


class SingleFlight:
    """Per-key loading mutex: concurrent loads of one key share one fetch."""

    def __init__(self):
        self._in_flight: dict[Hashable, asyncio.Future] = {}

    def is_loading(self, key: Hashable) -> bool:
        return key in self._in_flight

    async def run(self, key: Hashable, fetch: Callable[[], Awaitable[T]]) -> T:
        future = self._in_flight.get(key)
        if future is None or future.done():
            future = asyncio.ensure_future(fetch())
            self._in_flight[key] = future
            future.add_done_callback(lambda f, k=key: self._release(k, f))
        else:
            logger.debug("Load for %r already in flight, waiting on it", key)
        # A cancelled waiter must not cancel the fetch other callers share.
        return await asyncio.shield(future)

    def _release(self, key: Hashable, future: asyncio.Future) -> None:
        if self._in_flight.get(key) is future:
            del self._in_flight[key]
        if not future.cancelled() and future.exception() is not None:
            logger.debug("Load for %r failed: %s", key, future.exception())


class Cooldown:
    """Suppress repeat triggers for a key within `seconds` of the last accepted one."""

    def __init__(self, seconds: float, *, clock: Clock = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._last: dict[Hashable, float] = {}

    def ready(self, key: Hashable) -> bool:
        now = self._clock()
        last = self._last.get(key)
        if last is not None and now - last < self.seconds:
            return False
        self._last[key] = now
        return True

    def clear(self, key: Hashable | None = None) -> None:
        if key is None:
            self._last.clear()
        else:
            self._last.pop(key, None)


class ManualSelectionOverride:
    """Operator's explicit ingredient choice; expires on its own after `timeout` seconds."""

    def __init__(self, timeout: float = 600.0, *, clock: Clock = time.monotonic):
        self.timeout = timeout
        self._clock = clock
        self._item_key: str | None = None
        self._expires_at = 0.0

    def set(self, item_key: str) -> None:
        self._item_key = item_key
        self._expires_at = self._clock() + self.timeout

    def clear(self) -> None:
        self._item_key = None
        self._expires_at = 0.0

    @property
    def item_key(self) -> str | None:
        return self._item_key if self.active else None

    @property
    def active(self) -> bool:
        if self._item_key is None:
            return False
        if self._clock() >= self._expires_at:
            logger.debug("Manual selection of %s expired, auto-switching re-enabled", self._item_key)
            self.clear()
            return False
        return True
