"""Deduplicating work queue for reconcile keys.

Guarantees:
- A key waiting in the queue is stored once, however often it is added.
- A key is handed to at most one worker at a time. Adding a key while it is
  being processed parks it as dirty; it is queued again when the worker
  calls done().
- Delayed adds keep only the earliest pending timer per key.
- Failed keys back off exponentially per key until forget() is called.

All methods must be called from the event loop thread.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Hashable
from typing import Generic, TypeVar

from .config import DEFAULT_BACKOFF_BASE_SECONDS, DEFAULT_BACKOFF_MAX_SECONDS

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class WorkQueue(Generic[K]):
    """Asyncio work queue with per-key exclusivity and backoff."""

    def __init__(
        self,
        *,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS,
    ) -> None:
        self._queue: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._ready = asyncio.Event()
        self._shutting_down = False

        # key -> (due time, timer handle)
        self._timers: dict[K, tuple[float, asyncio.TimerHandle]] = {}

        self._failures: dict[K, int] = {}
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: K) -> None:
        """Queue a key now."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._ready.set()

    def add_after(self, key: K, delay: float) -> None:
        """Queue a key once delay seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        pending = self._timers.get(key)
        if pending is not None:
            if pending[0] <= due:
                return
            pending[1].cancel()
        handle = loop.call_at(due, self._fire, key)
        self._timers[key] = (due, handle)

    def _fire(self, key: K) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def when(self, key: K) -> float:
        """Backoff delay the next add_rate_limited() call would use."""
        failures = self._failures.get(key, 0)
        try:
            delay = self._backoff_base * (2**failures)
        except OverflowError:
            return self._backoff_max
        return min(delay, self._backoff_max)

    def add_rate_limited(self, key: K) -> None:
        """Queue a key after its current backoff and grow the backoff."""
        delay = self.when(key)
        self._failures[key] = self._failures.get(key, 0) + 1
        self.add_after(key, delay)

    def forget(self, key: K) -> None:
        """Reset the backoff of a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: K) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> K | None:
        """Wait for the next key. Returns None once the queue shuts down."""
        while True:
            if self._queue:
                key = self._queue.popleft()
                if not self._queue and not self._shutting_down:
                    self._ready.clear()
                self._processing.add(key)
                self._dirty.discard(key)
                return key
            if self._shutting_down:
                return None
            self._ready.clear()
            await self._ready.wait()

    def done(self, key: K) -> None:
        """Mark a key as processed, re-queueing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._ready.set()

    def is_processing(self, key: K) -> bool:
        return key in self._processing

    def shutdown(self) -> None:
        """Stop handing out keys and cancel pending timers."""
        self._shutting_down = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._queue.clear()
        self._ready.set()
        logger.info("Work queue shut down")
