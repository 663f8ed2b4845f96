"""
In-process rate limiters.

Each connector owns its own RequestPacer and the webhook service owns a
SlidingWindowLimiter; neither is a module-level singleton.
"""
import asyncio
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Hashable


class RequestPacer:
    """
    Spaces outbound requests to at most ``requests_per_second``.

    Safe to share between concurrent sync tasks: slots are handed out under
    an asyncio lock, so parallel callers queue instead of bursting.
    """

    def __init__(
        self,
        requests_per_second: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._clock = clock
        self._lock = asyncio.Lock()
        self._next_slot = 0.0
        self.total_waits = 0

    async def acquire(self) -> float:
        """Wait for the next request slot; returns the time slept"""
        async with self._lock:
            now = self._clock()
            wait = max(0.0, self._next_slot - now)
            self._next_slot = max(now, self._next_slot) + self.min_interval
        if wait > 0:
            self.total_waits += 1
            await asyncio.sleep(wait)
        return wait


class SlidingWindowLimiter:
    """
    Counts events per key inside a sliding window.

    Used to cap webhook bursts per integration. Guarded by a thread lock
    because FastAPI may call it from worker threads.
    """

    def __init__(
        self,
        max_events: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._events: Dict[Hashable, Deque[float]] = defaultdict(deque)

    def allow(self, key: Hashable) -> bool:
        """Record an event for ``key`` if under the limit"""
        now = self._clock()
        with self._lock:
            window = self._events[key]
            while window and now - window[0] >= self.window_seconds:
                window.popleft()
            if len(window) >= self.max_events:
                return False
            window.append(now)
            return True

    def remaining(self, key: Hashable) -> int:
        now = self._clock()
        with self._lock:
            window = self._events.get(key, deque())
            live = sum(1 for ts in window if now - ts < self.window_seconds)
        return max(self.max_events - live, 0)
