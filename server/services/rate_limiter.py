"""Per-IP sliding window limiter kept in process memory.

A coarse flood guard for the webhook endpoint, not a security boundary:
state is lost on restart and not shared between instances.
"""

import time
from collections import OrderedDict, deque
from typing import Callable, Deque


class SlidingWindowRateLimiter:
    def __init__(
        self,
        limit: int = 100,
        window: float = 60.0,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window = window
        self.max_keys = max_keys
        self._clock = clock
        self._hits: "OrderedDict[str, Deque[float]]" = OrderedDict()

    def allow(self, key: str) -> bool:
        """Record a request from ``key``; False once the window is full."""
        now = self._clock()
        hits = self._hits.get(key)
        if hits is None:
            hits = deque()
            self._hits[key] = hits
        self._hits.move_to_end(key)

        cutoff = now - self.window
        while hits and hits[0] <= cutoff:
            hits.popleft()

        if len(hits) >= self.limit:
            return False

        hits.append(now)
        # Вытесняем давно не появлявшиеся IP
        while len(self._hits) > self.max_keys:
            self._hits.popitem(last=False)
        return True

    def reset(self) -> None:
        self._hits.clear()

    def __len__(self) -> int:
        return len(self._hits)
