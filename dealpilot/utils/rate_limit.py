"""Per-key request pacing."""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict


class RateLimiter:
    """Enforces a minimum interval between calls sharing the same key."""

    def __init__(self, *, min_interval: float = 0.1) -> None:
        self.min_interval = min_interval
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._last_request: dict[str, float] = defaultdict(lambda: float("-inf"))

    async def wait(self, key: str) -> None:
        lock = self._locks[key]
        async with lock:
            elapsed = time.monotonic() - self._last_request[key]
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)
            self._last_request[key] = time.monotonic()
