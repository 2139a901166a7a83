import asyncio
import time
from typing import Callable, Dict, Hashable

from loguru import logger


class RateLimiter:
    """Accepts at most one request per key within a fixed window."""

    def __init__(self, window: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self.clock = clock
        self.logger = logger
        self._last_accepted: Dict[Hashable, float] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, key: Hashable) -> bool:
        """Record an accepted request for key, or return False if it is too soon"""
        async with self._lock:
            now = self.clock()
            self._last_accepted = {
                other: accepted
                for other, accepted in self._last_accepted.items()
                if now - accepted < self.window
            }
            last = self._last_accepted.get(key)
            if last is not None and now - last < self.window:
                self.logger.info(
                    f"Rate limited {key}: {now - last:.1f}s since last accepted request"
                )
                return False
            self._last_accepted[key] = now
            return True

    def tracked_keys(self) -> int:
        return len(self._last_accepted)
