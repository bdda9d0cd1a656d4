"""
Fixed-window send limiter for webhook-class destinations.

Each destination id gets a counter that lives for ``window_seconds`` from its
first send. Within the window the counter may reach the destination's cap; the
call that would exceed it is refused without touching the counter.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from app.config import settings
from app.core.logging import logger


@dataclass
class _Window:
    started_at: float
    count: int


class RateLimiter:
    """In-process limiter. Counters are lost on restart."""

    def __init__(
        self,
        max_requests: int = 30,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = asyncio.Lock()

    def _expired(self, window: _Window, now: float) -> bool:
        return now - window.started_at >= self.window_seconds

    async def can_send(self, key: str, limit: Optional[int] = None) -> bool:
        cap = limit or self.max_requests
        async with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or self._expired(window, now):
                self._windows[key] = _Window(started_at=now, count=1)
                return True
            if window.count >= cap:
                logger.warning("Rate limit reached", destination=key, limit=cap)
                return False
            window.count += 1
            return True

    async def remaining_in_window(self, key: str, limit: Optional[int] = None) -> int:
        cap = limit or self.max_requests
        async with self._lock:
            window = self._windows.get(key)
            if window is None or self._expired(window, self._clock()):
                return cap
            return max(0, cap - window.count)

    async def sweep(self) -> int:
        """Drop expired windows. Returns how many were removed."""
        async with self._lock:
            now = self._clock()
            expired = [key for key, window in self._windows.items() if self._expired(window, now)]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug("Rate limit windows swept", removed=len(expired))
        return len(expired)


# GET/SET/INCR in one script so two workers cannot both take the last slot
_CAN_SEND_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
    redis.call('SET', KEYS[1], 1, 'EX', ARGV[2])
    return 1
end
if tonumber(current) >= tonumber(ARGV[1]) then
    return 0
end
redis.call('INCR', KEYS[1])
return 1
"""


class RedisRateLimiter:
    """Shared limiter for multi-process deployments. Window expiry is the key TTL."""

    def __init__(self, redis, max_requests: int = 30, window_seconds: int = 60, prefix: str = "ratelimit:webhook:"):
        self.redis = redis
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.prefix = prefix

    async def can_send(self, key: str, limit: Optional[int] = None) -> bool:
        cap = limit or self.max_requests
        allowed = await self.redis.eval(_CAN_SEND_SCRIPT, 1, f"{self.prefix}{key}", cap, self.window_seconds)
        if not int(allowed):
            logger.warning("Rate limit reached", destination=key, limit=cap, backend="redis")
            return False
        return True

    async def remaining_in_window(self, key: str, limit: Optional[int] = None) -> int:
        cap = limit or self.max_requests
        current = await self.redis.get(f"{self.prefix}{key}")
        if current is None:
            return cap
        return max(0, cap - int(current))

    async def sweep(self) -> int:
        return 0


def build_rate_limiter(redis=None):
    if settings.RATE_LIMIT_BACKEND == "redis":
        if redis is None:
            raise ValueError("RATE_LIMIT_BACKEND=redis requires a Redis client")
        return RedisRateLimiter(
            redis,
            max_requests=settings.WEBHOOK_RATE_LIMIT_DEFAULT,
            window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
        )
    return RateLimiter(
        max_requests=settings.WEBHOOK_RATE_LIMIT_DEFAULT,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
