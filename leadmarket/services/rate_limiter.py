"""Injectable fixed-window rate limiting keyed by identifier."""
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable

import redis

from leadmarket.config import get_settings

logger = logging.getLogger(__name__)


class RateLimiter(ABC):
    """Counts hits per key inside a fixed window."""

    def __init__(self, limit: int, window_seconds: int):
        self.limit = limit
        self.window_seconds = window_seconds

    @abstractmethod
    def hit(self, key: str) -> bool:
        """Record one hit; False when the key is over its limit."""
        ...


class RedisRateLimiter(RateLimiter):
    """Shared across workers: INCR + EXPIRE on a per-window Redis key."""

    def __init__(self, client: redis.Redis, limit: int, window_seconds: int, prefix: str = "ratelimit"):
        super().__init__(limit, window_seconds)
        self.client = client
        self.prefix = prefix

    def hit(self, key: str) -> bool:
        window = int(time.time() // self.window_seconds)
        redis_key = f"{self.prefix}:{key}:{window}"
        try:
            pipe = self.client.pipeline()
            pipe.incr(redis_key)
            pipe.expire(redis_key, self.window_seconds)
            count, _ = pipe.execute()
        except redis.RedisError as e:
            # Fail open: an outage of the limiter must not block purchases
            logger.warning(f"Rate limiter unavailable, allowing {key}: {e}")
            return True
        return count <= self.limit


class InMemoryRateLimiter(RateLimiter):
    """Single-process limiter for development and tests."""

    def __init__(self, limit: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        super().__init__(limit, window_seconds)
        self.clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[int, int]] = {}

    def hit(self, key: str) -> bool:
        window = int(self.clock() // self.window_seconds)
        with self._lock:
            current_window, count = self._windows.get(key, (window, 0))
            if current_window != window:
                count = 0
            count += 1
            self._windows[key] = (window, count)
        return count <= self.limit


_purchase_limiter = None


def get_purchase_rate_limiter() -> RateLimiter:
    """Dependency for the purchase endpoints' limiter."""
    global _purchase_limiter
    if _purchase_limiter is None:
        settings = get_settings()
        _purchase_limiter = RedisRateLimiter(
            redis.Redis.from_url(settings.redis_url, socket_connect_timeout=2),
            settings.purchase_rate_limit,
            settings.purchase_rate_window_seconds,
            prefix="purchase",
        )
    return _purchase_limiter
