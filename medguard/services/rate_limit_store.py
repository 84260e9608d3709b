"""
MedGuard - Rate Limit Store
Fixed-window counters keyed by caller, with TTL eviction. Redis backs the
shared multi-instance deployment; the in-memory store is instance-owned
and clock-injected.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis
from pydantic import BaseModel
from redis import Redis, RedisError

from medguard.config import settings

logger = logging.getLogger(__name__)


class RateLimitResult(BaseModel):
    """Outcome of one rate-limit hit"""
    allowed: bool
    count: int
    reset_at: float

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets"""
        return max(0, int(self.reset_at - now + 0.999))


class RateLimitStore(Protocol):
    def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        ...


# =============================================================================
# Redis Store
# =============================================================================

class RedisRateLimitStore:
    """Counters in Redis; expiry of the key ends the window"""

    def __init__(self, client: Optional[Redis] = None, key_prefix: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        self.redis_client = client or redis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_connections,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        self.key_prefix = key_prefix or settings.rate_limit_key_prefix
        self.clock = clock

    def _generate_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """
        Count one attempt against key

        The window is created and the attempt counted in one MULTI/EXEC
        transaction, and the decision is taken from the counter it returns,
        so concurrent instances cannot both admit the last slot. Rejected
        attempts are counted but never extend the window. Redis errors
        propagate to the caller.
        """
        redis_key = self._generate_key(key)
        now = self.clock()

        try:
            pipe = self.redis_client.pipeline(transaction=True)
            # SET NX EX starts the window with its expiry; INCR keeps the TTL
            pipe.set(redis_key, 0, ex=window_seconds, nx=True)
            pipe.incr(redis_key)
            pipe.ttl(redis_key)
            _, count, ttl = pipe.execute()

        except RedisError as e:
            logger.error(f"Rate limit store unavailable for {key}: {e}")
            raise

        count = int(count)
        reset_at = now + (ttl if ttl and ttl > 0 else window_seconds)
        if count > limit:
            logger.warning(f"Rate limit exceeded for {key}: {count}/{limit}")
            return RateLimitResult(allowed=False, count=count, reset_at=reset_at)

        return RateLimitResult(allowed=True, count=count, reset_at=reset_at)


# =============================================================================
# In-Memory Store
# =============================================================================

class InMemoryRateLimitStore:
    """Per-instance counters; expired windows are evicted on access"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = self.clock()
        with self._lock:
            self._evict_expired(now)
            count, reset_at = self._windows.get(key, (0, now + window_seconds))
            count += 1
            self._windows[key] = (count, reset_at)

            if count > limit:
                logger.warning(f"Rate limit exceeded for {key}: {count}/{limit}")
                return RateLimitResult(allowed=False, count=count, reset_at=reset_at)
            return RateLimitResult(allowed=True, count=count, reset_at=reset_at)

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, (_, reset_at) in self._windows.items() if now >= reset_at]
        for k in expired:
            del self._windows[k]

    def __len__(self) -> int:
        return len(self._windows)


def build_rate_limit_store(client: Optional[Redis] = None) -> RateLimitStore:
    """Redis-backed store unless running tests without a client"""
    if client is None and settings.is_test:
        return InMemoryRateLimitStore()
    return RedisRateLimitStore(client=client)
