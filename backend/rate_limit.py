"""
Fixed-window rate limiting for the incoming webhook receiver.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

import redis


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter(Protocol):
    def check(self, identifier: str) -> RateLimitResult:
        ...


@dataclass
class InMemoryRateLimiter:
    window_seconds: float = 60.0
    max_requests: int = 100
    clock: Callable[[], float] = time.time
    windows: dict[str, list] = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

    def check(self, identifier: str) -> RateLimitResult:
        now = self.clock()
        with self._lock:
            entry = self.windows.get(identifier)
            if entry is None or now > entry[1]:
                reset_at = now + self.window_seconds
                self.windows[identifier] = [1, reset_at]
                return RateLimitResult(True, self.max_requests - 1, reset_at)

            count, reset_at = entry
            if count >= self.max_requests:
                return RateLimitResult(False, 0, reset_at)

            entry[0] = count + 1
            return RateLimitResult(True, self.max_requests - entry[0], reset_at)

    def cleanup(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [k for k, (_, reset_at) in self.windows.items() if now > reset_at]
            for key in expired:
                del self.windows[key]
        return len(expired)


@dataclass
class RedisRateLimiter:
    """INCR + EXPIRE counter per identifier, shared by every API process."""

    url: str
    key_prefix: str = "mes:ratelimit"
    window_seconds: int = 60
    max_requests: int = 100

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def check(self, identifier: str) -> RateLimitResult:
        key = f"{self.key_prefix}:{identifier}"
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.ttl(key)
        count, ttl = pipe.execute()
        if ttl is None or ttl < 0:
            self.client.expire(key, int(self.window_seconds))
            ttl = self.window_seconds
        reset_at = time.time() + ttl
        if count > self.max_requests:
            return RateLimitResult(False, 0, reset_at)
        return RateLimitResult(True, self.max_requests - count, reset_at)
