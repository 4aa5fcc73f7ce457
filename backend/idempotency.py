"""
Idempotency cache: remembers the response for a key so a retried request is
answered from the cache instead of being processed twice.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

import redis

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class IdempotencyCache(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def store(self, key: str, response: Any) -> None:
        ...

    def cleanup(self) -> int:
        ...


@dataclass
class InMemoryIdempotencyCache:
    """Process-local cache, entries expire after ``ttl_seconds``."""

    ttl_seconds: float = DEFAULT_TTL_SECONDS
    clock: Callable[[], float] = time.time
    entries: dict[str, tuple[Any, float]] = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self.entries.get(key)
            if entry is None:
                return None
            response, expires_at = entry
            if self.clock() >= expires_at:
                del self.entries[key]
                return None
            return response

    def store(self, key: str, response: Any) -> None:
        with self._lock:
            self.entries[key] = (response, self.clock() + self.ttl_seconds)

    def cleanup(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self.entries.items() if now >= expires_at]
            for key in expired:
                del self.entries[key]
        return len(expired)


@dataclass
class RedisIdempotencyCache:
    """Redis-backed cache; expiry is delegated to Redis key TTLs."""

    url: str
    key_prefix: str = "mes:idempotency"
    ttl_seconds: int = DEFAULT_TTL_SECONDS

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def get(self, key: str) -> Optional[Any]:
        raw = self.client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    def store(self, key: str, response: Any) -> None:
        self.client.set(
            self._key(key), json.dumps(response, default=str), ex=int(self.ttl_seconds)
        )

    def cleanup(self) -> int:
        return 0
