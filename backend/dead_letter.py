"""
Dead-letter queue for webhook deliveries that exhausted their retries.

Entries are kept for manual inspection and retry; nothing is retried
automatically from here.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from typing import Optional, Protocol

import redis

logger = logging.getLogger(__name__)


@dataclass
class DeadLetter:
    delivery_id: str
    webhook_id: str
    event_type: str
    payload: dict
    error: str
    attempts: int
    job_id: Optional[str] = None
    failed_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DeadLetter":
        return cls(**data)


class DeadLetterQueue(Protocol):
    def push(self, entry: DeadLetter) -> None:
        ...

    def list(self, limit: int = 100, webhook_id: str | None = None) -> list[DeadLetter]:
        ...

    def get(self, delivery_id: str) -> Optional[DeadLetter]:
        ...

    def remove(self, delivery_id: str) -> bool:
        ...

    def size(self) -> int:
        ...

    def clear(self) -> int:
        ...


class InMemoryDeadLetterQueue:
    """Bounded in-process queue; the oldest entry is dropped when full."""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self.entries: "OrderedDict[str, DeadLetter]" = OrderedDict()
        self._lock = threading.Lock()

    def push(self, entry: DeadLetter) -> None:
        with self._lock:
            self.entries.pop(entry.delivery_id, None)
            self.entries[entry.delivery_id] = entry
            while len(self.entries) > self.max_size:
                dropped_id, _ = self.entries.popitem(last=False)
                logger.warning("Dead-letter queue full, dropped %s", dropped_id)

    def list(self, limit: int = 100, webhook_id: str | None = None) -> list[DeadLetter]:
        with self._lock:
            items = [
                entry
                for entry in reversed(self.entries.values())
                if webhook_id is None or entry.webhook_id == webhook_id
            ]
        return items[:limit]

    def get(self, delivery_id: str) -> Optional[DeadLetter]:
        with self._lock:
            return self.entries.get(delivery_id)

    def remove(self, delivery_id: str) -> bool:
        with self._lock:
            return self.entries.pop(delivery_id, None) is not None

    def size(self) -> int:
        return len(self.entries)

    def clear(self) -> int:
        with self._lock:
            count = len(self.entries)
            self.entries.clear()
        return count


class RedisDeadLetterQueue:
    """
    Entries live in a hash keyed by delivery id; a list keeps them in
    arrival order (newest first) so the API can page through them.
    """

    def __init__(self, url: str, key: str = "mes:dead_letters", max_size: int = 1000):
        self.url = url
        self.key = key
        self.order_key = f"{key}:order"
        self.max_size = max_size
        self.client = redis.Redis.from_url(url)

    def push(self, entry: DeadLetter) -> None:
        pipe = self.client.pipeline()
        pipe.hset(self.key, entry.delivery_id, json.dumps(entry.as_dict(), default=str))
        pipe.lrem(self.order_key, 0, entry.delivery_id)
        pipe.lpush(self.order_key, entry.delivery_id)
        pipe.execute()

        overflow = self.client.lrange(self.order_key, self.max_size, -1)
        if overflow:
            pipe = self.client.pipeline()
            pipe.ltrim(self.order_key, 0, self.max_size - 1)
            pipe.hdel(self.key, *overflow)
            pipe.execute()
            logger.warning("Dead-letter queue full, dropped %d entries", len(overflow))

    def list(self, limit: int = 100, webhook_id: str | None = None) -> list[DeadLetter]:
        ids = self.client.lrange(self.order_key, 0, -1)
        if not ids:
            return []
        raws = self.client.hmget(self.key, ids)
        entries: list[DeadLetter] = []
        for raw in raws:
            if raw is None:
                continue
            entry = DeadLetter.from_dict(json.loads(raw))
            if webhook_id is not None and entry.webhook_id != webhook_id:
                continue
            entries.append(entry)
            if len(entries) >= limit:
                break
        return entries

    def get(self, delivery_id: str) -> Optional[DeadLetter]:
        raw = self.client.hget(self.key, delivery_id)
        if raw is None:
            return None
        return DeadLetter.from_dict(json.loads(raw))

    def remove(self, delivery_id: str) -> bool:
        pipe = self.client.pipeline()
        pipe.hdel(self.key, delivery_id)
        pipe.lrem(self.order_key, 0, delivery_id)
        removed, _ = pipe.execute()
        return bool(removed)

    def size(self) -> int:
        return int(self.client.hlen(self.key))

    def clear(self) -> int:
        count = self.size()
        self.client.delete(self.key, self.order_key)
        return count


class DeadLetterNotFoundError(LookupError):
    pass


def requeue_dead_letter(dead_letters: DeadLetterQueue, db, queue, delivery_id: str):
    """
    Turn a dead letter back into a WAITING delivery job and enqueue it.
    The entry is removed only once the job exists.
    """
    entry = dead_letters.get(delivery_id)
    if not entry:
        raise DeadLetterNotFoundError(f"Dead letter {delivery_id} not found")
    if not db.get_outgoing_webhook(entry.webhook_id):
        raise DeadLetterNotFoundError(f"Webhook {entry.webhook_id} no longer exists")
    job = db.create_delivery_job(
        entry.webhook_id,
        entry.event_type,
        entry.payload.get("data", {}),
        idempotency_key=entry.payload.get("idempotency_key"),
    )
    queue.enqueue(job.job_id)
    dead_letters.remove(delivery_id)
    logger.info("Requeued dead letter %s as job %s", delivery_id, job.job_id)
    return job
