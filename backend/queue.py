"""
Delivery job queue between the API (producer) and webhook workers (consumers).

Only job ids travel on the queue; the job row in the database is the source of
truth and must be claimed before delivery. A lost or duplicated id is
therefore harmless: the worker's database fallback picks up WAITING jobs and
a second claim of the same id fails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


class JobQueue(Protocol):
    def enqueue(self, job_id: str) -> None:
        ...

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        ...

    def size(self) -> int:
        ...


@dataclass
class InMemoryJobQueue:
    """FIFO of job ids for tests and single-process runs."""

    items: list[str] = field(default_factory=list)

    def enqueue(self, job_id: str) -> None:
        self.items.append(job_id)

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        return self.items.pop(0) if self.items else None

    def size(self) -> int:
        return len(self.items)


@dataclass
class RedisJobQueue:
    """
    Redis list of job ids: RPUSH to enqueue, BLPOP/LPOP to dequeue.

    Connection drops are logged and reported as an empty queue; the worker
    polls again and the database fallback covers anything missed.
    """

    url: str
    queue_key: str = "mes:webhook_deliveries"

    def __post_init__(self):
        self._connect()

    def _connect(self) -> None:
        self.client = redis.Redis.from_url(self.url, decode_responses=True)

    def enqueue(self, job_id: str) -> None:
        self.client.rpush(self.queue_key, job_id)

    def dequeue(self, *, block: bool = True, timeout: int | None = None) -> Optional[str]:
        try:
            if not block:
                return self.client.lpop(self.queue_key)
            popped = self.client.blpop([self.queue_key], timeout=timeout or 0)
        except (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError) as exc:
            logger.warning("Lost connection to delivery queue %s: %s", self.queue_key, exc)
            self._connect()
            return None
        return popped[1] if popped else None

    def size(self) -> int:
        return int(self.client.llen(self.queue_key))
