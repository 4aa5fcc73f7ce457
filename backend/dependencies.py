"""
Dependency wiring for the FastAPI app and the worker.
"""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Header, HTTPException

from backend.automation import WebhookReceiver
from backend.config import get_settings
from backend.db import DbClient, InMemoryDbClient, PostgresDbClient
from backend.dead_letter import DeadLetterQueue, InMemoryDeadLetterQueue, RedisDeadLetterQueue
from backend.delivery import WebhookDeliverer
from backend.events import EventBridge
from backend.health import WebhookHealthTracker
from backend.idempotency import (
    IdempotencyCache,
    InMemoryIdempotencyCache,
    RedisIdempotencyCache,
)
from backend.queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from backend.rate_limit import InMemoryRateLimiter, RateLimiter, RedisRateLimiter
from backend.realtime import ChannelRegistry
from backend.work_orders import WorkOrderService

_db_client: DbClient | None = None
_queue_client: JobQueue | None = None
_dead_letter_queue: DeadLetterQueue | None = None
_idempotency_cache: IdempotencyCache | None = None
_rate_limiter: RateLimiter | None = None
_health_tracker: WebhookHealthTracker | None = None
_channel_registry: ChannelRegistry | None = None
_event_bridge: EventBridge | None = None


def _use_redis() -> bool:
    settings = get_settings()
    return bool(settings.redis_url) and not settings.use_in_memory_backends


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_queue_client() -> JobQueue:
    """
    Return a singleton queue client for dispatching delivery jobs to workers.
    """
    global _queue_client
    if _queue_client:
        return _queue_client

    settings = get_settings()
    if _use_redis():
        _queue_client = RedisJobQueue(
            url=settings.redis_url,
            queue_key=settings.redis_queue_key,
        )
    else:
        _queue_client = InMemoryJobQueue()
    return _queue_client


def get_dead_letter_queue() -> DeadLetterQueue:
    global _dead_letter_queue
    if _dead_letter_queue:
        return _dead_letter_queue

    settings = get_settings()
    if _use_redis():
        _dead_letter_queue = RedisDeadLetterQueue(
            settings.redis_url,
            key=settings.redis_dead_letter_key,
            max_size=settings.dead_letter_max_size,
        )
    else:
        _dead_letter_queue = InMemoryDeadLetterQueue(max_size=settings.dead_letter_max_size)
    return _dead_letter_queue


def get_idempotency_cache() -> IdempotencyCache:
    global _idempotency_cache
    if _idempotency_cache:
        return _idempotency_cache

    settings = get_settings()
    if _use_redis():
        _idempotency_cache = RedisIdempotencyCache(
            url=settings.redis_url,
            key_prefix=f"{settings.redis_key_prefix}:idempotency",
            ttl_seconds=settings.idempotency_ttl_seconds,
        )
    else:
        _idempotency_cache = InMemoryIdempotencyCache(
            ttl_seconds=settings.idempotency_ttl_seconds
        )
    return _idempotency_cache


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter:
        return _rate_limiter

    settings = get_settings()
    if _use_redis():
        _rate_limiter = RedisRateLimiter(
            url=settings.redis_url,
            key_prefix=f"{settings.redis_key_prefix}:ratelimit",
            window_seconds=settings.rate_limit_window_seconds,
            max_requests=settings.rate_limit_max_requests,
        )
    else:
        _rate_limiter = InMemoryRateLimiter(
            window_seconds=settings.rate_limit_window_seconds,
            max_requests=settings.rate_limit_max_requests,
        )
    return _rate_limiter


def get_health_tracker() -> WebhookHealthTracker:
    """Health stats are per process; each worker keeps its own circuits."""
    global _health_tracker
    if _health_tracker:
        return _health_tracker

    settings = get_settings()
    _health_tracker = WebhookHealthTracker(
        failure_threshold=settings.webhook_failure_threshold,
        min_health_score=settings.circuit_min_health_score,
        min_calls=settings.circuit_min_calls,
        cooldown_seconds=settings.circuit_cooldown_seconds,
    )
    return _health_tracker


def get_channel_registry() -> ChannelRegistry:
    global _channel_registry
    if _channel_registry is None:
        _channel_registry = ChannelRegistry()
    return _channel_registry


def get_event_bridge() -> EventBridge:
    global _event_bridge
    if _event_bridge is None:
        _event_bridge = EventBridge(
            get_channel_registry(), get_db_client(), get_queue_client()
        )
    return _event_bridge


def get_work_order_service() -> WorkOrderService:
    return WorkOrderService(
        get_db_client(),
        registry=get_channel_registry(),
        serial_format=get_settings().serial_format,
    )


def get_deliverer() -> WebhookDeliverer:
    settings = get_settings()
    return WebhookDeliverer(
        get_db_client(),
        get_health_tracker(),
        get_dead_letter_queue(),
        get_idempotency_cache(),
        timeout_seconds=settings.webhook_timeout_seconds,
        max_attempts=settings.webhook_max_attempts,
        backoff_base_seconds=settings.webhook_backoff_base_seconds,
        require_https=settings.webhook_require_https,
        user_agent=settings.webhook_user_agent,
        auto_disable=settings.webhook_auto_disable,
    )


def get_webhook_receiver() -> WebhookReceiver:
    settings = get_settings()
    return WebhookReceiver(
        get_db_client(),
        get_work_order_service(),
        get_rate_limiter(),
        get_idempotency_cache(),
        max_payload_bytes=settings.max_payload_bytes,
        require_https=settings.webhook_require_https,
        timeout_seconds=settings.webhook_timeout_seconds,
    )


def require_admin(authorization: Optional[str] = Header(None)) -> None:
    """
    Guard for admin routes. Without a configured token the API runs open
    (local development).
    """
    token = get_settings().admin_api_token
    if not token:
        return
    scheme, _, provided = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not provided:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    if not hmac.compare_digest(provided.strip(), token):
        raise HTTPException(status_code=401, detail="Invalid bearer token")


def reset_dependencies() -> None:
    """Drop every singleton (tests, or after settings change)."""
    global _db_client, _queue_client, _dead_letter_queue, _idempotency_cache
    global _rate_limiter, _health_tracker, _channel_registry, _event_bridge
    if _event_bridge is not None:
        _event_bridge.stop()
    _db_client = None
    _queue_client = None
    _dead_letter_queue = None
    _idempotency_cache = None
    _rate_limiter = None
    _health_tracker = None
    _channel_registry = None
    _event_bridge = None
