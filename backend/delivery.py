"""
Outgoing webhook delivery.

A delivery is one logical send of an event to one subscriber. It is tried up
to ``max_attempts`` times with exponential backoff (``base ** attempt``
seconds between tries), every attempt feeds the health tracker, and a
delivery that never succeeds ends up in the dead-letter queue.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import requests

from backend.dead_letter import DeadLetter, DeadLetterQueue
from backend.db import DbClient, DeliveryLogRecord, OutgoingWebhookRecord
from backend.health import WebhookHealthTracker
from backend.idempotency import IdempotencyCache
from backend.signing import generate_delivery_id, sign_payload
from backend.url_validation import check_webhook_url

logger = logging.getLogger(__name__)

MAX_LOGGED_RESPONSE_CHARS = 2000

CIRCUIT_OPEN_ERROR = "circuit open"


@dataclass
class DeliveryResult:
    success: bool
    delivery_id: str
    attempts: int = 0
    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None
    error: Optional[str] = None
    duplicate: bool = False
    dead_lettered: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


def _response_body(response: requests.Response):
    try:
        return response.json()
    except ValueError:
        return (response.text or "")[:MAX_LOGGED_RESPONSE_CHARS]


class WebhookDeliverer:
    def __init__(
        self,
        db: DbClient,
        health: WebhookHealthTracker,
        dead_letters: DeadLetterQueue,
        idempotency: IdempotencyCache,
        *,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
        require_https: bool = True,
        user_agent: str = "MES-Webhook/1.0",
        auto_disable: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.db = db
        self.health = health
        self.dead_letters = dead_letters
        self.idempotency = idempotency
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.require_https = require_https
        self.user_agent = user_agent
        self.auto_disable = auto_disable
        self.sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return self.backoff_base_seconds ** attempt

    def build_request(
        self,
        webhook: OutgoingWebhookRecord,
        event_type: str,
        data: dict,
        delivery_id: str,
        timestamp: str,
        idempotency_key: Optional[str] = None,
    ) -> tuple[dict, str, dict]:
        """Return ``(payload, body, headers)`` for one delivery."""
        payload = {"event": event_type, "timestamp": timestamp, "data": data}
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key
        payload["delivery_id"] = delivery_id
        body = json.dumps(payload, separators=(",", ":"), default=str)

        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": event_type,
            "X-Webhook-Timestamp": timestamp,
            "X-Webhook-Delivery": delivery_id,
            "User-Agent": self.user_agent,
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        headers.update(webhook.headers or {})
        if webhook.secret_key:
            headers["X-Webhook-Signature"] = sign_payload(body, webhook.secret_key)
        return payload, body, headers

    def deliver(
        self,
        webhook: OutgoingWebhookRecord,
        event_type: str,
        data: dict,
        *,
        idempotency_key: Optional[str] = None,
        job_id: Optional[str] = None,
        timestamp: Optional[str] = None,
        dead_letter: bool = True,
    ) -> DeliveryResult:
        delivery_id = generate_delivery_id()
        if not webhook.enabled:
            return DeliveryResult(
                success=False, delivery_id=delivery_id, error="Webhook is disabled"
            )

        timestamp = timestamp or datetime.now(timezone.utc).isoformat()
        payload, body, headers = self.build_request(
            webhook, event_type, data, delivery_id, timestamp, idempotency_key
        )

        valid, url_error = check_webhook_url(
            webhook.webhook_url, require_https=self.require_https
        )
        if not valid:
            logger.warning(
                "Blocked delivery %s to webhook %s: %s", delivery_id, webhook.id, url_error
            )
            return self._fail(
                webhook, event_type, payload, delivery_id, job_id,
                error=f"URL validation failed: {url_error}",
                attempts=0,
                dead_letter=dead_letter,
            )

        cache_key = f"{webhook.id}:{idempotency_key}" if idempotency_key else None
        if cache_key:
            cached = self.idempotency.get(cache_key)
            if cached is not None:
                logger.info("Duplicate delivery for %s, returning cached result", cache_key)
                result = DeliveryResult(**cached)
                result.duplicate = True
                return result

        if not self.health.allow_request(webhook.id):
            logger.warning("Circuit open for webhook %s, skipping delivery", webhook.id)
            return self._fail(
                webhook, event_type, payload, delivery_id, job_id,
                error=CIRCUIT_OPEN_ERROR,
                attempts=0,
                dead_letter=dead_letter,
            )

        attempts = 0
        error: Optional[str] = None
        status_code: Optional[int] = None
        response_time_ms: Optional[int] = None
        response_body = None
        should_disable = False

        try:
            while attempts < self.max_attempts:
                attempts += 1
                started = time.monotonic()
                try:
                    # Redirects are not followed; a 3xx could point past URL validation.
                    response = requests.post(
                        webhook.webhook_url,
                        data=body.encode("utf-8"),
                        headers=headers,
                        timeout=self.timeout_seconds,
                        allow_redirects=False,
                    )
                    status_code = response.status_code
                    response_body = _response_body(response)
                    error = None if 200 <= status_code < 300 else f"HTTP {status_code}"
                except requests.RequestException as exc:
                    status_code = None
                    response_body = None
                    error = str(exc) or exc.__class__.__name__
                response_time_ms = int((time.monotonic() - started) * 1000)

                should_disable = self.health.record(webhook.id, error is None, response_time_ms)
                if error is None:
                    break

                logger.info(
                    "Delivery %s attempt %d/%d to webhook %s failed: %s",
                    delivery_id, attempts, self.max_attempts, webhook.id, error,
                )
                if attempts >= self.max_attempts:
                    break
                if not self.health.allow_request(webhook.id):
                    error = f"{error} ({CIRCUIT_OPEN_ERROR})"
                    break
                self.sleep(self.backoff_delay(attempts))
        finally:
            self.health.release_trial(webhook.id)

        if error is None:
            self.db.log_delivery(
                DeliveryLogRecord(
                    webhook_id=webhook.id,
                    event_type=event_type,
                    payload=payload,
                    delivery_id=delivery_id,
                    attempts=attempts,
                    response_status=status_code,
                    response_body=response_body,
                    response_time_ms=response_time_ms,
                )
            )
            result = DeliveryResult(
                success=True,
                delivery_id=delivery_id,
                attempts=attempts,
                status_code=status_code,
                response_time_ms=response_time_ms,
            )
            if cache_key:
                self.idempotency.store(cache_key, result.as_dict())
            logger.info("Delivered %s to webhook %s in %d attempt(s)", delivery_id, webhook.id, attempts)
            return result

        result = self._fail(
            webhook, event_type, payload, delivery_id, job_id,
            error=error,
            attempts=attempts,
            dead_letter=dead_letter,
            status_code=status_code,
            response_body=response_body,
            response_time_ms=response_time_ms,
        )
        if should_disable and self.auto_disable:
            self.db.update_outgoing_webhook(webhook.id, enabled=False)
            logger.warning("Disabled webhook %s after repeated failures", webhook.id)
        return result

    def _fail(
        self,
        webhook: OutgoingWebhookRecord,
        event_type: str,
        payload: dict,
        delivery_id: str,
        job_id: Optional[str],
        *,
        error: str,
        attempts: int,
        dead_letter: bool,
        status_code: Optional[int] = None,
        response_body=None,
        response_time_ms: Optional[int] = None,
    ) -> DeliveryResult:
        self.db.log_delivery(
            DeliveryLogRecord(
                webhook_id=webhook.id,
                event_type=event_type,
                payload=payload,
                delivery_id=delivery_id,
                attempts=attempts,
                response_status=status_code,
                response_body=response_body,
                response_time_ms=response_time_ms,
                error_message=error,
            )
        )
        if dead_letter:
            self.dead_letters.push(
                DeadLetter(
                    delivery_id=delivery_id,
                    webhook_id=webhook.id,
                    event_type=event_type,
                    payload=payload,
                    error=error,
                    attempts=attempts,
                    job_id=job_id,
                )
            )
            logger.error(
                "Delivery %s to webhook %s dead-lettered after %d attempt(s): %s",
                delivery_id, webhook.id, attempts, error,
            )
        return DeliveryResult(
            success=False,
            delivery_id=delivery_id,
            attempts=attempts,
            status_code=status_code,
            response_time_ms=response_time_ms,
            error=error,
            dead_lettered=dead_letter,
        )
