"""
Incoming webhooks: authentication of inbound calls and execution of the
automation rules attached to an endpoint.
"""

from __future__ import annotations

import hmac
import ipaddress
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import requests
from pydantic import BaseModel, Field, ValidationError, field_validator

from backend.db import AutomationRuleRecord, DbClient, IncomingLogRecord
from backend.idempotency import IdempotencyCache
from backend.rate_limit import RateLimiter
from backend.signing import verify_signature
from backend.url_validation import validate_webhook_url
from backend.work_orders import WorkOrderService
from shared.serials import ProductBatch
from shared.types import AutomationActionType, ProductType, WorkOrderStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAYLOAD_BYTES = 1024 * 1024

_ARRAY_SEGMENT = re.compile(r"^(\w+)\[(\d+)\]$")

# Only these request headers are kept in the incoming log.
LOGGED_HEADERS = (
    "content-type",
    "user-agent",
    "x-forwarded-for",
    "x-webhook-event",
    "x-webhook-delivery",
    "idempotency-key",
)


class WebhookEnvelope(BaseModel):
    event: str = Field(..., min_length=1, max_length=100)
    timestamp: str
    data: dict[str, Any]
    idempotency_key: Optional[str] = Field(None, max_length=255)

    @field_validator("timestamp")
    @classmethod
    def _iso_timestamp(cls, value: str) -> str:
        try:
            datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError("timestamp must be an ISO 8601 datetime") from exc
        return value


def get_value_by_path(obj: Any, path: Optional[str]) -> Any:
    """
    Resolve ``$.order.items[0].sku`` style paths. ``$`` or an empty path
    returns ``obj``; anything missing resolves to None.
    """
    if not path or path == "$":
        return obj
    if path.startswith("$."):
        path = path[2:]
    elif path.startswith("$"):
        path = path[1:]
    if not path:
        return obj

    value = obj
    for part in path.split("."):
        if value is None:
            return None
        match = _ARRAY_SEGMENT.match(part)
        if match:
            value = value.get(match.group(1)) if isinstance(value, dict) else None
            index = int(match.group(2))
            if not isinstance(value, list) or index >= len(value):
                return None
            value = value[index]
        elif isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return value


def _mapped(payload: Any, mappings: dict, name: str) -> Any:
    path = mappings.get(name)
    if not path:
        return None
    return get_value_by_path(payload, path)


def is_ip_allowed(ip: Optional[str], allowlist: Optional[list[str]]) -> bool:
    if not allowlist:
        return True
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    for allowed in allowlist:
        allowed = allowed.strip()
        if allowed == ip:
            return True
        try:
            if address in ipaddress.ip_network(allowed, strict=False):
                return True
        except ValueError:
            continue
    return False


def validate_payload_size(body: bytes | str, max_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES) -> bool:
    if isinstance(body, str):
        body = body.encode("utf-8")
    return len(body) <= max_bytes


def _to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def execute_rules(
    service: WorkOrderService,
    rules: list[AutomationRuleRecord],
    payload: Any,
    webhook_id: str,
    *,
    require_https: bool = True,
    timeout_seconds: float = 10.0,
) -> tuple[list[dict], list[str]]:
    """
    Run enabled rules in ``sort_order``. Each rule either adds an entry to
    ``executed`` or a message to ``errors``; one failing rule does not stop
    the rest.
    """
    executed: list[dict] = []
    errors: list[str] = []

    for rule in sorted(rules, key=lambda r: r.sort_order):
        if not rule.enabled:
            continue
        mappings = rule.field_mappings or {}
        action = AutomationActionType(rule.action_type)
        try:
            if action is AutomationActionType.CREATE_WORK_ORDER:
                wo_number = _mapped(payload, mappings, "wo_number") or f"WO-{int(time.time() * 1000)}"
                product_type = _mapped(payload, mappings, "product_type") or ProductType.SDM_ECO.value
                batch_size = _to_int(_mapped(payload, mappings, "batch_size"), 1) or 1
                order, items = service.create_work_order(
                    str(wo_number),
                    [ProductBatch(ProductType(product_type), batch_size)],
                    notes=_mapped(payload, mappings, "notes") or "",
                    scheduled_date=_mapped(payload, mappings, "scheduled_date"),
                    created_by=f"webhook:{webhook_id}",
                )
                result = {"work_order_id": order.id, "wo_number": order.wo_number, "items": len(items)}

            elif action is AutomationActionType.UPDATE_WORK_ORDER_STATUS:
                wo_number = _mapped(payload, mappings, "wo_number")
                status = _mapped(payload, mappings, "status")
                if not wo_number or not status:
                    errors.append(f"Rule {rule.name}: Missing wo_number or status in payload")
                    continue
                service.update_status(str(wo_number), WorkOrderStatus(status))
                result = {"wo_number": wo_number, "status": status}

            elif action is AutomationActionType.UPDATE_ITEM_STATUS:
                serial_number = _mapped(payload, mappings, "serial_number")
                status = _mapped(payload, mappings, "status")
                step = _to_int(_mapped(payload, mappings, "current_step"))
                if not serial_number:
                    errors.append(f"Rule {rule.name}: Missing serial_number in payload")
                    continue
                updated = service.update_item(
                    str(serial_number),
                    status=WorkOrderStatus(status) if status else None,
                    current_step=step,
                )
                result = {
                    "serial_number": serial_number,
                    "status": updated.status.value,
                    "current_step": updated.current_step,
                }

            elif action is AutomationActionType.LOG_ACTIVITY:
                details = (
                    get_value_by_path(payload, mappings["details_path"])
                    if mappings.get("details_path")
                    else payload
                )
                if not isinstance(details, dict):
                    details = {"value": details}
                activity = service.log_activity(
                    _mapped(payload, mappings, "action") or "webhook_triggered",
                    _mapped(payload, mappings, "entity_type") or "webhook",
                    _mapped(payload, mappings, "entity_id") or webhook_id,
                    details,
                )
                result = {"action": activity.action, "entity_type": activity.entity_type}

            else:
                url = mappings.get("webhook_url")
                if not url:
                    errors.append(f"Rule {rule.name}: No webhook_url configured")
                    continue
                validate_webhook_url(url, require_https=require_https)
                response = requests.post(
                    url, json=payload, timeout=timeout_seconds, allow_redirects=False
                )
                result = {"url": url, "status": response.status_code}

        except requests.RequestException as exc:
            errors.append(f"Rule {rule.name}: Failed to call webhook - {exc}")
            continue
        except Exception as exc:
            logger.warning("Rule %s (%s) failed: %s", rule.name, action.value, exc)
            errors.append(f"Rule {rule.name}: {exc}")
            continue

        executed.append({"rule": rule.name, "action": action.value, "result": result})

    return executed, errors


class ReceiverError(Exception):
    def __init__(self, status_code: int, detail: str, headers: Optional[dict] = None):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail
        self.headers = headers


@dataclass
class ReceiverResponse:
    status_code: int
    body: dict
    replayed: bool = False
    headers: dict = field(default_factory=dict)


class WebhookReceiver:
    """Handles ``POST /webhook-receiver/{endpoint_key}``."""

    def __init__(
        self,
        db: DbClient,
        service: WorkOrderService,
        rate_limiter: RateLimiter,
        idempotency: IdempotencyCache,
        *,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        require_https: bool = True,
        timeout_seconds: float = 10.0,
    ):
        self.db = db
        self.service = service
        self.rate_limiter = rate_limiter
        self.idempotency = idempotency
        self.max_payload_bytes = max_payload_bytes
        self.require_https = require_https
        self.timeout_seconds = timeout_seconds

    def receive(
        self,
        endpoint_key: str,
        body: bytes,
        headers: dict[str, str],
        client_ip: Optional[str] = None,
    ) -> ReceiverResponse:
        started = time.monotonic()
        headers = {k.lower(): v for k, v in headers.items()}
        logged_headers = {k: headers[k] for k in LOGGED_HEADERS if k in headers}

        webhook = self.db.get_incoming_webhook_by_key(endpoint_key)
        if not webhook:
            raise ReceiverError(404, "Webhook endpoint not found")
        if not webhook.enabled:
            raise ReceiverError(403, "Webhook endpoint is disabled")
        if not is_ip_allowed(client_ip, webhook.allowed_ips):
            logger.warning("Rejected %s for endpoint %s: IP not allowed", client_ip, webhook.id)
            raise ReceiverError(403, "IP address not allowed")

        limit = self.rate_limiter.check(f"{endpoint_key}:{client_ip or 'unknown'}")
        if not limit.allowed:
            retry_after = max(0, int(limit.reset_at - time.time()))
            raise ReceiverError(429, "Rate limit exceeded", {"Retry-After": str(retry_after)})

        provided_secret = headers.get("x-webhook-secret")
        signature = headers.get("x-webhook-signature")
        authenticated = (
            provided_secret is not None
            and hmac.compare_digest(provided_secret.encode(), webhook.secret_key.encode())
        ) or verify_signature(body, signature, webhook.secret_key)
        if not authenticated:
            logger.info("Invalid credentials for incoming webhook %s", webhook.id)
            self.db.log_incoming_request(
                IncomingLogRecord(
                    incoming_webhook_id=webhook.id,
                    response_status=401,
                    request_headers=logged_headers,
                    error_message="Invalid secret key",
                )
            )
            raise ReceiverError(401, "Invalid secret key")

        if not validate_payload_size(body, self.max_payload_bytes):
            raise ReceiverError(
                413, f"Request body exceeds maximum size of {self.max_payload_bytes} bytes"
            )

        try:
            payload = json.loads(body) if body else {}
        except ValueError as exc:
            raise ReceiverError(400, "Invalid JSON body") from exc

        idempotency_key = headers.get("idempotency-key")
        if isinstance(payload, dict) and "event" in payload:
            try:
                envelope = WebhookEnvelope.model_validate(payload)
            except ValidationError as exc:
                raise ReceiverError(400, f"Invalid webhook envelope: {exc.errors()[0]['msg']}") from exc
            idempotency_key = idempotency_key or envelope.idempotency_key

        cache_key = f"incoming:{webhook.id}:{idempotency_key}" if idempotency_key else None
        if cache_key:
            cached = self.idempotency.get(cache_key)
            if cached is not None:
                return ReceiverResponse(
                    status_code=cached["status_code"],
                    body=cached["body"],
                    replayed=True,
                    headers={"Idempotent-Replayed": "true"},
                )

        rules = self.db.list_automation_rules(webhook.id, enabled_only=True)
        executed, errors = execute_rules(
            self.service,
            rules,
            payload,
            webhook.id,
            require_https=self.require_https,
            timeout_seconds=self.timeout_seconds,
        )
        logger.info(
            "Incoming webhook %s executed %d rules, %d errors",
            webhook.id, len(executed), len(errors),
        )

        status_code = 207 if errors else 200
        response_body = {
            "success": True,
            "executed": len(executed),
            "errors": len(errors),
            "details": {"executed": executed, "errors": errors},
        }
        self.db.record_incoming_trigger(webhook.id)
        self.db.log_incoming_request(
            IncomingLogRecord(
                incoming_webhook_id=webhook.id,
                response_status=status_code,
                request_body=payload,
                request_headers=logged_headers,
                response_body={"executed": executed, "errors": errors},
                error_message="; ".join(errors) if errors else None,
                response_time_ms=int((time.monotonic() - started) * 1000),
            )
        )
        if cache_key:
            self.idempotency.store(cache_key, {"status_code": status_code, "body": response_body})
        return ReceiverResponse(status_code=status_code, body=response_body)
