"""
Database abstraction for Postgres and an in-memory test implementation.
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Dict, Optional, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Integer,
    String,
    create_engine,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from shared.serials import get_prefix, next_sequence
from shared.types import (
    AutomationActionType,
    DeliveryStatus,
    ProductType,
    WorkOrderStatus,
)


class WorkOrderExistsError(ValueError):
    """Raised when a work order number is already taken."""


class DuplicateSerialError(ValueError):
    """Raised when a generated item serial collides with an existing one."""


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> float:
    return time.time()


@dataclass
class WorkOrderRecord:
    wo_number: str
    product_type: ProductType
    batch_size: int
    created_by: Optional[str] = None
    status: WorkOrderStatus = WorkOrderStatus.PLANNED
    notes: str = ""
    scheduled_date: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["product_type"] = self.product_type.value
        data["status"] = self.status.value
        return data


@dataclass
class WorkOrderItemRecord:
    work_order_id: str
    serial_number: str
    position_in_batch: int
    product_type: ProductType
    status: WorkOrderStatus = WorkOrderStatus.PLANNED
    current_step: int = 1
    assigned_to: Optional[str] = None
    completed_at: Optional[float] = None
    id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["product_type"] = self.product_type.value
        data["status"] = self.status.value
        return data


@dataclass
class ActivityRecord:
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    details: dict = field(default_factory=dict)
    user_id: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class OutgoingWebhookRecord:
    name: str
    webhook_url: str
    event_type: str
    secret_key: Optional[str] = None
    enabled: bool = True
    created_by: Optional[str] = None
    headers: dict = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        """Public view; the secret is never included."""
        data = asdict(self)
        data.pop("secret_key")
        data["has_secret"] = bool(self.secret_key)
        return data


@dataclass
class DeliveryLogRecord:
    webhook_id: str
    event_type: str
    payload: dict
    delivery_id: str
    attempts: int
    response_status: Optional[int] = None
    response_body: object = None
    response_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class DeliveryJobRecord:
    webhook_id: str
    event_type: str
    data: dict
    idempotency_key: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.WAITING
    attempts: int = 0
    last_error: Optional[str] = None
    delivery_id: Optional[str] = None
    locked_at: Optional[float] = None
    job_id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.name
        return data


@dataclass
class IncomingWebhookRecord:
    name: str
    endpoint_key: str
    secret_key: str
    enabled: bool = True
    allowed_ips: list = field(default_factory=list)
    description: Optional[str] = None
    created_by: Optional[str] = None
    trigger_count: int = 0
    last_triggered_at: Optional[float] = None
    id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        data = asdict(self)
        data.pop("secret_key")
        return data


@dataclass
class AutomationRuleRecord:
    incoming_webhook_id: str
    name: str
    action_type: AutomationActionType
    field_mappings: dict = field(default_factory=dict)
    enabled: bool = True
    sort_order: int = 0
    id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["action_type"] = self.action_type.value
        return data


@dataclass
class IncomingLogRecord:
    incoming_webhook_id: str
    response_status: int
    request_body: object = None
    request_headers: dict = field(default_factory=dict)
    response_body: object = None
    error_message: Optional[str] = None
    response_time_ms: Optional[int] = None
    id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=_now)

    def as_dict(self) -> dict:
        return asdict(self)


class DbClient(Protocol):
    """Interface for database access."""

    # Work orders and items
    def create_work_order(
        self, order: WorkOrderRecord, items: list[WorkOrderItemRecord]
    ) -> WorkOrderRecord:
        ...

    def get_work_order(self, work_order_id: str) -> Optional[WorkOrderRecord]:
        ...

    def get_work_order_by_number(self, wo_number: str) -> Optional[WorkOrderRecord]:
        ...

    def list_work_orders(
        self, limit: int = 100, status: Optional[WorkOrderStatus] = None
    ) -> list[WorkOrderRecord]:
        ...

    def update_work_order_status(
        self, work_order_id: str, status: WorkOrderStatus
    ) -> Optional[WorkOrderRecord]:
        ...

    def list_items(self, work_order_id: str) -> list[WorkOrderItemRecord]:
        ...

    def get_item(self, serial_number: str) -> Optional[WorkOrderItemRecord]:
        ...

    def update_item(
        self,
        serial_number: str,
        *,
        status: Optional[WorkOrderStatus] = None,
        current_step: Optional[int] = None,
    ) -> Optional[WorkOrderItemRecord]:
        ...

    def allocate_serial_sequence(self, product_type: ProductType, count: int) -> int:
        ...

    def peek_serial_sequence(self, product_type: ProductType) -> int:
        ...

    def add_activity(self, record: ActivityRecord) -> None:
        ...

    def list_activity(self, limit: int = 100) -> list[ActivityRecord]:
        ...

    # Outgoing webhooks
    def create_outgoing_webhook(
        self, record: OutgoingWebhookRecord
    ) -> OutgoingWebhookRecord:
        ...

    def get_outgoing_webhook(self, webhook_id: str) -> Optional[OutgoingWebhookRecord]:
        ...

    def list_outgoing_webhooks(
        self, event_type: Optional[str] = None, enabled_only: bool = False
    ) -> list[OutgoingWebhookRecord]:
        ...

    def update_outgoing_webhook(
        self, webhook_id: str, **changes
    ) -> Optional[OutgoingWebhookRecord]:
        ...

    def delete_outgoing_webhook(self, webhook_id: str) -> bool:
        ...

    def log_delivery(self, record: DeliveryLogRecord) -> None:
        ...

    def list_delivery_logs(
        self, webhook_id: str, limit: int = 50
    ) -> list[DeliveryLogRecord]:
        ...

    # Delivery jobs
    def create_delivery_job(
        self,
        webhook_id: str,
        event_type: str,
        data: dict,
        idempotency_key: Optional[str] = None,
    ) -> DeliveryJobRecord:
        ...

    def get_delivery_job(self, job_id: str) -> Optional[DeliveryJobRecord]:
        ...

    def claim_delivery_job(self, job_id: str) -> Optional[DeliveryJobRecord]:
        ...

    def claim_next_waiting_job(self) -> Optional[DeliveryJobRecord]:
        ...

    def update_delivery_job(
        self,
        job_id: str,
        *,
        status: DeliveryStatus,
        attempts: Optional[int] = None,
        last_error: Optional[str] = None,
        delivery_id: Optional[str] = None,
    ) -> None:
        ...

    def requeue_stale_locks(self, lock_timeout_seconds: float = 900) -> int:
        ...

    # Incoming webhooks
    def create_incoming_webhook(
        self, record: IncomingWebhookRecord
    ) -> IncomingWebhookRecord:
        ...

    def get_incoming_webhook(self, webhook_id: str) -> Optional[IncomingWebhookRecord]:
        ...

    def get_incoming_webhook_by_key(
        self, endpoint_key: str
    ) -> Optional[IncomingWebhookRecord]:
        ...

    def update_incoming_webhook(
        self, webhook_id: str, **changes
    ) -> Optional[IncomingWebhookRecord]:
        ...

    def record_incoming_trigger(self, webhook_id: str) -> None:
        ...

    def create_automation_rule(self, record: AutomationRuleRecord) -> AutomationRuleRecord:
        ...

    def list_automation_rules(
        self, incoming_webhook_id: str, enabled_only: bool = True
    ) -> list[AutomationRuleRecord]:
        ...

    def log_incoming_request(self, record: IncomingLogRecord) -> None:
        ...

    def list_incoming_logs(
        self, incoming_webhook_id: str, limit: int = 50
    ) -> list[IncomingLogRecord]:
        ...


OUTGOING_WEBHOOK_FIELDS = {"name", "webhook_url", "event_type", "enabled", "secret_key", "headers"}
INCOMING_WEBHOOK_FIELDS = {"name", "description", "enabled", "secret_key", "allowed_ips"}


def _check_changes(changes: dict, allowed: set[str]) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self._lock = threading.RLock()
        self.work_orders: Dict[str, WorkOrderRecord] = {}
        self.items: Dict[str, WorkOrderItemRecord] = {}
        self.serial_sequences: Dict[ProductType, int] = {}
        self.activity: list[ActivityRecord] = []
        self.outgoing_webhooks: Dict[str, OutgoingWebhookRecord] = {}
        self.delivery_logs: list[DeliveryLogRecord] = []
        self.delivery_jobs: Dict[str, DeliveryJobRecord] = {}
        self.incoming_webhooks: Dict[str, IncomingWebhookRecord] = {}
        self.automation_rules: Dict[str, AutomationRuleRecord] = {}
        self.incoming_logs: list[IncomingLogRecord] = []

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.work_orders.clear()
            self.items.clear()
            self.serial_sequences.clear()
            self.activity.clear()
            self.outgoing_webhooks.clear()
            self.delivery_logs.clear()
            self.delivery_jobs.clear()
            self.incoming_webhooks.clear()
            self.automation_rules.clear()
            self.incoming_logs.clear()

    # Work orders -------------------------------------------------------

    def create_work_order(
        self, order: WorkOrderRecord, items: list[WorkOrderItemRecord]
    ) -> WorkOrderRecord:
        with self._lock:
            if self.get_work_order_by_number(order.wo_number):
                raise WorkOrderExistsError(order.wo_number)
            serials = [item.serial_number for item in items]
            if len(set(serials)) != len(serials):
                raise DuplicateSerialError("Duplicate serial numbers in request")
            for serial in serials:
                if serial in self.items:
                    raise DuplicateSerialError(serial)
            self.work_orders[order.id] = copy.deepcopy(order)
            for item in items:
                self.items[item.serial_number] = copy.deepcopy(item)
            return copy.deepcopy(order)

    def get_work_order(self, work_order_id: str) -> Optional[WorkOrderRecord]:
        order = self.work_orders.get(work_order_id)
        return copy.deepcopy(order) if order else None

    def get_work_order_by_number(self, wo_number: str) -> Optional[WorkOrderRecord]:
        for order in self.work_orders.values():
            if order.wo_number == wo_number:
                return copy.deepcopy(order)
        return None

    def list_work_orders(
        self, limit: int = 100, status: Optional[WorkOrderStatus] = None
    ) -> list[WorkOrderRecord]:
        orders = sorted(self.work_orders.values(), key=lambda o: o.created_at, reverse=True)
        if status is not None:
            orders = [o for o in orders if o.status == status]
        return [copy.deepcopy(o) for o in orders[:limit]]

    def update_work_order_status(
        self, work_order_id: str, status: WorkOrderStatus
    ) -> Optional[WorkOrderRecord]:
        with self._lock:
            order = self.work_orders.get(work_order_id)
            if not order:
                return None
            order.status = status
            order.updated_at = time.time()
            return copy.deepcopy(order)

    def list_items(self, work_order_id: str) -> list[WorkOrderItemRecord]:
        items = [i for i in self.items.values() if i.work_order_id == work_order_id]
        items.sort(key=lambda i: i.position_in_batch)
        return [copy.deepcopy(i) for i in items]

    def get_item(self, serial_number: str) -> Optional[WorkOrderItemRecord]:
        item = self.items.get(serial_number)
        return copy.deepcopy(item) if item else None

    def update_item(
        self,
        serial_number: str,
        *,
        status: Optional[WorkOrderStatus] = None,
        current_step: Optional[int] = None,
    ) -> Optional[WorkOrderItemRecord]:
        with self._lock:
            item = self.items.get(serial_number)
            if not item:
                return None
            now = time.time()
            if status is not None:
                item.status = status
                if status == WorkOrderStatus.COMPLETED and item.completed_at is None:
                    item.completed_at = now
            if current_step is not None:
                item.current_step = current_step
            item.updated_at = now
            return copy.deepcopy(item)

    def peek_serial_sequence(self, product_type: ProductType) -> int:
        product_type = ProductType(product_type)
        with self._lock:
            last_value = self.serial_sequences.get(product_type)
            if last_value is not None:
                return last_value + 1
            prefix = get_prefix(product_type)
            existing = [s for s in self.items if s.startswith(f"{prefix}-")]
            return next_sequence(existing, product_type)

    def allocate_serial_sequence(self, product_type: ProductType, count: int) -> int:
        product_type = ProductType(product_type)
        with self._lock:
            start = self.peek_serial_sequence(product_type)
            self.serial_sequences[product_type] = start + count - 1
            return start

    def add_activity(self, record: ActivityRecord) -> None:
        with self._lock:
            self.activity.append(copy.deepcopy(record))

    def list_activity(self, limit: int = 100) -> list[ActivityRecord]:
        return [copy.deepcopy(a) for a in reversed(self.activity)][:limit]

    # Outgoing webhooks -------------------------------------------------

    def create_outgoing_webhook(
        self, record: OutgoingWebhookRecord
    ) -> OutgoingWebhookRecord:
        with self._lock:
            self.outgoing_webhooks[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def get_outgoing_webhook(self, webhook_id: str) -> Optional[OutgoingWebhookRecord]:
        record = self.outgoing_webhooks.get(webhook_id)
        return copy.deepcopy(record) if record else None

    def list_outgoing_webhooks(
        self, event_type: Optional[str] = None, enabled_only: bool = False
    ) -> list[OutgoingWebhookRecord]:
        records = sorted(self.outgoing_webhooks.values(), key=lambda w: w.created_at)
        return [
            copy.deepcopy(w)
            for w in records
            if (event_type is None or w.event_type == event_type)
            and (not enabled_only or w.enabled)
        ]

    def update_outgoing_webhook(
        self, webhook_id: str, **changes
    ) -> Optional[OutgoingWebhookRecord]:
        _check_changes(changes, OUTGOING_WEBHOOK_FIELDS)
        with self._lock:
            record = self.outgoing_webhooks.get(webhook_id)
            if not record:
                return None
            for name, value in changes.items():
                if value is not None:
                    setattr(record, name, value)
            record.updated_at = time.time()
            return copy.deepcopy(record)

    def delete_outgoing_webhook(self, webhook_id: str) -> bool:
        with self._lock:
            if self.outgoing_webhooks.pop(webhook_id, None) is None:
                return False
            self.delivery_logs = [l for l in self.delivery_logs if l.webhook_id != webhook_id]
            return True

    def log_delivery(self, record: DeliveryLogRecord) -> None:
        with self._lock:
            self.delivery_logs.append(copy.deepcopy(record))

    def list_delivery_logs(
        self, webhook_id: str, limit: int = 50
    ) -> list[DeliveryLogRecord]:
        logs = [l for l in reversed(self.delivery_logs) if l.webhook_id == webhook_id]
        return [copy.deepcopy(l) for l in logs[:limit]]

    # Delivery jobs -----------------------------------------------------

    def create_delivery_job(
        self,
        webhook_id: str,
        event_type: str,
        data: dict,
        idempotency_key: Optional[str] = None,
    ) -> DeliveryJobRecord:
        record = DeliveryJobRecord(
            webhook_id=webhook_id,
            event_type=event_type,
            data=copy.deepcopy(data),
            idempotency_key=idempotency_key,
        )
        with self._lock:
            self.delivery_jobs[record.job_id] = record
        return copy.deepcopy(record)

    def get_delivery_job(self, job_id: str) -> Optional[DeliveryJobRecord]:
        job = self.delivery_jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    def _claim(self, job: DeliveryJobRecord) -> DeliveryJobRecord:
        job.status = DeliveryStatus.DELIVERING
        job.locked_at = time.time()
        job.updated_at = job.locked_at
        return copy.deepcopy(job)

    def claim_delivery_job(self, job_id: str) -> Optional[DeliveryJobRecord]:
        with self._lock:
            job = self.delivery_jobs.get(job_id)
            if not job or job.status != DeliveryStatus.WAITING:
                return None
            return self._claim(job)

    def claim_next_waiting_job(self) -> Optional[DeliveryJobRecord]:
        with self._lock:
            waiting = [
                j for j in self.delivery_jobs.values() if j.status == DeliveryStatus.WAITING
            ]
            if not waiting:
                return None
            return self._claim(min(waiting, key=lambda j: j.created_at))

    def update_delivery_job(
        self,
        job_id: str,
        *,
        status: DeliveryStatus,
        attempts: Optional[int] = None,
        last_error: Optional[str] = None,
        delivery_id: Optional[str] = None,
    ) -> None:
        with self._lock:
            job = self.delivery_jobs.get(job_id)
            if not job:
                return
            job.status = status
            if attempts is not None:
                job.attempts = attempts
            if last_error is not None:
                job.last_error = last_error
            if delivery_id is not None:
                job.delivery_id = delivery_id
            if status != DeliveryStatus.DELIVERING:
                job.locked_at = None
            job.updated_at = time.time()

    def requeue_stale_locks(self, lock_timeout_seconds: float = 900) -> int:
        now = time.time()
        requeued = 0
        with self._lock:
            for job in self.delivery_jobs.values():
                if (
                    job.status == DeliveryStatus.DELIVERING
                    and job.locked_at
                    and now - job.locked_at > lock_timeout_seconds
                ):
                    job.status = DeliveryStatus.WAITING
                    job.locked_at = None
                    job.updated_at = now
                    requeued += 1
        return requeued

    # Incoming webhooks -------------------------------------------------

    def create_incoming_webhook(
        self, record: IncomingWebhookRecord
    ) -> IncomingWebhookRecord:
        with self._lock:
            if self.get_incoming_webhook_by_key(record.endpoint_key):
                raise ValueError("Endpoint key already in use")
            self.incoming_webhooks[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def get_incoming_webhook(self, webhook_id: str) -> Optional[IncomingWebhookRecord]:
        record = self.incoming_webhooks.get(webhook_id)
        return copy.deepcopy(record) if record else None

    def get_incoming_webhook_by_key(
        self, endpoint_key: str
    ) -> Optional[IncomingWebhookRecord]:
        for record in self.incoming_webhooks.values():
            if record.endpoint_key == endpoint_key:
                return copy.deepcopy(record)
        return None

    def update_incoming_webhook(
        self, webhook_id: str, **changes
    ) -> Optional[IncomingWebhookRecord]:
        _check_changes(changes, INCOMING_WEBHOOK_FIELDS)
        with self._lock:
            record = self.incoming_webhooks.get(webhook_id)
            if not record:
                return None
            for name, value in changes.items():
                if value is not None:
                    setattr(record, name, value)
            record.updated_at = time.time()
            return copy.deepcopy(record)

    def record_incoming_trigger(self, webhook_id: str) -> None:
        with self._lock:
            record = self.incoming_webhooks.get(webhook_id)
            if record:
                record.trigger_count += 1
                record.last_triggered_at = time.time()

    def create_automation_rule(self, record: AutomationRuleRecord) -> AutomationRuleRecord:
        with self._lock:
            self.automation_rules[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def list_automation_rules(
        self, incoming_webhook_id: str, enabled_only: bool = True
    ) -> list[AutomationRuleRecord]:
        rules = [
            r
            for r in self.automation_rules.values()
            if r.incoming_webhook_id == incoming_webhook_id
            and (not enabled_only or r.enabled)
        ]
        rules.sort(key=lambda r: (r.sort_order, r.created_at))
        return [copy.deepcopy(r) for r in rules]

    def log_incoming_request(self, record: IncomingLogRecord) -> None:
        with self._lock:
            self.incoming_logs.append(copy.deepcopy(record))

    def list_incoming_logs(
        self, incoming_webhook_id: str, limit: int = 50
    ) -> list[IncomingLogRecord]:
        logs = [
            l
            for l in reversed(self.incoming_logs)
            if l.incoming_webhook_id == incoming_webhook_id
        ]
        return [copy.deepcopy(l) for l in logs[:limit]]


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        engine_kwargs = {"future": True, "pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            # A single shared connection keeps ":memory:" databases alive.
            from sqlalchemy.pool import StaticPool

            engine_kwargs.update(
                poolclass=StaticPool, connect_args={"check_same_thread": False}
            )
        else:
            engine_kwargs["pool_recycle"] = 1800
        self.engine = create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    # Row conversion ----------------------------------------------------

    @staticmethod
    def _to_work_order(row: "WorkOrderRow") -> WorkOrderRecord:
        return WorkOrderRecord(
            id=row.id,
            wo_number=row.wo_number,
            product_type=ProductType(row.product_type),
            batch_size=row.batch_size,
            created_by=row.created_by,
            status=WorkOrderStatus(row.status),
            notes=row.notes or "",
            scheduled_date=row.scheduled_date,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_item(row: "WorkOrderItemRow") -> WorkOrderItemRecord:
        return WorkOrderItemRecord(
            id=row.id,
            work_order_id=row.work_order_id,
            serial_number=row.serial_number,
            position_in_batch=row.position_in_batch,
            product_type=ProductType(row.product_type),
            status=WorkOrderStatus(row.status),
            current_step=row.current_step,
            assigned_to=row.assigned_to,
            completed_at=row.completed_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_outgoing(row: "OutgoingWebhookRow") -> OutgoingWebhookRecord:
        return OutgoingWebhookRecord(
            id=row.id,
            name=row.name,
            webhook_url=row.webhook_url,
            event_type=row.event_type,
            secret_key=row.secret_key,
            enabled=row.enabled,
            created_by=row.created_by,
            headers=row.headers or {},
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_delivery_job(row: "DeliveryJobRow") -> DeliveryJobRecord:
        return DeliveryJobRecord(
            job_id=row.job_id,
            webhook_id=row.webhook_id,
            event_type=row.event_type,
            data=row.data or {},
            idempotency_key=row.idempotency_key,
            status=DeliveryStatus(row.status),
            attempts=row.attempts,
            last_error=row.last_error,
            delivery_id=row.delivery_id,
            locked_at=row.locked_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_incoming(row: "IncomingWebhookRow") -> IncomingWebhookRecord:
        return IncomingWebhookRecord(
            id=row.id,
            name=row.name,
            endpoint_key=row.endpoint_key,
            secret_key=row.secret_key,
            enabled=row.enabled,
            allowed_ips=row.allowed_ips or [],
            description=row.description,
            created_by=row.created_by,
            trigger_count=row.trigger_count,
            last_triggered_at=row.last_triggered_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_rule(row: "AutomationRuleRow") -> AutomationRuleRecord:
        return AutomationRuleRecord(
            id=row.id,
            incoming_webhook_id=row.incoming_webhook_id,
            name=row.name,
            action_type=AutomationActionType(row.action_type),
            field_mappings=row.field_mappings or {},
            enabled=row.enabled,
            sort_order=row.sort_order,
            created_at=row.created_at,
        )

    # Work orders -------------------------------------------------------

    def create_work_order(
        self, order: WorkOrderRecord, items: list[WorkOrderItemRecord]
    ) -> WorkOrderRecord:
        with self.Session() as session:
            existing = session.execute(
                select(WorkOrderRow.id).where(WorkOrderRow.wo_number == order.wo_number)
            ).first()
            if existing:
                raise WorkOrderExistsError(order.wo_number)
            session.add(
                WorkOrderRow(
                    id=order.id,
                    wo_number=order.wo_number,
                    product_type=order.product_type.value,
                    batch_size=order.batch_size,
                    created_by=order.created_by,
                    status=order.status.value,
                    notes=order.notes,
                    scheduled_date=order.scheduled_date,
                    created_at=order.created_at,
                    updated_at=order.updated_at,
                )
            )
            for item in items:
                session.add(
                    WorkOrderItemRow(
                        id=item.id,
                        work_order_id=order.id,
                        serial_number=item.serial_number,
                        position_in_batch=item.position_in_batch,
                        product_type=item.product_type.value,
                        status=item.status.value,
                        current_step=item.current_step,
                        assigned_to=item.assigned_to,
                        completed_at=item.completed_at,
                        created_at=item.created_at,
                        updated_at=item.updated_at,
                    )
                )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                if self.get_work_order_by_number(order.wo_number):
                    raise WorkOrderExistsError(order.wo_number) from exc
                raise DuplicateSerialError(str(exc.orig)) from exc
        return order

    def get_work_order(self, work_order_id: str) -> Optional[WorkOrderRecord]:
        with self.Session() as session:
            row = session.get(WorkOrderRow, work_order_id)
            return self._to_work_order(row) if row else None

    def get_work_order_by_number(self, wo_number: str) -> Optional[WorkOrderRecord]:
        with self.Session() as session:
            row = session.execute(
                select(WorkOrderRow).where(WorkOrderRow.wo_number == wo_number)
            ).scalar_one_or_none()
            return self._to_work_order(row) if row else None

    def list_work_orders(
        self, limit: int = 100, status: Optional[WorkOrderStatus] = None
    ) -> list[WorkOrderRecord]:
        with self.Session() as session:
            stmt = select(WorkOrderRow).order_by(WorkOrderRow.created_at.desc())
            if status is not None:
                stmt = stmt.where(WorkOrderRow.status == status.value)
            rows = session.execute(stmt.limit(limit)).scalars().all()
            return [self._to_work_order(row) for row in rows]

    def update_work_order_status(
        self, work_order_id: str, status: WorkOrderStatus
    ) -> Optional[WorkOrderRecord]:
        with self.Session() as session:
            row = session.get(WorkOrderRow, work_order_id)
            if not row:
                return None
            row.status = status.value
            row.updated_at = time.time()
            session.commit()
            return self._to_work_order(row)

    def list_items(self, work_order_id: str) -> list[WorkOrderItemRecord]:
        with self.Session() as session:
            rows = (
                session.execute(
                    select(WorkOrderItemRow)
                    .where(WorkOrderItemRow.work_order_id == work_order_id)
                    .order_by(WorkOrderItemRow.position_in_batch.asc())
                )
                .scalars()
                .all()
            )
            return [self._to_item(row) for row in rows]

    def _get_item_row(self, session: Session, serial_number: str):
        return session.execute(
            select(WorkOrderItemRow).where(
                WorkOrderItemRow.serial_number == serial_number
            )
        ).scalar_one_or_none()

    def get_item(self, serial_number: str) -> Optional[WorkOrderItemRecord]:
        with self.Session() as session:
            row = self._get_item_row(session, serial_number)
            return self._to_item(row) if row else None

    def update_item(
        self,
        serial_number: str,
        *,
        status: Optional[WorkOrderStatus] = None,
        current_step: Optional[int] = None,
    ) -> Optional[WorkOrderItemRecord]:
        with self.Session() as session:
            row = self._get_item_row(session, serial_number)
            if not row:
                return None
            now = time.time()
            if status is not None:
                row.status = status.value
                if status == WorkOrderStatus.COMPLETED and row.completed_at is None:
                    row.completed_at = now
            if current_step is not None:
                row.current_step = current_step
            row.updated_at = now
            session.commit()
            return self._to_item(row)

    def _first_sequence(self, session: Session, product_type: ProductType) -> int:
        prefix = get_prefix(product_type)
        existing = (
            session.execute(
                select(WorkOrderItemRow.serial_number).where(
                    WorkOrderItemRow.serial_number.like(f"{prefix}-%")
                )
            )
            .scalars()
            .all()
        )
        return next_sequence(existing, product_type)

    def peek_serial_sequence(self, product_type: ProductType) -> int:
        product_type = ProductType(product_type)
        with self.Session() as session:
            row = session.get(SerialSequenceRow, product_type.value)
            if row is not None:
                return row.last_value + 1
            return self._first_sequence(session, product_type)

    def allocate_serial_sequence(self, product_type: ProductType, count: int) -> int:
        product_type = ProductType(product_type)
        try:
            return self._allocate_serial_sequence(product_type, count)
        except IntegrityError:
            # Another transaction created the sequence row first; it exists now.
            return self._allocate_serial_sequence(product_type, count)

    def _allocate_serial_sequence(self, product_type: ProductType, count: int) -> int:
        with self.Session() as session:
            row = session.execute(
                select(SerialSequenceRow)
                .where(SerialSequenceRow.product_type == product_type.value)
                .with_for_update()
            ).scalar_one_or_none()
            if row is None:
                row = SerialSequenceRow(
                    product_type=product_type.value,
                    last_value=self._first_sequence(session, product_type) - 1,
                )
                session.add(row)
            start = row.last_value + 1
            row.last_value = row.last_value + count
            session.commit()
            return start

    def add_activity(self, record: ActivityRecord) -> None:
        with self.Session() as session:
            session.add(
                ActivityLogRow(
                    id=record.id,
                    action=record.action,
                    entity_type=record.entity_type,
                    entity_id=record.entity_id,
                    details=record.details,
                    user_id=record.user_id,
                    created_at=record.created_at,
                )
            )
            session.commit()

    def list_activity(self, limit: int = 100) -> list[ActivityRecord]:
        with self.Session() as session:
            rows = (
                session.execute(
                    select(ActivityLogRow)
                    .order_by(ActivityLogRow.created_at.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [
                ActivityRecord(
                    id=row.id,
                    action=row.action,
                    entity_type=row.entity_type,
                    entity_id=row.entity_id,
                    details=row.details or {},
                    user_id=row.user_id,
                    created_at=row.created_at,
                )
                for row in rows
            ]

    # Outgoing webhooks -------------------------------------------------

    def create_outgoing_webhook(
        self, record: OutgoingWebhookRecord
    ) -> OutgoingWebhookRecord:
        with self.Session() as session:
            session.add(
                OutgoingWebhookRow(
                    id=record.id,
                    name=record.name,
                    webhook_url=record.webhook_url,
                    event_type=record.event_type,
                    secret_key=record.secret_key,
                    enabled=record.enabled,
                    created_by=record.created_by,
                    headers=record.headers,
                    created_at=record.created_at,
                    updated_at=record.updated_at,
                )
            )
            session.commit()
        return record

    def get_outgoing_webhook(self, webhook_id: str) -> Optional[OutgoingWebhookRecord]:
        with self.Session() as session:
            row = session.get(OutgoingWebhookRow, webhook_id)
            return self._to_outgoing(row) if row else None

    def list_outgoing_webhooks(
        self, event_type: Optional[str] = None, enabled_only: bool = False
    ) -> list[OutgoingWebhookRecord]:
        with self.Session() as session:
            stmt = select(OutgoingWebhookRow).order_by(OutgoingWebhookRow.created_at.asc())
            if event_type is not None:
                stmt = stmt.where(OutgoingWebhookRow.event_type == event_type)
            if enabled_only:
                stmt = stmt.where(OutgoingWebhookRow.enabled.is_(True))
            return [self._to_outgoing(row) for row in session.execute(stmt).scalars()]

    def update_outgoing_webhook(
        self, webhook_id: str, **changes
    ) -> Optional[OutgoingWebhookRecord]:
        _check_changes(changes, OUTGOING_WEBHOOK_FIELDS)
        with self.Session() as session:
            row = session.get(OutgoingWebhookRow, webhook_id)
            if not row:
                return None
            for name, value in changes.items():
                if value is not None:
                    setattr(row, name, value)
            row.updated_at = time.time()
            session.commit()
            return self._to_outgoing(row)

    def delete_outgoing_webhook(self, webhook_id: str) -> bool:
        with self.Session() as session:
            row = session.get(OutgoingWebhookRow, webhook_id)
            if not row:
                return False
            session.query(DeliveryLogRow).filter(
                DeliveryLogRow.webhook_id == webhook_id
            ).delete(synchronize_session=False)
            session.delete(row)
            session.commit()
            return True

    def log_delivery(self, record: DeliveryLogRecord) -> None:
        with self.Session() as session:
            session.add(
                DeliveryLogRow(
                    id=record.id,
                    webhook_id=record.webhook_id,
                    event_type=record.event_type,
                    payload=record.payload,
                    response_status=record.response_status,
                    response_body=record.response_body,
                    response_time_ms=record.response_time_ms,
                    error_message=record.error_message,
                    delivery_id=record.delivery_id,
                    attempts=record.attempts,
                    created_at=record.created_at,
                )
            )
            session.commit()

    def list_delivery_logs(
        self, webhook_id: str, limit: int = 50
    ) -> list[DeliveryLogRecord]:
        with self.Session() as session:
            rows = (
                session.execute(
                    select(DeliveryLogRow)
                    .where(DeliveryLogRow.webhook_id == webhook_id)
                    .order_by(DeliveryLogRow.created_at.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [
                DeliveryLogRecord(
                    id=row.id,
                    webhook_id=row.webhook_id,
                    event_type=row.event_type,
                    payload=row.payload,
                    response_status=row.response_status,
                    response_body=row.response_body,
                    response_time_ms=row.response_time_ms,
                    error_message=row.error_message,
                    delivery_id=row.delivery_id,
                    attempts=row.attempts,
                    created_at=row.created_at,
                )
                for row in rows
            ]

    # Delivery jobs -----------------------------------------------------

    def create_delivery_job(
        self,
        webhook_id: str,
        event_type: str,
        data: dict,
        idempotency_key: Optional[str] = None,
    ) -> DeliveryJobRecord:
        now = time.time()
        with self.Session() as session:
            row = DeliveryJobRow(
                job_id=uuid.uuid4().hex,
                webhook_id=webhook_id,
                event_type=event_type,
                data=data,
                idempotency_key=idempotency_key,
                status=DeliveryStatus.WAITING.value,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_delivery_job(row)

    def get_delivery_job(self, job_id: str) -> Optional[DeliveryJobRecord]:
        with self.Session() as session:
            row = session.get(DeliveryJobRow, job_id)
            return self._to_delivery_job(row) if row else None

    def claim_delivery_job(self, job_id: str) -> Optional[DeliveryJobRecord]:
        now = time.time()
        with self.Session() as session:
            updated = (
                session.query(DeliveryJobRow)
                .filter(
                    DeliveryJobRow.job_id == job_id,
                    DeliveryJobRow.status == DeliveryStatus.WAITING.value,
                )
                .update(
                    {
                        DeliveryJobRow.status: DeliveryStatus.DELIVERING.value,
                        DeliveryJobRow.locked_at: now,
                        DeliveryJobRow.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            session.commit()
            if not updated:
                return None
            return self._to_delivery_job(session.get(DeliveryJobRow, job_id))

    def claim_next_waiting_job(self) -> Optional[DeliveryJobRecord]:
        now = time.time()
        with self.Session() as session:
            stmt = (
                select(DeliveryJobRow)
                .where(DeliveryJobRow.status == DeliveryStatus.WAITING.value)
                .order_by(DeliveryJobRow.created_at.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            row = session.execute(stmt).scalar_one_or_none()
            if not row:
                return None
            row.status = DeliveryStatus.DELIVERING.value
            row.locked_at = now
            row.updated_at = now
            session.commit()
            session.refresh(row)
            return self._to_delivery_job(row)

    def update_delivery_job(
        self,
        job_id: str,
        *,
        status: DeliveryStatus,
        attempts: Optional[int] = None,
        last_error: Optional[str] = None,
        delivery_id: Optional[str] = None,
    ) -> None:
        with self.Session() as session:
            row = session.get(DeliveryJobRow, job_id)
            if not row:
                return
            row.status = status.value
            if attempts is not None:
                row.attempts = attempts
            if last_error is not None:
                row.last_error = last_error
            if delivery_id is not None:
                row.delivery_id = delivery_id
            if status != DeliveryStatus.DELIVERING:
                row.locked_at = None
            row.updated_at = time.time()
            session.commit()

    def requeue_stale_locks(self, lock_timeout_seconds: float = 900) -> int:
        cutoff = time.time() - lock_timeout_seconds
        with self.Session() as session:
            updated = (
                session.query(DeliveryJobRow)
                .filter(
                    DeliveryJobRow.status == DeliveryStatus.DELIVERING.value,
                    DeliveryJobRow.locked_at != None,
                    DeliveryJobRow.locked_at < cutoff,
                )
                .update(
                    {
                        DeliveryJobRow.status: DeliveryStatus.WAITING.value,
                        DeliveryJobRow.locked_at: None,
                        DeliveryJobRow.updated_at: time.time(),
                    },
                    synchronize_session=False,
                )
            )
            session.commit()
            return updated or 0

    # Incoming webhooks -------------------------------------------------

    def create_incoming_webhook(
        self, record: IncomingWebhookRecord
    ) -> IncomingWebhookRecord:
        with self.Session() as session:
            session.add(
                IncomingWebhookRow(
                    id=record.id,
                    name=record.name,
                    endpoint_key=record.endpoint_key,
                    secret_key=record.secret_key,
                    enabled=record.enabled,
                    allowed_ips=record.allowed_ips,
                    description=record.description,
                    created_by=record.created_by,
                    trigger_count=record.trigger_count,
                    last_triggered_at=record.last_triggered_at,
                    created_at=record.created_at,
                    updated_at=record.updated_at,
                )
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ValueError("Endpoint key already in use") from exc
        return record

    def get_incoming_webhook(self, webhook_id: str) -> Optional[IncomingWebhookRecord]:
        with self.Session() as session:
            row = session.get(IncomingWebhookRow, webhook_id)
            return self._to_incoming(row) if row else None

    def get_incoming_webhook_by_key(
        self, endpoint_key: str
    ) -> Optional[IncomingWebhookRecord]:
        with self.Session() as session:
            row = session.execute(
                select(IncomingWebhookRow).where(
                    IncomingWebhookRow.endpoint_key == endpoint_key
                )
            ).scalar_one_or_none()
            return self._to_incoming(row) if row else None

    def update_incoming_webhook(
        self, webhook_id: str, **changes
    ) -> Optional[IncomingWebhookRecord]:
        _check_changes(changes, INCOMING_WEBHOOK_FIELDS)
        with self.Session() as session:
            row = session.get(IncomingWebhookRow, webhook_id)
            if not row:
                return None
            for name, value in changes.items():
                if value is not None:
                    setattr(row, name, value)
            row.updated_at = time.time()
            session.commit()
            return self._to_incoming(row)

    def record_incoming_trigger(self, webhook_id: str) -> None:
        with self.Session() as session:
            session.query(IncomingWebhookRow).filter(
                IncomingWebhookRow.id == webhook_id
            ).update(
                {
                    IncomingWebhookRow.trigger_count: IncomingWebhookRow.trigger_count + 1,
                    IncomingWebhookRow.last_triggered_at: time.time(),
                },
                synchronize_session=False,
            )
            session.commit()

    def create_automation_rule(self, record: AutomationRuleRecord) -> AutomationRuleRecord:
        with self.Session() as session:
            session.add(
                AutomationRuleRow(
                    id=record.id,
                    incoming_webhook_id=record.incoming_webhook_id,
                    name=record.name,
                    action_type=record.action_type.value,
                    field_mappings=record.field_mappings,
                    enabled=record.enabled,
                    sort_order=record.sort_order,
                    created_at=record.created_at,
                )
            )
            session.commit()
        return record

    def list_automation_rules(
        self, incoming_webhook_id: str, enabled_only: bool = True
    ) -> list[AutomationRuleRecord]:
        with self.Session() as session:
            stmt = (
                select(AutomationRuleRow)
                .where(AutomationRuleRow.incoming_webhook_id == incoming_webhook_id)
                .order_by(
                    AutomationRuleRow.sort_order.asc(),
                    AutomationRuleRow.created_at.asc(),
                )
            )
            if enabled_only:
                stmt = stmt.where(AutomationRuleRow.enabled.is_(True))
            return [self._to_rule(row) for row in session.execute(stmt).scalars()]

    def log_incoming_request(self, record: IncomingLogRecord) -> None:
        with self.Session() as session:
            session.add(
                IncomingLogRow(
                    id=record.id,
                    incoming_webhook_id=record.incoming_webhook_id,
                    request_body=record.request_body,
                    request_headers=record.request_headers,
                    response_status=record.response_status,
                    response_body=record.response_body,
                    error_message=record.error_message,
                    response_time_ms=record.response_time_ms,
                    created_at=record.created_at,
                )
            )
            session.commit()

    def list_incoming_logs(
        self, incoming_webhook_id: str, limit: int = 50
    ) -> list[IncomingLogRecord]:
        with self.Session() as session:
            rows = (
                session.execute(
                    select(IncomingLogRow)
                    .where(IncomingLogRow.incoming_webhook_id == incoming_webhook_id)
                    .order_by(IncomingLogRow.created_at.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [
                IncomingLogRecord(
                    id=row.id,
                    incoming_webhook_id=row.incoming_webhook_id,
                    request_body=row.request_body,
                    request_headers=row.request_headers or {},
                    response_status=row.response_status,
                    response_body=row.response_body,
                    error_message=row.error_message,
                    response_time_ms=row.response_time_ms,
                    created_at=row.created_at,
                )
                for row in rows
            ]


Base = declarative_base()


class WorkOrderRow(Base):
    __tablename__ = "work_orders"

    id = Column(String, primary_key=True)
    wo_number = Column(String, nullable=False, unique=True)
    product_type = Column(String, nullable=False)
    batch_size = Column(Integer, nullable=False)
    created_by = Column(String, nullable=True)
    status = Column(String, nullable=False, index=True)
    notes = Column(String, nullable=True)
    scheduled_date = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class WorkOrderItemRow(Base):
    __tablename__ = "work_order_items"

    id = Column(String, primary_key=True)
    work_order_id = Column(String, nullable=False, index=True)
    serial_number = Column(String, nullable=False, unique=True)
    position_in_batch = Column(Integer, nullable=False)
    product_type = Column(String, nullable=False)
    status = Column(String, nullable=False)
    current_step = Column(Integer, nullable=False, default=1)
    assigned_to = Column(String, nullable=True)
    completed_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class SerialSequenceRow(Base):
    __tablename__ = "serial_sequences"

    product_type = Column(String, primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class ActivityLogRow(Base):
    __tablename__ = "activity_logs"

    id = Column(String, primary_key=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True, index=True)
    details = Column(JSON, nullable=True)
    user_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False, index=True)


class OutgoingWebhookRow(Base):
    __tablename__ = "outgoing_webhooks"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    webhook_url = Column(String, nullable=False)
    event_type = Column(String, nullable=False, index=True)
    secret_key = Column(String, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    created_by = Column(String, nullable=True)
    headers = Column(JSON, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class DeliveryLogRow(Base):
    __tablename__ = "outgoing_webhook_logs"

    id = Column(String, primary_key=True)
    webhook_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    response_status = Column(Integer, nullable=True)
    response_body = Column(JSON, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    error_message = Column(String, nullable=True)
    delivery_id = Column(String, nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    created_at = Column(Float, nullable=False, index=True)


class DeliveryJobRow(Base):
    __tablename__ = "delivery_jobs"

    job_id = Column(String, primary_key=True)
    webhook_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    data = Column(JSON, nullable=False)
    idempotency_key = Column(String, nullable=True)
    status = Column(String, nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String, nullable=True)
    delivery_id = Column(String, nullable=True)
    locked_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class IncomingWebhookRow(Base):
    __tablename__ = "incoming_webhooks"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    endpoint_key = Column(String, nullable=False, unique=True)
    secret_key = Column(String, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    allowed_ips = Column(JSON, nullable=True)
    description = Column(String, nullable=True)
    created_by = Column(String, nullable=True)
    trigger_count = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class AutomationRuleRow(Base):
    __tablename__ = "automation_rules"

    id = Column(String, primary_key=True)
    incoming_webhook_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    action_type = Column(String, nullable=False)
    field_mappings = Column(JSON, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)


class IncomingLogRow(Base):
    __tablename__ = "webhook_logs"

    id = Column(String, primary_key=True)
    incoming_webhook_id = Column(String, nullable=False, index=True)
    request_body = Column(JSON, nullable=True)
    request_headers = Column(JSON, nullable=True)
    response_status = Column(Integer, nullable=False)
    response_body = Column(JSON, nullable=True)
    error_message = Column(String, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    created_at = Column(Float, nullable=False, index=True)
