"""
Turns realtime row changes into outgoing webhook events.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.db import DbClient, DeliveryJobRecord
from backend.queue import JobQueue
from backend.realtime import Change, ChannelConfig, ChannelRegistry, Subscription
from backend.work_orders import ITEMS_TABLE, WORK_ORDERS_TABLE
from shared.types import WebhookEventType, WorkOrderStatus

logger = logging.getLogger(__name__)

CHANNEL_NAME = "webhook-events"

STATUS_EVENTS = {
    WorkOrderStatus.IN_PROGRESS.value: WebhookEventType.WORK_ORDER_STARTED,
    WorkOrderStatus.COMPLETED.value: WebhookEventType.WORK_ORDER_COMPLETED,
    WorkOrderStatus.CANCELLED.value: WebhookEventType.WORK_ORDER_CANCELLED,
    WorkOrderStatus.ON_HOLD.value: WebhookEventType.WORK_ORDER_ON_HOLD,
}


def dispatch_event(
    db: DbClient,
    queue: JobQueue,
    event_type: str,
    data: dict,
    idempotency_key: Optional[str] = None,
) -> list[DeliveryJobRecord]:
    """
    Create and enqueue one delivery job per enabled webhook subscribed to
    ``event_type``.
    """
    event_type = getattr(event_type, "value", event_type)
    jobs = []
    for webhook in db.list_outgoing_webhooks(event_type=event_type, enabled_only=True):
        job = db.create_delivery_job(
            webhook.id, event_type, data, idempotency_key=idempotency_key
        )
        queue.enqueue(job.job_id)
        jobs.append(job)
    if jobs:
        logger.info("Queued %d deliveries for %s", len(jobs), event_type)
    return jobs


def _work_order_data(row: dict) -> dict:
    return {
        "work_order_id": row.get("id"),
        "wo_number": row.get("wo_number"),
        "product_type": row.get("product_type"),
        "batch_size": row.get("batch_size"),
        "status": row.get("status"),
    }


def _item_data(row: dict) -> dict:
    return {
        "item_id": row.get("id"),
        "work_order_id": row.get("work_order_id"),
        "serial_number": row.get("serial_number"),
        "product_type": row.get("product_type"),
        "position_in_batch": row.get("position_in_batch"),
        "status": row.get("status"),
        "current_step": row.get("current_step"),
    }


class EventBridge:
    def __init__(self, registry: ChannelRegistry, db: DbClient, queue: JobQueue):
        self.registry = registry
        self.db = db
        self.queue = queue
        self._subscriptions: list[Subscription] = []

    @property
    def started(self) -> bool:
        return bool(self._subscriptions)

    def start(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions = [
            self.registry.subscribe(
                CHANNEL_NAME, ChannelConfig(table=WORK_ORDERS_TABLE), self.on_work_order_change
            ),
            self.registry.subscribe(
                CHANNEL_NAME, ChannelConfig(table=ITEMS_TABLE), self.on_item_change
            ),
        ]

    def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    def _emit(self, event_type: WebhookEventType, data: dict, key: str) -> None:
        dispatch_event(self.db, self.queue, event_type.value, data, idempotency_key=key)

    def on_work_order_change(self, change: Change) -> None:
        row = change.new
        if change.event == "INSERT":
            self._emit(
                WebhookEventType.WORK_ORDER_CREATED,
                _work_order_data(row),
                f"{WebhookEventType.WORK_ORDER_CREATED.value}:{row.get('id')}",
            )
            return
        if change.event != "UPDATE" or row.get("status") == change.old.get("status"):
            return
        event_type = STATUS_EVENTS.get(row.get("status"))
        if event_type is None:
            return
        data = _work_order_data(row)
        data["previous_status"] = change.old.get("status")
        self._emit(event_type, data, f"{event_type.value}:{row.get('id')}:{row.get('updated_at')}")

    def on_item_change(self, change: Change) -> None:
        row, old = change.new, change.old
        if change.event == "INSERT":
            self._emit(
                WebhookEventType.SERIAL_NUMBER_ASSIGNED,
                _item_data(row),
                f"{WebhookEventType.SERIAL_NUMBER_ASSIGNED.value}:{row.get('id')}",
            )
            return
        if change.event != "UPDATE":
            return

        if old.get("current_step") != row.get("current_step"):
            data = _item_data(row)
            data["completed_step"] = old.get("current_step")
            self._emit(
                WebhookEventType.PRODUCTION_STEP_COMPLETED,
                data,
                f"{WebhookEventType.PRODUCTION_STEP_COMPLETED.value}:{row.get('id')}:{old.get('current_step')}",
            )
        if (
            row.get("status") == WorkOrderStatus.COMPLETED.value
            and old.get("status") != WorkOrderStatus.COMPLETED.value
        ):
            self._emit(
                WebhookEventType.ITEM_COMPLETED,
                _item_data(row),
                f"{WebhookEventType.ITEM_COMPLETED.value}:{row.get('id')}",
            )
