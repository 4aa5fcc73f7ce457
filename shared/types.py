"""
Shared domain enums for work orders, automation rules and webhook events.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ProductType(str, Enum):
    SDM_ECO = "SDM_ECO"
    SENSOR = "SENSOR"
    MLA = "MLA"
    HMI = "HMI"
    TRANSMITTER = "TRANSMITTER"


class WorkOrderStatus(str, Enum):
    """Lifecycle status shared by work orders and their items."""

    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AutomationActionType(str, Enum):
    CREATE_WORK_ORDER = "create_work_order"
    UPDATE_WORK_ORDER_STATUS = "update_work_order_status"
    UPDATE_ITEM_STATUS = "update_item_status"
    LOG_ACTIVITY = "log_activity"
    TRIGGER_OUTGOING_WEBHOOK = "trigger_outgoing_webhook"


class DeliveryStatus(Enum):
    WAITING = "WAITING"
    DELIVERING = "DELIVERING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    DEAD_LETTERED = "DEAD_LETTERED"


class WebhookEventType(str, Enum):
    # Work orders
    WORK_ORDER_CREATED = "work_order_created"
    WORK_ORDER_STARTED = "work_order_started"
    WORK_ORDER_COMPLETED = "work_order_completed"
    WORK_ORDER_CANCELLED = "work_order_cancelled"
    WORK_ORDER_ON_HOLD = "work_order_on_hold"

    # Production
    PRODUCTION_STEP_STARTED = "production_step_started"
    PRODUCTION_STEP_COMPLETED = "production_step_completed"
    QUALITY_CHECK_PASSED = "quality_check_passed"
    QUALITY_CHECK_FAILED = "quality_check_failed"

    # Materials
    MATERIAL_BATCH_SCANNED = "material_batch_scanned"
    LOW_STOCK_ALERT = "low_stock_alert"
    STOCK_RECEIVED = "stock_received"
    STOCK_CONSUMED = "stock_consumed"

    # Items
    ITEM_COMPLETED = "item_completed"
    ITEM_FAILED = "item_failed"
    SERIAL_NUMBER_ASSIGNED = "serial_number_assigned"

    # Certificates
    CERTIFICATE_GENERATED = "certificate_generated"
    CERTIFICATE_SIGNED = "certificate_signed"

    # System
    OPERATOR_ASSIGNED = "operator_assigned"
    SHIFT_STARTED = "shift_started"
    SHIFT_ENDED = "shift_ended"


@dataclass(frozen=True)
class EventMetadata:
    label: str
    description: str
    category: str


_EVENT_METADATA: dict[WebhookEventType, EventMetadata] = {
    WebhookEventType.WORK_ORDER_CREATED: EventMetadata(
        "Work Order Created", "Fired when a new work order is created", "Work Orders"
    ),
    WebhookEventType.WORK_ORDER_STARTED: EventMetadata(
        "Work Order Started",
        "Fired when production begins on a work order",
        "Work Orders",
    ),
    WebhookEventType.WORK_ORDER_COMPLETED: EventMetadata(
        "Work Order Completed",
        "Fired when all items in a work order are completed",
        "Work Orders",
    ),
    WebhookEventType.WORK_ORDER_CANCELLED: EventMetadata(
        "Work Order Cancelled", "Fired when a work order is cancelled", "Work Orders"
    ),
    WebhookEventType.WORK_ORDER_ON_HOLD: EventMetadata(
        "Work Order On Hold", "Fired when a work order is put on hold", "Work Orders"
    ),
    WebhookEventType.PRODUCTION_STEP_STARTED: EventMetadata(
        "Production Step Started",
        "Fired when an operator starts a production step",
        "Production",
    ),
    WebhookEventType.PRODUCTION_STEP_COMPLETED: EventMetadata(
        "Production Step Completed",
        "Fired when a production step is marked complete",
        "Production",
    ),
    WebhookEventType.QUALITY_CHECK_PASSED: EventMetadata(
        "Quality Check Passed", "Fired when a quality check passes", "Production"
    ),
    WebhookEventType.QUALITY_CHECK_FAILED: EventMetadata(
        "Quality Check Failed", "Fired when a quality check fails", "Production"
    ),
    WebhookEventType.MATERIAL_BATCH_SCANNED: EventMetadata(
        "Material Batch Scanned",
        "Fired when a material batch is scanned during production",
        "Materials",
    ),
    WebhookEventType.LOW_STOCK_ALERT: EventMetadata(
        "Low Stock Alert",
        "Fired when inventory drops below reorder point",
        "Materials",
    ),
    WebhookEventType.STOCK_RECEIVED: EventMetadata(
        "Stock Received", "Fired when inventory is received", "Materials"
    ),
    WebhookEventType.STOCK_CONSUMED: EventMetadata(
        "Stock Consumed", "Fired when inventory is consumed", "Materials"
    ),
    WebhookEventType.ITEM_COMPLETED: EventMetadata(
        "Item Completed", "Fired when a work order item is completed", "Items"
    ),
    WebhookEventType.ITEM_FAILED: EventMetadata(
        "Item Failed", "Fired when an item fails production", "Items"
    ),
    WebhookEventType.SERIAL_NUMBER_ASSIGNED: EventMetadata(
        "Serial Number Assigned",
        "Fired when a serial number is assigned to an item",
        "Items",
    ),
    WebhookEventType.CERTIFICATE_GENERATED: EventMetadata(
        "Certificate Generated",
        "Fired when a quality certificate is generated",
        "Certificates",
    ),
    WebhookEventType.CERTIFICATE_SIGNED: EventMetadata(
        "Certificate Signed",
        "Fired when a certificate is digitally signed",
        "Certificates",
    ),
    WebhookEventType.OPERATOR_ASSIGNED: EventMetadata(
        "Operator Assigned",
        "Fired when an operator is assigned to a work order",
        "System",
    ),
    WebhookEventType.SHIFT_STARTED: EventMetadata(
        "Shift Started", "Fired when an operator starts their shift", "System"
    ),
    WebhookEventType.SHIFT_ENDED: EventMetadata(
        "Shift Ended", "Fired when an operator ends their shift", "System"
    ),
}


def event_metadata(event_type: str) -> EventMetadata:
    """Return label/description/category for an event, falling back to 'Other'."""
    try:
        return _EVENT_METADATA[WebhookEventType(event_type)]
    except ValueError:
        return EventMetadata(label=event_type, description="", category="Other")


def events_by_category() -> dict[str, list[str]]:
    categories: dict[str, list[str]] = {}
    for event_type in WebhookEventType:
        category = _EVENT_METADATA[event_type].category
        categories.setdefault(category, []).append(event_type.value)
    return categories
