"""
Work order creation and production tracking.

Every mutation is written through the ``DbClient`` and then published to the
realtime registry, which is how the event bridge learns about it.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from backend.db import (
    ActivityRecord,
    DbClient,
    WorkOrderItemRecord,
    WorkOrderRecord,
)
from backend.realtime import ChannelRegistry
from shared.serials import (
    MAX_SERIALS_PER_REQUEST,
    ProductBatch,
    SerialNumberError,
    build_item_serials,
    generate_serials,
)
from shared.types import ProductType, WorkOrderStatus

logger = logging.getLogger(__name__)

MAX_WO_NUMBER_LENGTH = 100

WORK_ORDERS_TABLE = "work_orders"
ITEMS_TABLE = "work_order_items"


class WorkOrderValidationError(ValueError):
    pass


class NotFoundError(LookupError):
    pass


def _validate_batches(batches: list[ProductBatch]) -> None:
    if not batches:
        raise WorkOrderValidationError("At least one product batch is required")
    for batch in batches:
        if batch.quantity < 1 or batch.quantity > MAX_SERIALS_PER_REQUEST:
            raise WorkOrderValidationError(
                f"Batch quantity must be between 1 and {MAX_SERIALS_PER_REQUEST}"
            )
    total = sum(batch.quantity for batch in batches)
    if total > MAX_SERIALS_PER_REQUEST:
        raise WorkOrderValidationError(
            f"A work order cannot hold more than {MAX_SERIALS_PER_REQUEST} items"
        )


class WorkOrderService:
    def __init__(
        self,
        db: DbClient,
        registry: Optional[ChannelRegistry] = None,
        serial_format: str = "work_order",
    ):
        if serial_format not in ("work_order", "sequential"):
            raise ValueError(f"Unknown serial format: {serial_format}")
        self.db = db
        self.registry = registry
        self.serial_format = serial_format

    def _publish(
        self, table: str, event: str, new: dict, old: Optional[dict] = None
    ) -> None:
        if self.registry is not None:
            self.registry.publish(table, event, new=new, old=old)

    def _item_serials(
        self, wo_number: str, batches: list[ProductBatch]
    ) -> list[tuple[ProductType, int, str]]:
        if self.serial_format == "work_order":
            return build_item_serials(wo_number, batches)

        items: list[tuple[ProductType, int, str]] = []
        position = 1
        for batch in batches:
            start = self.db.allocate_serial_sequence(batch.product_type, batch.quantity)
            for serial in generate_serials(batch.product_type, batch.quantity, start):
                items.append((ProductType(batch.product_type), position, serial))
                position += 1
        return items

    def create_work_order(
        self,
        wo_number: str,
        batches: Iterable[ProductBatch],
        created_by: Optional[str] = None,
        notes: str = "",
        scheduled_date: Optional[str] = None,
    ) -> tuple[WorkOrderRecord, list[WorkOrderItemRecord]]:
        """
        Create a work order and one item per unit across all batches.

        The first batch's product type becomes the order's primary type and
        the batch size is the total quantity.
        """
        wo_number = (wo_number or "").strip()
        if not wo_number:
            raise WorkOrderValidationError("Work order number is required")
        if len(wo_number) > MAX_WO_NUMBER_LENGTH:
            raise WorkOrderValidationError(
                f"Work order number must be at most {MAX_WO_NUMBER_LENGTH} characters"
            )
        batches = [
            ProductBatch(ProductType(batch.product_type), int(batch.quantity))
            for batch in batches
        ]
        _validate_batches(batches)

        order = WorkOrderRecord(
            wo_number=wo_number,
            product_type=batches[0].product_type,
            batch_size=sum(batch.quantity for batch in batches),
            created_by=created_by,
            notes=notes or "",
            scheduled_date=scheduled_date,
        )
        try:
            serials = self._item_serials(wo_number, batches)
        except SerialNumberError as exc:
            raise WorkOrderValidationError(str(exc)) from exc

        items = [
            WorkOrderItemRecord(
                work_order_id=order.id,
                serial_number=serial,
                position_in_batch=position,
                product_type=product_type,
            )
            for product_type, position, serial in serials
        ]
        order = self.db.create_work_order(order, items)
        logger.info("Created work order %s with %d items", order.wo_number, len(items))

        self.log_activity(
            "create_work_order",
            "work_order",
            order.id,
            {
                "wo_number": order.wo_number,
                "batch_size": order.batch_size,
                "product_types": sorted({b.product_type.value for b in batches}),
            },
            user_id=created_by,
        )
        self._publish(WORK_ORDERS_TABLE, "INSERT", order.as_dict())
        for item in items:
            self._publish(ITEMS_TABLE, "INSERT", item.as_dict())
        return order, items

    def get_work_order(self, ref: str) -> WorkOrderRecord:
        """Look up by id, falling back to the work order number."""
        order = self.db.get_work_order(ref) or self.db.get_work_order_by_number(ref)
        if not order:
            raise NotFoundError(f"Work order {ref} not found")
        return order

    def list_work_orders(
        self, limit: int = 100, status: Optional[WorkOrderStatus] = None
    ) -> list[WorkOrderRecord]:
        return self.db.list_work_orders(limit=limit, status=status)

    def list_items(self, ref: str) -> list[WorkOrderItemRecord]:
        return self.db.list_items(self.get_work_order(ref).id)

    def update_status(
        self, ref: str, status: WorkOrderStatus, user_id: Optional[str] = None
    ) -> WorkOrderRecord:
        old = self.get_work_order(ref)
        updated = self.db.update_work_order_status(old.id, WorkOrderStatus(status))
        if not updated:
            raise NotFoundError(f"Work order {ref} not found")
        self.log_activity(
            "update_work_order_status",
            "work_order",
            updated.id,
            {"from": old.status.value, "to": updated.status.value},
            user_id=user_id,
        )
        self._publish(WORK_ORDERS_TABLE, "UPDATE", updated.as_dict(), old.as_dict())
        return updated

    def get_item(self, serial_number: str) -> WorkOrderItemRecord:
        item = self.db.get_item(serial_number)
        if not item:
            raise NotFoundError(f"Item {serial_number} not found")
        return item

    def update_item(
        self,
        serial_number: str,
        status: Optional[WorkOrderStatus] = None,
        current_step: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> WorkOrderItemRecord:
        if status is None and current_step is None:
            raise WorkOrderValidationError("Nothing to update")
        if current_step is not None and current_step < 1:
            raise WorkOrderValidationError("current_step must be at least 1")
        old = self.get_item(serial_number)
        updated = self.db.update_item(
            serial_number,
            status=WorkOrderStatus(status) if status is not None else None,
            current_step=current_step,
        )
        if not updated:
            raise NotFoundError(f"Item {serial_number} not found")
        self._publish(ITEMS_TABLE, "UPDATE", updated.as_dict(), old.as_dict())
        return updated

    def log_activity(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        details: Optional[dict] = None,
        user_id: Optional[str] = None,
    ) -> ActivityRecord:
        record = ActivityRecord(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details or {},
            user_id=user_id,
        )
        self.db.add_activity(record)
        return record

    def list_activity(self, limit: int = 100) -> list[ActivityRecord]:
        return self.db.list_activity(limit=limit)
