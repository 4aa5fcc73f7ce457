import unittest

from backend.db import DuplicateSerialError, InMemoryDbClient, WorkOrderExistsError
from backend.realtime import ChannelConfig, ChannelRegistry
from backend.work_orders import (
    ITEMS_TABLE,
    WORK_ORDERS_TABLE,
    NotFoundError,
    WorkOrderService,
    WorkOrderValidationError,
)
from shared.serials import ProductBatch
from shared.types import ProductType, WorkOrderStatus


class WorkOrderServiceTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.registry = ChannelRegistry()
        self.changes = []
        self.registry.subscribe("test", ChannelConfig(table=WORK_ORDERS_TABLE), self.changes.append)
        self.registry.subscribe("test", ChannelConfig(table=ITEMS_TABLE), self.changes.append)
        self.service = WorkOrderService(self.db, self.registry)

    def test_create_work_order_with_mixed_batches(self):
        order, items = self.service.create_work_order(
            "  WO-2024-0001 ",
            [ProductBatch(ProductType.SENSOR, 2), ProductBatch(ProductType.HMI, 1)],
            created_by="user-1",
            notes="rush",
        )

        self.assertEqual(order.wo_number, "WO-2024-0001")
        self.assertEqual(order.product_type, ProductType.SENSOR)
        self.assertEqual(order.batch_size, 3)
        self.assertEqual(order.status, WorkOrderStatus.PLANNED)
        self.assertEqual(
            [i.serial_number for i in items],
            ["Q-240001-001", "Q-240001-002", "X-240001-003"],
        )
        self.assertEqual(
            [i.serial_number for i in self.service.list_items("WO-2024-0001")],
            ["Q-240001-001", "Q-240001-002", "X-240001-003"],
        )

        activity = self.service.list_activity()
        self.assertEqual(activity[0].action, "create_work_order")
        self.assertEqual(activity[0].details["product_types"], ["HMI", "SENSOR"])

        self.assertEqual(
            [(c.table, c.event) for c in self.changes],
            [(WORK_ORDERS_TABLE, "INSERT")] + [(ITEMS_TABLE, "INSERT")] * 3,
        )

    def test_sequential_serials_continue_per_product(self):
        service = WorkOrderService(self.db, serial_format="sequential")
        _, first = service.create_work_order("WO-1", [ProductBatch(ProductType.MLA, 2)])
        _, second = service.create_work_order(
            "WO-2", [ProductBatch(ProductType.MLA, 1), ProductBatch(ProductType.SENSOR, 1)]
        )
        self.assertEqual([i.serial_number for i in first], ["W-0001", "W-0002"])
        self.assertEqual([i.serial_number for i in second], ["W-0003", "Q-0001"])
        self.assertEqual([i.position_in_batch for i in second], [1, 2])

    def test_validation(self):
        with self.assertRaises(WorkOrderValidationError):
            self.service.create_work_order("   ", [ProductBatch(ProductType.SENSOR, 1)])
        with self.assertRaises(WorkOrderValidationError):
            self.service.create_work_order("W" * 101, [ProductBatch(ProductType.SENSOR, 1)])
        with self.assertRaises(WorkOrderValidationError):
            self.service.create_work_order("WO-1", [])
        with self.assertRaises(WorkOrderValidationError):
            self.service.create_work_order("WO-1", [ProductBatch(ProductType.SENSOR, 0)])
        with self.assertRaises(WorkOrderValidationError):
            self.service.create_work_order(
                "WO-1",
                [ProductBatch(ProductType.SENSOR, 600), ProductBatch(ProductType.MLA, 401)],
            )
        with self.assertRaises(WorkOrderValidationError):
            self.service.create_work_order("---", [ProductBatch(ProductType.SENSOR, 1)])
        self.assertEqual(self.db.list_work_orders(), [])

    def test_duplicates(self):
        self.service.create_work_order("WO-A-000001", [ProductBatch(ProductType.SENSOR, 1)])
        with self.assertRaises(WorkOrderExistsError):
            self.service.create_work_order("WO-A-000001", [ProductBatch(ProductType.SENSOR, 1)])
        # Same last six characters, so the generated serials collide.
        with self.assertRaises(DuplicateSerialError):
            self.service.create_work_order("WO-B-000001", [ProductBatch(ProductType.SENSOR, 1)])
        self.assertIsNone(self.db.get_work_order_by_number("WO-B-000001"))

    def test_update_status_publishes_old_row(self):
        order, _ = self.service.create_work_order("WO-1", [ProductBatch(ProductType.SENSOR, 1)])
        self.changes.clear()

        updated = self.service.update_status(order.id, WorkOrderStatus.IN_PROGRESS, user_id="u")

        self.assertEqual(updated.status, WorkOrderStatus.IN_PROGRESS)
        change = self.changes[0]
        self.assertEqual(change.event, "UPDATE")
        self.assertEqual(change.old["status"], "planned")
        self.assertEqual(change.new["status"], "in_progress")
        self.assertEqual(
            self.service.list_activity()[0].details, {"from": "planned", "to": "in_progress"}
        )

    def test_update_item(self):
        self.service.create_work_order("WO-1", [ProductBatch(ProductType.SENSOR, 1)])

        item = self.service.update_item("Q-WO1-001", current_step=2)
        self.assertEqual(item.current_step, 2)
        item = self.service.update_item("Q-WO1-001", status=WorkOrderStatus.COMPLETED)
        self.assertIsNotNone(item.completed_at)

        with self.assertRaises(WorkOrderValidationError):
            self.service.update_item("Q-WO1-001")
        with self.assertRaises(WorkOrderValidationError):
            self.service.update_item("Q-WO1-001", current_step=0)
        with self.assertRaises(NotFoundError):
            self.service.update_item("Q-NOPE-001", current_step=2)

    def test_lookup_by_id_or_number(self):
        order, _ = self.service.create_work_order("WO-1", [ProductBatch(ProductType.SENSOR, 1)])
        self.assertEqual(self.service.get_work_order(order.id).id, order.id)
        self.assertEqual(self.service.get_work_order("WO-1").id, order.id)
        with self.assertRaises(NotFoundError):
            self.service.get_work_order("WO-404")


if __name__ == "__main__":
    unittest.main()
