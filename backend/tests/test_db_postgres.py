import unittest
from unittest.mock import patch

from sqlalchemy.exc import IntegrityError

from backend.db import (
    ActivityRecord,
    AutomationRuleRecord,
    DeliveryLogRecord,
    DuplicateSerialError,
    IncomingLogRecord,
    IncomingWebhookRecord,
    OutgoingWebhookRecord,
    PostgresDbClient,
    WorkOrderExistsError,
    WorkOrderItemRecord,
    WorkOrderRecord,
)
from shared.types import (
    AutomationActionType,
    DeliveryStatus,
    ProductType,
    WorkOrderStatus,
)


def _order(wo_number, serials, product_type=ProductType.SENSOR):
    order = WorkOrderRecord(
        wo_number=wo_number, product_type=product_type, batch_size=len(serials)
    )
    items = [
        WorkOrderItemRecord(
            work_order_id=order.id,
            serial_number=serial,
            position_in_batch=position,
            product_type=product_type,
        )
        for position, serial in enumerate(serials, start=1)
    ]
    return order, items


class PostgresDbClientTests(unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the Postgres client logic.
    """

    def setUp(self):
        self.db = PostgresDbClient("sqlite+pysqlite:///:memory:")

    def test_create_and_get_work_order(self):
        order, items = _order("WO-1", ["Q-000001-001", "Q-000001-002"])
        self.db.create_work_order(order, items)

        fetched = self.db.get_work_order(order.id)
        self.assertEqual(fetched.wo_number, "WO-1")
        self.assertEqual(fetched.status, WorkOrderStatus.PLANNED)
        self.assertEqual(self.db.get_work_order_by_number("WO-1").id, order.id)
        self.assertEqual(
            [i.serial_number for i in self.db.list_items(order.id)],
            ["Q-000001-001", "Q-000001-002"],
        )
        self.assertIsNone(self.db.get_work_order("missing"))

    def test_duplicate_work_order_number(self):
        self.db.create_work_order(*_order("WO-1", ["Q-000001-001"]))
        with self.assertRaises(WorkOrderExistsError):
            self.db.create_work_order(*_order("WO-1", ["Q-000001-002"]))

    def test_duplicate_serial_is_rejected_atomically(self):
        self.db.create_work_order(*_order("WO-A-000001", ["Q-000001-001"]))
        with self.assertRaises(DuplicateSerialError):
            self.db.create_work_order(*_order("WO-B-000001", ["Q-000001-001"]))
        self.assertIsNone(self.db.get_work_order_by_number("WO-B-000001"))

    def test_list_and_update_status(self):
        order, items = _order("WO-1", ["Q-000001-001"])
        self.db.create_work_order(order, items)
        self.db.create_work_order(*_order("WO-2", ["Q-000002-001"]))

        updated = self.db.update_work_order_status(order.id, WorkOrderStatus.IN_PROGRESS)
        self.assertEqual(updated.status, WorkOrderStatus.IN_PROGRESS)
        self.assertEqual(len(self.db.list_work_orders()), 2)
        self.assertEqual(
            [o.wo_number for o in self.db.list_work_orders(status=WorkOrderStatus.IN_PROGRESS)],
            ["WO-1"],
        )
        self.assertIsNone(self.db.update_work_order_status("missing", WorkOrderStatus.COMPLETED))

    def test_update_item(self):
        self.db.create_work_order(*_order("WO-1", ["Q-000001-001"]))

        item = self.db.update_item("Q-000001-001", current_step=3)
        self.assertEqual(item.current_step, 3)
        self.assertIsNone(item.completed_at)

        item = self.db.update_item("Q-000001-001", status=WorkOrderStatus.COMPLETED)
        self.assertEqual(item.status, WorkOrderStatus.COMPLETED)
        self.assertIsNotNone(item.completed_at)
        self.assertIsNone(self.db.update_item("nope", current_step=2))

    def test_serial_sequence_allocation(self):
        self.db.create_work_order(*_order("WO-1", ["Q-0005"]))

        self.assertEqual(self.db.peek_serial_sequence(ProductType.SENSOR), 6)
        self.assertEqual(self.db.allocate_serial_sequence(ProductType.SENSOR, 3), 6)
        self.assertEqual(self.db.allocate_serial_sequence(ProductType.SENSOR, 1), 9)
        self.assertEqual(self.db.peek_serial_sequence(ProductType.SENSOR), 10)
        self.assertEqual(self.db.allocate_serial_sequence(ProductType.HMI, 2), 1)

    def test_serial_sequence_first_insert_race_retries(self):
        allocate = self.db._allocate_serial_sequence
        calls = []

        def concurrent_first_insert(product_type, count):
            calls.append(product_type)
            if len(calls) == 1:
                # The other transaction creates the row and takes 1..5.
                allocate(product_type, 5)
                raise IntegrityError(
                    "INSERT INTO serial_sequences", {}, Exception("duplicate key")
                )
            return allocate(product_type, count)

        with patch.object(
            self.db, "_allocate_serial_sequence", side_effect=concurrent_first_insert
        ):
            start = self.db.allocate_serial_sequence(ProductType.MLA, 2)

        self.assertEqual(start, 6)
        self.assertEqual(len(calls), 2)
        self.assertEqual(self.db.peek_serial_sequence(ProductType.MLA), 8)

    def test_activity_log(self):
        self.db.add_activity(
            ActivityRecord(action="create_work_order", entity_type="work_order", details={"n": 1})
        )
        entries = self.db.list_activity()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].details, {"n": 1})

    def test_outgoing_webhook_crud_and_logs(self):
        webhook = self.db.create_outgoing_webhook(
            OutgoingWebhookRecord(
                name="erp",
                webhook_url="https://erp.example.com/hook",
                event_type="work_order_created",
                secret_key="abc",
            )
        )
        self.db.create_outgoing_webhook(
            OutgoingWebhookRecord(
                name="off",
                webhook_url="https://off.example.com/hook",
                event_type="work_order_created",
                enabled=False,
            )
        )

        self.assertEqual(len(self.db.list_outgoing_webhooks("work_order_created")), 2)
        self.assertEqual(
            [w.id for w in self.db.list_outgoing_webhooks("work_order_created", enabled_only=True)],
            [webhook.id],
        )

        updated = self.db.update_outgoing_webhook(webhook.id, name="erp-2", secret_key=None)
        self.assertEqual(updated.name, "erp-2")
        self.assertEqual(updated.secret_key, "abc")
        with self.assertRaises(ValueError):
            self.db.update_outgoing_webhook(webhook.id, id="other")

        self.db.log_delivery(
            DeliveryLogRecord(
                webhook_id=webhook.id,
                event_type="work_order_created",
                payload={"event": "work_order_created"},
                delivery_id="del_1",
                attempts=1,
                response_status=200,
                response_body={"ok": True},
            )
        )
        logs = self.db.list_delivery_logs(webhook.id)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0].response_body, {"ok": True})

        self.assertTrue(self.db.delete_outgoing_webhook(webhook.id))
        self.assertFalse(self.db.delete_outgoing_webhook(webhook.id))
        self.assertEqual(self.db.list_delivery_logs(webhook.id), [])

    def test_delivery_job_lifecycle(self):
        job = self.db.create_delivery_job("wh-1", "item_completed", {"serial": "Q-0001"}, "k1")
        self.assertEqual(job.status, DeliveryStatus.WAITING)

        claimed = self.db.claim_delivery_job(job.job_id)
        self.assertEqual(claimed.status, DeliveryStatus.DELIVERING)
        self.assertIsNotNone(claimed.locked_at)
        self.assertIsNone(self.db.claim_delivery_job(job.job_id))

        self.assertEqual(self.db.requeue_stale_locks(lock_timeout_seconds=-1), 1)
        self.assertEqual(self.db.claim_next_waiting_job().job_id, job.job_id)
        self.assertIsNone(self.db.claim_next_waiting_job())

        self.db.update_delivery_job(
            job.job_id,
            status=DeliveryStatus.SUCCESS,
            attempts=2,
            delivery_id="del_1",
        )
        updated = self.db.get_delivery_job(job.job_id)
        self.assertEqual(updated.status, DeliveryStatus.SUCCESS)
        self.assertEqual(updated.attempts, 2)
        self.assertEqual(updated.data, {"serial": "Q-0001"})
        self.assertEqual(updated.idempotency_key, "k1")
        self.assertIsNone(updated.locked_at)

    def test_incoming_webhook_rules_and_logs(self):
        webhook = self.db.create_incoming_webhook(
            IncomingWebhookRecord(
                name="erp", endpoint_key="key-1", secret_key="s", allowed_ips=["10.0.0.0/8"]
            )
        )
        with self.assertRaises(ValueError):
            self.db.create_incoming_webhook(
                IncomingWebhookRecord(name="dup", endpoint_key="key-1", secret_key="s")
            )
        self.assertEqual(self.db.get_incoming_webhook_by_key("key-1").id, webhook.id)
        self.assertEqual(self.db.get_incoming_webhook(webhook.id).allowed_ips, ["10.0.0.0/8"])

        self.db.record_incoming_trigger(webhook.id)
        self.assertEqual(self.db.get_incoming_webhook(webhook.id).trigger_count, 1)
        self.assertFalse(
            self.db.update_incoming_webhook(webhook.id, enabled=False).enabled
        )

        second = self.db.create_automation_rule(
            AutomationRuleRecord(
                incoming_webhook_id=webhook.id,
                name="second",
                action_type=AutomationActionType.LOG_ACTIVITY,
                sort_order=2,
            )
        )
        first = self.db.create_automation_rule(
            AutomationRuleRecord(
                incoming_webhook_id=webhook.id,
                name="first",
                action_type=AutomationActionType.CREATE_WORK_ORDER,
                field_mappings={"wo_number": "order.number"},
                sort_order=1,
            )
        )
        self.db.create_automation_rule(
            AutomationRuleRecord(
                incoming_webhook_id=webhook.id,
                name="off",
                action_type=AutomationActionType.LOG_ACTIVITY,
                enabled=False,
            )
        )
        rules = self.db.list_automation_rules(webhook.id)
        self.assertEqual([r.id for r in rules], [first.id, second.id])
        self.assertEqual(rules[0].field_mappings, {"wo_number": "order.number"})
        self.assertEqual(len(self.db.list_automation_rules(webhook.id, enabled_only=False)), 3)

        self.db.log_incoming_request(
            IncomingLogRecord(
                incoming_webhook_id=webhook.id,
                response_status=401,
                error_message="Invalid secret key",
            )
        )
        logs = self.db.list_incoming_logs(webhook.id)
        self.assertEqual(logs[0].response_status, 401)


if __name__ == "__main__":
    unittest.main()
