import unittest

from backend.db import InMemoryDbClient, OutgoingWebhookRecord
from backend.dead_letter import (
    DeadLetter,
    DeadLetterNotFoundError,
    InMemoryDeadLetterQueue,
    requeue_dead_letter,
)
from backend.queue import InMemoryJobQueue
from shared.types import DeliveryStatus


def _entry(delivery_id, webhook_id="wh-1", failed_at=1.0):
    return DeadLetter(
        delivery_id=delivery_id,
        webhook_id=webhook_id,
        event_type="work_order_created",
        payload={
            "event": "work_order_created",
            "data": {"wo_number": "WO-1"},
            "idempotency_key": "key-1",
            "delivery_id": delivery_id,
        },
        error="HTTP 500",
        attempts=3,
        failed_at=failed_at,
    )


class InMemoryDeadLetterQueueTests(unittest.TestCase):
    def test_list_is_newest_first_and_filterable(self):
        dlq = InMemoryDeadLetterQueue()
        dlq.push(_entry("a", "wh-1"))
        dlq.push(_entry("b", "wh-2"))
        dlq.push(_entry("c", "wh-1"))

        self.assertEqual([e.delivery_id for e in dlq.list()], ["c", "b", "a"])
        self.assertEqual([e.delivery_id for e in dlq.list(webhook_id="wh-1")], ["c", "a"])
        self.assertEqual([e.delivery_id for e in dlq.list(limit=1)], ["c"])

    def test_oldest_entries_dropped_when_full(self):
        dlq = InMemoryDeadLetterQueue(max_size=2)
        for delivery_id in ("a", "b", "c"):
            dlq.push(_entry(delivery_id))
        self.assertEqual(dlq.size(), 2)
        self.assertIsNone(dlq.get("a"))
        self.assertIsNotNone(dlq.get("c"))

    def test_remove_and_clear(self):
        dlq = InMemoryDeadLetterQueue()
        dlq.push(_entry("a"))
        dlq.push(_entry("b"))
        self.assertTrue(dlq.remove("a"))
        self.assertFalse(dlq.remove("a"))
        self.assertEqual(dlq.clear(), 1)
        self.assertEqual(dlq.size(), 0)

    def test_dict_roundtrip_keeps_job_id(self):
        entry = _entry("a")
        entry.job_id = "job-9"
        self.assertEqual(DeadLetter.from_dict(entry.as_dict()), entry)


class RequeueDeadLetterTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.queue = InMemoryJobQueue()
        self.dlq = InMemoryDeadLetterQueue()
        self.webhook = self.db.create_outgoing_webhook(
            OutgoingWebhookRecord(
                name="erp",
                webhook_url="https://example.com/hook",
                event_type="work_order_created",
            )
        )

    def test_requeue_creates_waiting_job(self):
        self.dlq.push(_entry("del-1", self.webhook.id))
        job = requeue_dead_letter(self.dlq, self.db, self.queue, "del-1")

        self.assertEqual(job.status, DeliveryStatus.WAITING)
        self.assertEqual(job.data, {"wo_number": "WO-1"})
        self.assertEqual(job.idempotency_key, "key-1")
        self.assertEqual(self.queue.items, [job.job_id])
        self.assertEqual(self.dlq.size(), 0)

    def test_requeue_unknown_entry_or_webhook(self):
        with self.assertRaises(DeadLetterNotFoundError):
            requeue_dead_letter(self.dlq, self.db, self.queue, "missing")

        self.dlq.push(_entry("del-2", "deleted-webhook"))
        with self.assertRaises(DeadLetterNotFoundError):
            requeue_dead_letter(self.dlq, self.db, self.queue, "del-2")
        # Entry is kept for a later retry.
        self.assertEqual(self.dlq.size(), 1)
        self.assertEqual(self.queue.size(), 0)


if __name__ == "__main__":
    unittest.main()
