import os
import unittest
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from backend.app import create_app
from backend.config import get_settings
from backend.dead_letter import DeadLetter
from backend.dependencies import get_dead_letter_queue, get_queue_client, reset_dependencies


class BackendApiTests(unittest.TestCase):
    def setUp(self):
        env = patch.dict(os.environ, {"MES_USE_IN_MEMORY_BACKENDS": "true"})
        env.start()
        self.addCleanup(env.stop)
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)
        reset_dependencies()
        self.addCleanup(reset_dependencies)
        self.client = TestClient(create_app())

    def _create_work_order(self, wo_number="WO-2024-0001", batches=None):
        return self.client.post(
            "/api/work-orders",
            json={
                "wo_number": wo_number,
                "batches": batches or [{"product_type": "SENSOR", "quantity": 2}],
                "created_by": "planner",
            },
        )

    def _create_outgoing(self, event_type="work_order_created", url="https://erp.example.com/hook"):
        return self.client.post(
            "/api/outgoing-webhooks",
            json={"name": "erp", "webhook_url": url, "event_type": event_type},
        )

    # Work orders ---------------------------------------------------------

    def test_create_and_fetch_work_order(self):
        response = self._create_work_order()
        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["status"], "planned")
        self.assertEqual(
            [i["serial_number"] for i in payload["items"]], ["Q-240001-001", "Q-240001-002"]
        )

        by_number = self.client.get("/api/work-orders/WO-2024-0001")
        self.assertEqual(by_number.status_code, 200)
        self.assertEqual(by_number.json()["id"], payload["id"])
        self.assertEqual(len(by_number.json()["items"]), 2)

        listing = self.client.get("/api/work-orders").json()
        self.assertEqual(len(listing["work_orders"]), 1)
        self.assertIsNone(listing["work_orders"][0]["items"])

        self.assertEqual(self._create_work_order().status_code, 409)
        self.assertEqual(self.client.get("/api/work-orders/missing").status_code, 404)
        self.assertEqual(self.client.get("/api/activity").json()[0]["action"], "create_work_order")

    def test_work_order_validation(self):
        self.assertEqual(self._create_work_order(batches=[]).status_code, 422)
        self.assertEqual(
            self._create_work_order(batches=[{"product_type": "NOPE", "quantity": 1}]).status_code,
            422,
        )
        self.assertEqual(self._create_work_order(wo_number="---").status_code, 400)

    def test_status_and_item_updates(self):
        order = self._create_work_order().json()

        response = self.client.patch(
            f"/api/work-orders/{order['id']}/status", json={"status": "in_progress"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "in_progress")

        item = self.client.patch("/api/items/Q-240001-001", json={"current_step": 3})
        self.assertEqual(item.json()["current_step"], 3)
        self.assertEqual(self.client.patch("/api/items/Q-240001-001", json={}).status_code, 400)
        self.assertEqual(self.client.get("/api/items/Q-000000-001").status_code, 404)

    def test_serial_preview_and_parse(self):
        response = self.client.get("/api/serials/next", params={"product_type": "MLA", "count": 3})
        self.assertEqual(response.json()["serials"], ["W-0001", "W-0002", "W-0003"])
        self.assertEqual(
            self.client.get("/api/serials/next", params={"product_type": "MLA", "count": 1001}).status_code,
            422,
        )

        parsed = self.client.get("/api/serials/parse/SDM-0042").json()
        self.assertTrue(parsed["valid"])
        self.assertEqual(parsed["product_type"], "SDM_ECO")
        self.assertEqual(parsed["number"], 42)
        self.assertFalse(self.client.get("/api/serials/parse/bogus").json()["valid"])

    def test_webhook_event_catalog(self):
        payload = self.client.get("/api/webhook-events").json()
        self.assertEqual(len(payload["events"]), 21)
        self.assertIn("work_order_created", payload["categories"]["Work Orders"])

    # Outgoing webhooks ---------------------------------------------------

    def test_outgoing_webhook_crud_hides_secret(self):
        created = self._create_outgoing()
        self.assertEqual(created.status_code, 201)
        webhook = created.json()
        self.assertTrue(webhook["has_secret"])
        self.assertEqual(len(webhook["secret_key"]), 64)

        listed = self.client.get("/api/outgoing-webhooks").json()
        self.assertIsNone(listed[0]["secret_key"])

        updated = self.client.patch(
            f"/api/outgoing-webhooks/{webhook['id']}", json={"enabled": False}
        )
        self.assertFalse(updated.json()["enabled"])

        rotated = self.client.post(f"/api/outgoing-webhooks/{webhook['id']}/regenerate-secret")
        self.assertNotEqual(rotated.json()["secret_key"], webhook["secret_key"])

        self.assertEqual(self.client.delete(f"/api/outgoing-webhooks/{webhook['id']}").status_code, 204)
        self.assertEqual(self.client.delete(f"/api/outgoing-webhooks/{webhook['id']}").status_code, 404)

    def test_outgoing_webhook_rejects_unsafe_url_and_unknown_event(self):
        self.assertEqual(self._create_outgoing(url="https://127.0.0.1/hook").status_code, 400)
        self.assertEqual(self._create_outgoing(url="http://erp.example.com/hook").status_code, 400)
        self.assertEqual(self._create_outgoing(event_type="made_up").status_code, 400)

    @patch("backend.delivery.requests.post")
    def test_test_delivery_and_logs(self, mock_post):
        response = MagicMock()
        response.status_code = 200
        response.json.return_value = {"received": True}
        mock_post.return_value = response
        webhook = self._create_outgoing().json()

        result = self.client.post(f"/api/outgoing-webhooks/{webhook['id']}/test").json()
        self.assertTrue(result["success"])
        self.assertFalse(result["dead_lettered"])

        logs = self.client.get(f"/api/outgoing-webhooks/{webhook['id']}/logs").json()
        self.assertEqual(logs[0]["response_body"], {"received": True})

        health = self.client.get(f"/api/outgoing-webhooks/{webhook['id']}/health").json()
        self.assertEqual(health["health_score"], 100)
        self.assertEqual(health["circuit_state"], "CLOSED")
        self.assertEqual(health["total_calls"], 1)

    def test_work_order_creation_queues_deliveries(self):
        webhook = self._create_outgoing().json()
        self._create_work_order()

        queue = get_queue_client()
        self.assertEqual(queue.size(), 1)
        job_id = queue.items[0]
        job = self.client.get(f"/api/delivery-jobs/{job_id}").json()
        self.assertEqual(job["webhook_id"], webhook["id"])
        self.assertEqual(job["status"], "WAITING")

    def test_manual_event_dispatch(self):
        self._create_outgoing(event_type="shift_started")
        response = self.client.post(
            "/api/events", json={"event_type": "shift_started", "data": {"shift": "A"}}
        )
        self.assertEqual(response.status_code, 202)
        self.assertEqual(len(response.json()["job_ids"]), 1)
        self.assertEqual(
            self.client.post("/api/events", json={"event_type": "nope"}).status_code, 400
        )

    # Dead letters --------------------------------------------------------

    def test_dead_letter_list_retry_and_delete(self):
        webhook = self._create_outgoing().json()
        dead_letters = get_dead_letter_queue()
        for delivery_id in ("del_1", "del_2"):
            dead_letters.push(
                DeadLetter(
                    delivery_id=delivery_id,
                    webhook_id=webhook["id"],
                    event_type="work_order_created",
                    payload={"event": "work_order_created", "data": {"wo_number": "WO-1"}},
                    error="HTTP 500",
                    attempts=3,
                )
            )

        listing = self.client.get("/api/dead-letters").json()
        self.assertEqual(listing["total"], 2)
        self.assertEqual(listing["dead_letters"][0]["delivery_id"], "del_2")

        retried = self.client.post("/api/dead-letters/del_1/retry")
        self.assertEqual(retried.status_code, 202)
        self.assertEqual(retried.json()["status"], "WAITING")
        self.assertEqual(get_queue_client().items, [retried.json()["job_id"]])
        self.assertEqual(self.client.post("/api/dead-letters/del_1/retry").status_code, 404)

        self.assertEqual(self.client.delete("/api/dead-letters/del_2").status_code, 204)
        self.assertEqual(self.client.get("/api/dead-letters").json()["total"], 0)

    # Incoming webhooks ---------------------------------------------------

    def _create_incoming_with_rule(self):
        incoming = self.client.post("/api/incoming-webhooks", json={"name": "erp"}).json()
        rule = self.client.post(
            f"/api/incoming-webhooks/{incoming['id']}/rules",
            json={
                "name": "create order",
                "action_type": "create_work_order",
                "field_mappings": {"wo_number": "$.data.wo_number", "product_type": "$.data.product"},
            },
        )
        self.assertEqual(rule.status_code, 201)
        return incoming

    def test_webhook_receiver_flow(self):
        incoming = self._create_incoming_with_rule()
        url = f"/api/webhook-receiver/{incoming['endpoint_key']}"
        body = {
            "event": "order_released",
            "timestamp": "2024-05-01T10:00:00Z",
            "data": {"wo_number": "WO-ERP-1", "product": "HMI"},
        }
        headers = {"X-Webhook-Secret": incoming["secret_key"], "Idempotency-Key": "erp-1"}

        response = self.client.post(url, json=body, headers=headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["executed"], 1)
        order = self.client.get("/api/work-orders/WO-ERP-1").json()
        self.assertEqual(order["product_type"], "HMI")
        self.assertEqual(order["created_by"], f"webhook:{incoming['id']}")

        replay = self.client.post(url, json=body, headers=headers)
        self.assertEqual(replay.status_code, 200)
        self.assertEqual(replay.headers["Idempotent-Replayed"], "true")

        conflict = self.client.post(
            url, json=body, headers={"X-Webhook-Secret": incoming["secret_key"]}
        )
        self.assertEqual(conflict.status_code, 207)
        self.assertEqual(conflict.json()["errors"], 1)

        logs = self.client.get(f"/api/incoming-webhooks/{incoming['id']}/logs").json()
        self.assertEqual([log["response_status"] for log in logs], [207, 200])

    def test_webhook_receiver_rejections(self):
        incoming = self._create_incoming_with_rule()
        url = f"/api/webhook-receiver/{incoming['endpoint_key']}"

        self.assertEqual(
            self.client.post(url, json={}, headers={"X-Webhook-Secret": "wrong"}).status_code, 401
        )
        self.assertEqual(
            self.client.post(
                url,
                content=b"{oops",
                headers={"X-Webhook-Secret": incoming["secret_key"], "Content-Type": "application/json"},
            ).status_code,
            400,
        )
        self.assertEqual(
            self.client.post("/api/webhook-receiver/unknown", json={}).status_code, 404
        )

    def test_rule_with_unsafe_relay_url_is_rejected(self):
        incoming = self.client.post("/api/incoming-webhooks", json={"name": "erp"}).json()
        response = self.client.post(
            f"/api/incoming-webhooks/{incoming['id']}/rules",
            json={
                "name": "relay",
                "action_type": "trigger_outgoing_webhook",
                "field_mappings": {"webhook_url": "https://192.168.1.10/hook"},
            },
        )
        self.assertEqual(response.status_code, 400)

    # Admin and realtime --------------------------------------------------

    def test_admin_token_required_when_configured(self):
        with patch.dict(os.environ, {"MES_ADMIN_API_TOKEN": "top-secret"}):
            get_settings.cache_clear()
            self.assertEqual(self.client.get("/api/outgoing-webhooks").status_code, 401)
            self.assertEqual(
                self.client.get(
                    "/api/outgoing-webhooks", headers={"Authorization": "Bearer nope"}
                ).status_code,
                401,
            )
            self.assertEqual(
                self.client.get(
                    "/api/outgoing-webhooks", headers={"Authorization": "Bearer top-secret"}
                ).status_code,
                200,
            )
            # Public routes stay open.
            self.assertEqual(self.client.get("/api/work-orders").status_code, 200)
        get_settings.cache_clear()

    def test_realtime_channels(self):
        payload = self.client.get("/api/realtime/channels").json()
        self.assertEqual(payload["active"], 2)
        self.assertEqual(
            payload["channels"],
            ["webhook-events-work_order_items-*", "webhook-events-work_orders-*"],
        )


if __name__ == "__main__":
    unittest.main()
