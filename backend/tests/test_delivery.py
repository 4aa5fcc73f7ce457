import json
import unittest
from unittest.mock import MagicMock, patch

import requests

from backend.db import InMemoryDbClient, OutgoingWebhookRecord
from backend.dead_letter import InMemoryDeadLetterQueue
from backend.delivery import CIRCUIT_OPEN_ERROR, WebhookDeliverer
from backend.health import CircuitState, WebhookHealthTracker
from backend.idempotency import InMemoryIdempotencyCache
from backend.signing import verify_signature


def _response(status_code, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {"ok": status_code < 300}
    response.text = ""
    return response


class WebhookDelivererTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.health = WebhookHealthTracker()
        self.dead_letters = InMemoryDeadLetterQueue()
        self.idempotency = InMemoryIdempotencyCache()
        self.sleeps = []
        self.deliverer = WebhookDeliverer(
            self.db,
            self.health,
            self.dead_letters,
            self.idempotency,
            sleep=self.sleeps.append,
        )
        self.webhook = self.db.create_outgoing_webhook(
            OutgoingWebhookRecord(
                name="erp",
                webhook_url="https://erp.example.com/hooks/mes",
                event_type="work_order_created",
                secret_key="s3cret",
            )
        )

    @patch("backend.delivery.requests.post")
    def test_successful_delivery_is_signed_and_logged(self, mock_post):
        mock_post.return_value = _response(200)

        result = self.deliverer.deliver(
            self.webhook,
            "work_order_created",
            {"wo_number": "WO-1"},
            idempotency_key="work_order_created:wo-1",
            timestamp="2024-01-01T00:00:00+00:00",
        )

        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(result.status_code, 200)
        self.assertTrue(result.delivery_id.startswith("del_"))

        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "https://erp.example.com/hooks/mes")
        headers = kwargs["headers"]
        self.assertEqual(headers["X-Webhook-Event"], "work_order_created")
        self.assertEqual(headers["X-Webhook-Delivery"], result.delivery_id)
        self.assertEqual(headers["Idempotency-Key"], "work_order_created:wo-1")
        self.assertTrue(verify_signature(kwargs["data"], headers["X-Webhook-Signature"], "s3cret"))

        body = json.loads(kwargs["data"])
        self.assertEqual(body["event"], "work_order_created")
        self.assertEqual(body["data"], {"wo_number": "WO-1"})
        self.assertEqual(body["delivery_id"], result.delivery_id)

        logs = self.db.list_delivery_logs(self.webhook.id)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0].response_status, 200)
        self.assertIsNone(logs[0].error_message)
        self.assertEqual(self.health.get(self.webhook.id).success_count, 1)

    @patch("backend.delivery.requests.post")
    def test_unsigned_when_no_secret(self, mock_post):
        mock_post.return_value = _response(204)
        webhook = self.db.create_outgoing_webhook(
            OutgoingWebhookRecord(
                name="plain",
                webhook_url="https://plain.example.com/hook",
                event_type="item_completed",
            )
        )
        self.assertTrue(self.deliverer.deliver(webhook, "item_completed", {}).success)
        self.assertNotIn("X-Webhook-Signature", mock_post.call_args.kwargs["headers"])

    @patch("backend.delivery.requests.post")
    def test_retries_with_exponential_backoff(self, mock_post):
        mock_post.side_effect = [
            _response(500),
            requests.ConnectionError("connection refused"),
            _response(200),
        ]

        result = self.deliverer.deliver(self.webhook, "work_order_created", {})

        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(self.sleeps, [2.0, 4.0])
        self.assertEqual(self.dead_letters.size(), 0)

    @patch("backend.delivery.requests.post")
    def test_exhausted_retries_go_to_dead_letter_queue(self, mock_post):
        mock_post.return_value = _response(500)

        result = self.deliverer.deliver(
            self.webhook, "work_order_created", {"wo_number": "WO-1"}, job_id="job-1"
        )

        self.assertFalse(result.success)
        self.assertTrue(result.dead_lettered)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(result.error, "HTTP 500")
        self.assertEqual(mock_post.call_count, 3)

        entry = self.dead_letters.get(result.delivery_id)
        self.assertEqual(entry.webhook_id, self.webhook.id)
        self.assertEqual(entry.job_id, "job-1")
        self.assertEqual(entry.payload["data"], {"wo_number": "WO-1"})

        logs = self.db.list_delivery_logs(self.webhook.id)
        self.assertEqual(logs[0].error_message, "HTTP 500")
        self.assertEqual(logs[0].attempts, 3)

    @patch("backend.delivery.requests.post")
    def test_unsafe_url_is_never_requested(self, mock_post):
        webhook = self.db.create_outgoing_webhook(
            OutgoingWebhookRecord(
                name="internal",
                webhook_url="https://169.254.169.254/latest",
                event_type="work_order_created",
            )
        )

        result = self.deliverer.deliver(webhook, "work_order_created", {})

        mock_post.assert_not_called()
        self.assertFalse(result.success)
        self.assertEqual(result.attempts, 0)
        self.assertTrue(result.error.startswith("URL validation failed"))
        self.assertEqual(self.dead_letters.size(), 1)

    @patch("backend.delivery.requests.post")
    def test_duplicate_idempotency_key_returns_cached_result(self, mock_post):
        mock_post.return_value = _response(200)

        first = self.deliverer.deliver(
            self.webhook, "work_order_created", {}, idempotency_key="k1"
        )
        second = self.deliverer.deliver(
            self.webhook, "work_order_created", {}, idempotency_key="k1"
        )

        self.assertEqual(mock_post.call_count, 1)
        self.assertTrue(second.success)
        self.assertTrue(second.duplicate)
        self.assertEqual(second.delivery_id, first.delivery_id)

    @patch("backend.delivery.requests.post")
    def test_open_circuit_skips_request(self, mock_post):
        for _ in range(5):
            self.health.record(self.webhook.id, False, 10)

        result = self.deliverer.deliver(self.webhook, "work_order_created", {})

        mock_post.assert_not_called()
        self.assertEqual(result.error, CIRCUIT_OPEN_ERROR)
        self.assertTrue(result.dead_lettered)

    @patch("backend.delivery.requests.post")
    def test_redirects_are_not_followed(self, mock_post):
        redirect = _response(302)
        redirect.headers = {"Location": "http://169.254.169.254/latest/meta-data/"}
        mock_post.return_value = redirect

        result = self.deliverer.deliver(self.webhook, "work_order_created", {})

        self.assertIs(mock_post.call_args.kwargs["allow_redirects"], False)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "HTTP 302")
        self.assertTrue(result.dead_lettered)

    @patch("backend.delivery.requests.post")
    def test_unexpected_error_releases_half_open_trial(self, mock_post):
        now = [1000.0]
        health = WebhookHealthTracker(cooldown_seconds=60, clock=lambda: now[0])
        deliverer = WebhookDeliverer(
            self.db, health, self.dead_letters, self.idempotency, sleep=self.sleeps.append
        )
        for _ in range(5):
            health.record(self.webhook.id, False, 10)
        now[0] += 61
        mock_post.side_effect = ValueError("bad header")

        with self.assertRaises(ValueError):
            deliverer.deliver(self.webhook, "work_order_created", {})

        self.assertEqual(health.circuit_state(self.webhook.id), CircuitState.HALF_OPEN)
        self.assertTrue(health.allow_request(self.webhook.id))

    @patch("backend.delivery.requests.post")
    def test_disabled_webhook_is_skipped(self, mock_post):
        webhook = self.db.update_outgoing_webhook(self.webhook.id, enabled=False)

        result = self.deliverer.deliver(webhook, "work_order_created", {})

        mock_post.assert_not_called()
        self.assertFalse(result.success)
        self.assertEqual(self.dead_letters.size(), 0)
        self.assertEqual(self.db.list_delivery_logs(self.webhook.id), [])

    @patch("backend.delivery.requests.post")
    def test_test_deliveries_skip_dead_letter_queue(self, mock_post):
        mock_post.return_value = _response(404)

        result = self.deliverer.deliver(
            self.webhook, "work_order_created", {}, dead_letter=False
        )

        self.assertFalse(result.success)
        self.assertFalse(result.dead_lettered)
        self.assertEqual(self.dead_letters.size(), 0)

    @patch("backend.delivery.requests.post")
    def test_auto_disable_after_consecutive_failures(self, mock_post):
        mock_post.return_value = _response(503)
        deliverer = WebhookDeliverer(
            self.db,
            self.health,
            self.dead_letters,
            self.idempotency,
            max_attempts=5,
            auto_disable=True,
            sleep=self.sleeps.append,
        )

        result = deliverer.deliver(self.webhook, "work_order_created", {})

        self.assertEqual(result.attempts, 5)
        self.assertEqual(self.sleeps, [2.0, 4.0, 8.0, 16.0])
        self.assertFalse(self.db.get_outgoing_webhook(self.webhook.id).enabled)
        self.assertEqual(self.health.circuit_state(self.webhook.id), CircuitState.OPEN)


if __name__ == "__main__":
    unittest.main()
