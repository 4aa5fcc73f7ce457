import unittest
from unittest.mock import MagicMock, patch

from redis import exceptions as redis_exceptions

from backend.queue import InMemoryJobQueue, RedisJobQueue


class InMemoryJobQueueTests(unittest.TestCase):
    def test_fifo(self):
        queue = InMemoryJobQueue()
        queue.enqueue("a")
        queue.enqueue("b")
        self.assertEqual(queue.size(), 2)
        self.assertEqual(queue.dequeue(block=False), "a")
        self.assertEqual(queue.dequeue(), "b")
        self.assertIsNone(queue.dequeue())


class RedisJobQueueTests(unittest.TestCase):
    def setUp(self):
        patcher = patch("backend.queue.redis.Redis.from_url")
        self.from_url = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = MagicMock()
        self.from_url.return_value = self.client
        self.queue = RedisJobQueue("redis://localhost:6379/0", queue_key="q")

    def test_enqueue_and_size(self):
        self.client.llen.return_value = 3
        self.queue.enqueue("job-1")
        self.client.rpush.assert_called_once_with("q", "job-1")
        self.assertEqual(self.queue.size(), 3)
        self.from_url.assert_called_once_with(
            "redis://localhost:6379/0", decode_responses=True
        )

    def test_dequeue(self):
        self.client.lpop.return_value = "job-1"
        self.assertEqual(self.queue.dequeue(block=False), "job-1")

        self.client.blpop.return_value = ("q", "job-2")
        self.assertEqual(self.queue.dequeue(timeout=2), "job-2")
        self.client.blpop.assert_called_with(["q"], timeout=2)

        self.client.blpop.return_value = None
        self.assertIsNone(self.queue.dequeue(timeout=1))

    def test_connection_drop_reconnects(self):
        self.client.blpop.side_effect = redis_exceptions.ConnectionError("reset")
        self.assertIsNone(self.queue.dequeue(timeout=1))
        self.assertEqual(self.from_url.call_count, 2)


if __name__ == "__main__":
    unittest.main()
