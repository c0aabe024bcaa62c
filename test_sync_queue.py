import unittest

from local_store import SqliteBackend, connect, iso_now
from sync_actions import UpdateStock
from sync_queue import WriteQueue


class WriteQueueTest(unittest.TestCase):
    def setUp(self):
        self.store = SqliteBackend(connect(":memory:"))
        self.queue = WriteQueue(self.store, max_retries=3)

    def tearDown(self):
        self.store.close()

    def _enqueue(self, n):
        return [self.queue.enqueue(UpdateStock(item_id=f"item-{i}", new_stock=i)) for i in range(n)]

    def test_enqueue_is_durable_and_counted(self):
        self._enqueue(2)
        self.assertEqual(self.queue.count(), 2)
        entries = self.queue.entries()
        self.assertEqual([e.action().item_id for e in entries], ["item-0", "item-1"])
        self.assertTrue(all(e.retries == 0 for e in entries))

    def test_drain_applies_fifo_and_removes_confirmed(self):
        self._enqueue(3)
        seen = []
        result = self.queue.drain(lambda e: seen.append(e.action().item_id))
        self.assertEqual(seen, ["item-0", "item-1", "item-2"])
        self.assertEqual(result.succeeded, 3)
        self.assertEqual(result.failed, 0)
        self.assertEqual(self.queue.count(), 0)

    def test_failure_keeps_entry_and_records_error(self):
        self._enqueue(1)

        def boom(entry):
            raise RuntimeError("remote said no")

        result = self.queue.drain(boom)
        self.assertEqual((result.succeeded, result.failed, result.dropped), (0, 1, 0))
        row = self.store.conn.execute("SELECT retries, last_error FROM sync_queue").fetchone()
        self.assertEqual(row["retries"], 1)
        self.assertEqual(row["last_error"], "remote said no")

    def test_entry_dropped_on_third_failure_and_never_retried_again(self):
        self._enqueue(1)
        attempts = []

        def boom(entry):
            attempts.append(entry.entry_id)
            raise RuntimeError("still down")

        for _ in range(3):
            result = self.queue.drain(boom)
        self.assertEqual(result.dropped, 1)
        self.assertEqual(self.queue.count(), 0)
        self.assertEqual(self.queue.failure_count(), 1)
        self.queue.drain(boom)
        self.assertEqual(len(attempts), 3)
        failure = self.queue.failures()[0]
        self.assertEqual(failure["action"], "UPDATE_STOCK")
        self.assertEqual(failure["retries"], 3)

    def test_failure_does_not_block_later_entries(self):
        self._enqueue(3)

        def fail_first(entry):
            if entry.action().item_id == "item-0":
                raise RuntimeError("bad")

        result = self.queue.drain(fail_first)
        self.assertEqual((result.succeeded, result.failed), (2, 1))
        self.assertEqual([e.action().item_id for e in self.queue.entries()], ["item-0"])

    def test_entries_enqueued_during_drain_wait_for_next_drain(self):
        self._enqueue(1)
        seen = []

        def apply_and_enqueue(entry):
            seen.append(entry.action().item_id)
            self.queue.enqueue(UpdateStock(item_id="late", new_stock=1))

        self.queue.drain(apply_and_enqueue)
        self.assertEqual(seen, ["item-0"])
        self.assertEqual(self.queue.count(), 1)

    def test_concurrent_drain_is_skipped(self):
        self._enqueue(1)
        inner = []

        def reenter(entry):
            inner.append(self.queue.drain(lambda e: None))

        result = self.queue.drain(reenter)
        self.assertEqual(result.succeeded, 1)
        self.assertTrue(inner[0].skipped)
        self.assertFalse(self.queue.is_draining())

    def test_undecodable_entry_counts_as_failure(self):
        self.store.conn.execute(
            "INSERT INTO sync_queue (entry_id, action, payload_json, created_utc, retries) VALUES (?,?,?,?,0)",
            ("bad-1", "TELEPORT_STOCK", "{}", iso_now()),
        )
        self._enqueue(1)
        applied = []
        result = self.queue.drain(lambda e: applied.append(e.action()))
        self.assertEqual((result.succeeded, result.failed), (1, 1))
        self.assertEqual(len(applied), 1)

    def test_batch_limit_bounds_one_drain(self):
        queue = WriteQueue(self.store, max_retries=3, batch_limit=2)
        self._enqueue(3)
        result = queue.drain(lambda e: None)
        self.assertEqual(result.succeeded, 2)
        self.assertEqual(queue.count(), 1)

    def test_requeue_and_clear_failures(self):
        self._enqueue(2)

        def boom(entry):
            raise RuntimeError("down")

        for _ in range(3):
            self.queue.drain(boom)
        self.assertEqual(self.queue.failure_count(), 2)
        failure_id = self.queue.failures()[0]["id"]
        self.assertIsNotNone(self.queue.requeue_failure(failure_id))
        self.assertIsNone(self.queue.requeue_failure(failure_id))
        self.assertEqual(self.queue.count(), 1)
        self.assertEqual(self.queue.entries()[0].retries, 0)
        self.assertEqual(self.queue.clear_failures(), 1)
        self.assertEqual(self.queue.failure_count(), 0)

    def test_drain_result_dict(self):
        result = self.queue.drain(lambda e: None)
        self.assertEqual(result.as_dict(), {"success": 0, "failed": 0, "dropped": 0, "skipped": False})


if __name__ == "__main__":
    unittest.main()
