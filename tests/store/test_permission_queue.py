import unittest

from session_sync.store.permissions import PermissionQueue
from tests.base import permission


class PermissionQueueTests(unittest.TestCase):
    def setUp(self) -> None:
        self.queue = PermissionQueue()

    def test_first_entry_becomes_active(self) -> None:
        entry, inserted = self.queue.enqueue(permission("p1"))
        self.assertTrue(inserted)
        self.assertEqual("p1", self.queue.active.id)
        self.assertEqual(entry, self.queue.active)

    def test_enqueue_is_idempotent(self) -> None:
        self.queue.enqueue(permission("p1"))
        _, inserted = self.queue.enqueue(permission("p1"))
        self.assertFalse(inserted)
        self.assertEqual(1, len(self.queue))
        self.assertEqual(1, self.queue.pending_count("ses_1"))

    def test_changed_payload_keeps_queue_position(self) -> None:
        self.queue.enqueue(permission("p1"))
        self.queue.enqueue(permission("p2"))
        updated = permission("p1")
        updated["title"] = "Retitled"

        _, inserted = self.queue.enqueue(updated)

        self.assertFalse(inserted)
        self.assertEqual(["p1", "p2"], [entry.id for entry in self.queue.ordered()])
        self.assertEqual("Retitled", self.queue.get("p1").permission["title"])

    def test_order_follows_arrival_not_id(self) -> None:
        self.queue.enqueue(permission("zeta"))
        self.queue.enqueue(permission("alpha"))
        self.queue.enqueue(permission("mid"))
        self.assertEqual(["zeta", "alpha", "mid"], [entry.id for entry in self.queue.ordered()])
        self.assertEqual("zeta", self.queue.active.id)

    def test_removal_hands_activity_to_oldest_remaining(self) -> None:
        for pid in ("p1", "p2", "p3"):
            self.queue.enqueue(permission(pid))

        self.queue.remove("p3")
        self.assertEqual("p1", self.queue.active.id)
        self.queue.remove("p1")
        self.assertEqual("p2", self.queue.active.id)
        self.queue.remove("p2")
        self.assertIsNone(self.queue.active)
        self.assertIsNone(self.queue.remove("p2"))

    def test_session_counts(self) -> None:
        self.queue.enqueue(permission("p1", "ses_a"))
        self.queue.enqueue(permission("p2", "ses_a"))
        self.queue.enqueue(permission("p3", "ses_b"))
        self.assertEqual(2, self.queue.pending_count("ses_a"))
        self.assertEqual(1, self.queue.pending_count("ses_b"))

        self.queue.remove("p1")
        self.queue.remove("p3")
        self.assertEqual(1, self.queue.pending_count("ses_a"))
        self.assertEqual(0, self.queue.pending_count("ses_b"))
        self.assertEqual(["ses_a"], self.queue.session_ids())

    def test_lookup_by_message_and_part(self) -> None:
        self.queue.enqueue(permission("p1", message_id="m1", call_id="c1"))
        self.queue.enqueue(permission("p2"))

        found = self.queue.lookup("m1", "c1")
        self.assertEqual("p1", found.entry.id)
        self.assertTrue(found.active)
        self.assertIsNone(self.queue.lookup("m1", "other"))
        self.assertEqual("p2", self.queue.lookup(None).entry.id)
        self.assertFalse(self.queue.lookup(None).active)

    def test_rekey_message_updates_index_and_payload(self) -> None:
        self.queue.enqueue(permission("p1", message_id="tmp", call_id="c1"))
        self.assertTrue(self.queue.rekey_message("tmp", "srv"))
        self.assertFalse(self.queue.rekey_message("tmp", "srv"))

        self.assertIsNone(self.queue.lookup("tmp", "c1"))
        self.assertEqual("p1", self.queue.lookup("srv", "c1").entry.id)
        self.assertEqual("srv", self.queue.get("p1").message_id)

    def test_remove_session_and_clear(self) -> None:
        self.queue.enqueue(permission("p1", "ses_a"))
        self.queue.enqueue(permission("p2", "ses_b"))
        removed = self.queue.remove_session("ses_a")
        self.assertEqual(["p1"], [entry.id for entry in removed])
        self.assertEqual("p2", self.queue.active.id)

        self.assertEqual(["ses_b"], self.queue.clear())
        self.assertEqual(0, len(self.queue))
        self.assertIsNone(self.queue.active)
        self.assertNotIn("p2", self.queue)


if __name__ == "__main__":
    unittest.main()
