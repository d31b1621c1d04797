import asyncio
import unittest
from unittest.mock import AsyncMock

from session_sync.errors import ApiError, InstanceNotReadyError
from session_sync.permission_manager import PermissionManager
from tests.base import SESSION_ID, make_store, permission, tool_part


class PermissionManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = make_store()
        self.client = AsyncMock()
        self.manager = PermissionManager(self.store, self.client)

    def test_fairness_in_arrival_order(self) -> None:
        for pid in ("p3", "p1", "p2"):
            self.manager.enqueue(permission(pid))

        answered = []
        while self.manager.active is not None:
            active = self.manager.active
            asyncio.run(self.manager.respond(active.session_id, active.id, "once"))
            answered.append(active.id)

        self.assertEqual(["p3", "p1", "p2"], answered)
        self.assertEqual(3, self.client.respond_permission.await_count)

    def test_enqueue_is_idempotent(self) -> None:
        self.assertTrue(self.manager.enqueue(permission("p1")))
        self.assertFalse(self.manager.enqueue(permission("p1")))
        self.assertEqual(1, len(self.manager.queued()))
        self.assertEqual(1, len(self.manager.pending_for_session(SESSION_ID)))

    def test_successful_reply_removes_entry(self) -> None:
        self.manager.enqueue(permission("p1"))

        self.assertTrue(asyncio.run(self.manager.respond(SESSION_ID, "p1", "always")))

        self.client.respond_permission.assert_awaited_once_with(SESSION_ID, "p1", "always")
        self.assertEqual([], self.manager.queued())
        self.assertFalse(self.store.get_session(SESSION_ID).pending_permission)

    def test_failed_reply_keeps_entry_queued(self) -> None:
        self.manager.enqueue(permission("p1"))
        self.client.respond_permission.side_effect = ApiError("POST", "/x", 500, "boom")

        with self.assertRaises(ApiError):
            asyncio.run(self.manager.respond(SESSION_ID, "p1", "reject"))

        self.assertEqual("p1", self.manager.active.id)
        self.assertFalse(self.manager.is_in_flight("p1"))

    def test_concurrent_reply_is_sent_once(self) -> None:
        self.manager.enqueue(permission("p1"))
        release = asyncio.Event()

        async def slow_reply(*args):
            await release.wait()

        self.client.respond_permission.side_effect = slow_reply

        async def scenario():
            first = asyncio.create_task(self.manager.respond(SESSION_ID, "p1", "once"))
            await asyncio.sleep(0)
            in_flight = self.manager.is_in_flight("p1")
            second = await self.manager.respond(SESSION_ID, "p1", "once")
            release.set()
            return in_flight, await first, second

        in_flight, first, second = asyncio.run(scenario())

        self.assertTrue(in_flight)
        self.assertTrue(first)
        self.assertFalse(second)
        self.assertEqual(1, self.client.respond_permission.await_count)

    def test_invalid_response_and_missing_client(self) -> None:
        with self.assertRaises(ValueError):
            asyncio.run(self.manager.respond(SESSION_ID, "p1", "sometimes"))

        offline = PermissionManager(self.store)
        with self.assertRaises(InstanceNotReadyError):
            asyncio.run(offline.respond(SESSION_ID, "p1", "once"))

    def test_refresh_session_attaches_state(self) -> None:
        self.manager.enqueue(permission("p1", message_id="a1", call_id="call-1"))
        self.store.upsert_message("a1", SESSION_ID, role="assistant", status="streaming")
        self.store.apply_part_update("a1", tool_part("t1", "a1", "call-1"))
        self.store.set_part_permission("a1", "t1", None)

        self.assertEqual(1, self.manager.refresh_session(SESSION_ID))
        self.assertEqual(0, self.manager.refresh_session(SESSION_ID))
        self.assertEqual("p1", self.store.get_message("a1").parts["t1"].permission.permission_id)

    def test_clear_resets_everything(self) -> None:
        self.manager.enqueue(permission("p1"))
        self.manager.enqueue(permission("p2", "ses_other"))
        self.manager.clear()

        self.assertIsNone(self.manager.active)
        self.assertEqual([], self.manager.queued())
        self.assertFalse(self.store.get_session(SESSION_ID).pending_permission)


if __name__ == "__main__":
    unittest.main()
