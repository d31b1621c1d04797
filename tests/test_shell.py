import asyncio
import unittest
from unittest.mock import AsyncMock

from session_sync.errors import SessionSyncError
from session_sync.notifier import RecordingNotifier
from session_sync.registry import InstanceRegistry
from session_sync.shell import SessionShell
from session_sync.transport import EventTransport
from tests.base import FakeClock, assistant_info, permission, text_part, tool_part


class SessionShellTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = AsyncMock()
        self.client.list_sessions.return_value = [
            {"id": "ses_old", "title": "Old", "time": {"created": 1, "updated": 5}},
            {"id": "ses_new", "title": "New", "time": {"created": 2, "updated": 9}},
        ]
        self.client.list_messages.return_value = []
        self.notifier = RecordingNotifier()
        self.registry = InstanceRegistry(
            EventTransport(),
            notifier=self.notifier,
            client_factory=lambda base_url, proxy_path: self.client,
            clock=FakeClock(),
        )
        self.instance = self.registry.create("inst-1", "http://host", connect=False)
        self.output: list[str] = []
        self.shell = SessionShell(self.registry, self.instance, self.notifier, printer=self.output.append)
        self.addCleanup(self.shell.close)

    def _run(self, line: str) -> None:
        asyncio.run(self.shell.handle(line))

    def test_start_activates_most_recent_session(self) -> None:
        self.assertEqual("ses_new", asyncio.run(self.shell.start()))
        self.assertEqual("ses_new", self.shell.active_session_id)
        self.client.list_messages.assert_awaited_once_with("ses_new")

    def test_start_creates_a_session_when_none_exist(self) -> None:
        self.client.list_sessions.return_value = []
        self.client.create_session.return_value = {"id": "ses_created", "title": "Fresh"}

        self.assertEqual("ses_created", asyncio.run(self.shell.start()))

    def test_plain_lines_are_sent_to_the_active_session(self) -> None:
        asyncio.run(self.shell.start())
        self._run("  write a test  ")

        session_id, body = self.client.send_prompt.await_args.args
        self.assertEqual("ses_new", session_id)
        self.assertEqual("write a test", body["parts"][0]["text"])

    def test_commands_need_an_active_session(self) -> None:
        with self.assertRaises(SessionSyncError):
            self._run("hello")
        with self.assertRaises(SessionSyncError):
            self._run("/abort")

    def test_finished_assistant_messages_are_printed_once(self) -> None:
        asyncio.run(self.shell.start())
        store = self.instance.store
        parts = [tool_part("t1", "a1", "call-1", "ses_new", status="completed"), text_part("p1", "a1", "Done.", "ses_new")]

        store.upsert_message("a1", "ses_new", role="assistant", status="streaming", parts=parts)
        self.assertEqual([], self.output)

        store.set_message_status("a1", "complete")
        store.upsert_message("a1", "ses_new", role="assistant", status="complete", parts=parts)

        self.assertEqual(["  [tool] bash (completed)", "assistant> Done."], self.output)

    def test_messages_from_other_sessions_are_not_printed(self) -> None:
        asyncio.run(self.shell.start())
        self.instance.store.upsert_message(
            "a2", "ses_old", role="assistant", status="complete", parts=[text_part("p1", "a2", "x", "ses_old")]
        )
        self.assertEqual([], self.output)

    def test_loaded_history_is_not_reprinted(self) -> None:
        self.client.list_messages.return_value = [
            {"info": assistant_info("a1", "ses_new", completed=3000), "parts": [text_part("p1", "a1", "Old answer", "ses_new")]}
        ]
        asyncio.run(self.shell.start())
        self.assertEqual([], self.output)

    def test_session_listing_and_switching(self) -> None:
        asyncio.run(self.shell.start())

        self._run("/session list")
        self.assertEqual("sync> Sessions:", self.output[0])
        self.assertTrue(self.output[1].startswith("sync> * New [ses_new]"))
        self.assertTrue(self.output[2].startswith("sync>   Old [ses_old]"))

        self.output.clear()
        self._run("/session use ses_missing")
        self._run("/session use ses_old")
        self.assertEqual(["sync> Session not found: ses_missing", "sync> Active session: ses_old"], self.output)
        self.assertEqual("ses_old", self.shell.active_session_id)

    def test_fork_switches_to_the_new_session(self) -> None:
        asyncio.run(self.shell.start())
        self.client.fork_session.return_value = {"id": "ses_fork", "parentID": "ses_new"}

        self._run("/fork msg_1")

        self.client.fork_session.assert_awaited_once_with("ses_new", "msg_1")
        self.assertEqual("ses_fork", self.shell.active_session_id)
        self.assertEqual(["sync> Forked session ses_new -> ses_fork"], self.output)

    def test_delete_active_session(self) -> None:
        asyncio.run(self.shell.start())
        self._run("/session delete ses_new")
        self.assertIsNone(self.shell.active_session_id)
        self.assertIsNone(self.instance.store.get_session("ses_new"))

    def test_undo_with_empty_history(self) -> None:
        asyncio.run(self.shell.start())
        self._run("/undo")
        self.assertEqual(["sync> Nothing to undo."], self.output)

    def test_shell_command(self) -> None:
        asyncio.run(self.shell.start())
        self._run("!git status")
        self.client.run_shell.assert_awaited_once_with("ses_new", {"agent": "build", "command": "git status"})

    def test_permission_listing_and_reply(self) -> None:
        asyncio.run(self.shell.start())
        self.instance.permissions.enqueue(permission("perm1", "ses_new"))

        self._run("/permission")
        self._run("/permission maybe")
        self._run("/permission once")

        self.assertEqual(
            [
                "sync> Pending permissions:",
                "sync> * perm1 (Run command for perm1, session=ses_new)",
                "sync> Usage: /permission <once|always|reject> [permission_id]",
                "sync> Permission perm1: once",
            ],
            self.output,
        )
        self.client.respond_permission.assert_awaited_once_with("ses_new", "perm1", "once")
        self.assertEqual([], self.instance.permissions.queued())

    def test_status(self) -> None:
        self.client.list_messages.return_value = [
            {
                "info": assistant_info("a1", "ses_new", completed=3000, tokens={"input": 1200, "output": 30}, cost=0.5),
                "parts": [],
            }
        ]
        asyncio.run(self.shell.start())

        self._run("/status")

        self.assertEqual(
            [
                "sync> Instance: inst-1 (disconnected)",
                "sync> Session: ses_new",
                "sync> Messages: 1",
                "sync> Tokens: input=1,200 output=30 reasoning=0 cost=$0.5000",
            ],
            self.output,
        )

    def test_notifications_are_flushed(self) -> None:
        self.notifier.toast("inst-1", "Session compacted", variant="success", title="Done")
        self.notifier.alert("inst-1", "Error: boom", title="Session error")

        self.shell.flush_notifications()
        self.shell.flush_notifications()

        self.assertEqual(
            ["sync> [success] Done: Session compacted", "sync> [error] Session error: Error: boom"],
            self.output,
        )

    def test_unknown_command(self) -> None:
        self._run("/nope")
        self.assertEqual(["sync> Unknown local command: /nope"], self.output)


if __name__ == "__main__":
    unittest.main()
