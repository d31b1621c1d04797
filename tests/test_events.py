import json
import unittest

from session_sync.errors import MalformedEventError
from session_sync.events import (
    MessagePartRemoved,
    MessagePartUpdated,
    MessageRemoved,
    MessageUpdated,
    PermissionReplied,
    PermissionUpdated,
    SessionCompacted,
    SessionError,
    SessionIdle,
    SessionUpdated,
    ToastShown,
    UnknownEvent,
    decode_event,
    parse_event_data,
)


def frame(event_type: str, **properties) -> dict:
    return {"type": event_type, "properties": properties}


class DecodeEventTests(unittest.TestCase):
    def test_message_events(self) -> None:
        event = decode_event(frame("message.updated", info={"id": "m1", "sessionID": "s1", "role": "user"}))
        self.assertIsInstance(event, MessageUpdated)
        self.assertEqual(("s1", "m1", "user"), (event.session_id, event.message_id, event.role))

        event = decode_event(
            frame("message.part.updated", part={"id": "p1", "sessionID": "s1", "messageID": "m1", "type": "text"})
        )
        self.assertIsInstance(event, MessagePartUpdated)
        self.assertIsNone(event.role)
        self.assertIsNone(event.message)

        event = decode_event(
            frame(
                "message.part.updated",
                part={"id": "p1", "sessionID": "s1", "messageID": "m1"},
                message={"role": "user"},
            )
        )
        self.assertEqual("user", event.role)

    def test_removal_events(self) -> None:
        self.assertEqual(
            MessageRemoved(session_id="s1", message_id="m1"),
            decode_event(frame("message.removed", sessionID="s1", messageID="m1")),
        )
        self.assertEqual(
            MessagePartRemoved(session_id="s1", message_id="m1", part_id="p1"),
            decode_event(frame("message.part.removed", sessionID="s1", messageID="m1", partID="p1")),
        )

    def test_session_events(self) -> None:
        self.assertIsInstance(decode_event(frame("session.updated", info={"id": "s1"})), SessionUpdated)
        self.assertEqual(SessionCompacted("s1"), decode_event(frame("session.compacted", sessionID="s1")))
        self.assertEqual(SessionIdle("s1"), decode_event(frame("session.idle", sessionID="s1")))

    def test_session_error_message_extraction(self) -> None:
        event = decode_event(frame("session.error", sessionID="s1", error={"data": {"message": "quota exceeded"}}))
        self.assertIsInstance(event, SessionError)
        self.assertEqual("quota exceeded", event.message)
        self.assertEqual("plain", SessionError(error={"message": "plain"}).message)
        self.assertEqual("Unknown error", decode_event(frame("session.error")).message)

    def test_permission_events(self) -> None:
        event = decode_event(frame("permission.updated", id="perm1", sessionID="s1", type="bash"))
        self.assertIsInstance(event, PermissionUpdated)
        self.assertEqual("perm1", event.permission_id)
        self.assertEqual("bash", event.permission["type"])

        replied = decode_event(frame("permission.replied", permissionID="perm1", sessionID="s1", response="once"))
        self.assertEqual(PermissionReplied("perm1", "s1", "once"), replied)

    def test_toast_variant_is_validated(self) -> None:
        toast = decode_event(frame("tui.toast.show", message="hi", variant="loud", duration=3000))
        self.assertIsInstance(toast, ToastShown)
        self.assertEqual("info", toast.variant)
        self.assertEqual(3000.0, toast.duration)
        self.assertEqual("warning", decode_event(frame("tui.toast.show", message="x", variant="warning")).variant)

        with self.assertRaises(MalformedEventError):
            decode_event(frame("tui.toast.show", message="   "))

    def test_unknown_type_is_preserved(self) -> None:
        event = decode_event(frame("lsp.updated", foo=1))
        self.assertEqual(UnknownEvent(type="lsp.updated", properties={"foo": 1}), event)
        self.assertEqual(UnknownEvent(type="server.connected"), decode_event({"type": "server.connected"}))

    def test_malformed_frames_raise(self) -> None:
        cases = [
            [],
            {"properties": {}},
            {"type": "message.updated", "properties": []},
            frame("message.updated", info={"id": "m1"}),
            frame("message.part.updated", part={"id": "p1", "sessionID": "s1"}),
            frame("session.updated"),
            frame("session.idle"),
            frame("permission.updated", id="perm1"),
            frame("permission.replied", sessionID="s1"),
        ]
        for case in cases:
            with self.subTest(case=case):
                with self.assertRaises(MalformedEventError):
                    decode_event(case)

    def test_parse_event_data(self) -> None:
        event = parse_event_data(json.dumps(frame("session.idle", sessionID="s1")))
        self.assertEqual(SessionIdle("s1"), event)
        with self.assertRaises(MalformedEventError):
            parse_event_data("{not json")


if __name__ == "__main__":
    unittest.main()
