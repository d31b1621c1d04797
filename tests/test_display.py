import unittest

from session_sync.display import display_parts, message_text, part_text
from tests.base import SESSION_ID, make_store, text_part, tool_part


class DisplayPartsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = make_store()
        self.record = self.store.upsert_message(
            "a1",
            SESSION_ID,
            role="assistant",
            status="complete",
            parts=[
                text_part("p1", "a1", "Answer"),
                text_part("p2", "a1", "context", synthetic=True),
                text_part("p3", "a1", "   "),
                tool_part("p4", "a1", "call-1", status="completed"),
                {"id": "p5", "type": "reasoning", "text": "thinking it over"},
                {"id": "p6", "type": "step-start"},
                text_part("p7", "a1", {"value": "Structured"}),
            ],
        )

    def test_groups_parts_by_kind(self) -> None:
        parts = display_parts(self.record)

        self.assertEqual(["p1", "p7"], [part.id for part in parts.text])
        self.assertEqual(["p4"], [part.id for part in parts.tool])
        self.assertEqual([], parts.reasoning)
        self.assertEqual(self.record.revision, parts.revision)

    def test_reasoning_is_opt_in(self) -> None:
        parts = display_parts(self.record, show_reasoning=True)

        self.assertEqual(["p5"], [part.id for part in parts.reasoning])
        self.assertEqual(["p1", "p7", "p5"], [part.id for part in parts.combined])

    def test_reasoning_preference_does_not_touch_revisions(self) -> None:
        before = self.store.snapshot()
        display_parts(self.record, show_reasoning=True)
        display_parts(self.record, show_reasoning=False)
        self.assertEqual(before, self.store.snapshot())

    def test_text_helpers(self) -> None:
        self.assertEqual("Structured", part_text(self.record.parts["p7"]))
        self.assertEqual("", part_text(self.record.parts["p4"]))
        self.assertEqual("Answer\ncontext\n   \nStructured", message_text(self.record))


if __name__ == "__main__":
    unittest.main()
