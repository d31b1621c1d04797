import unittest

from session_sync.store.models import SessionUsageState
from session_sync.store.usage import apply_usage, extract_usage_entry, rebuild_usage_state, remove_usage
from tests.base import assistant_info, user_info


class ExtractUsageEntryTests(unittest.TestCase):
    def test_ignores_messages_without_tokens(self) -> None:
        self.assertIsNone(extract_usage_entry(None))
        self.assertIsNone(extract_usage_entry(user_info("u1", tokens={"input": 5})))
        self.assertIsNone(extract_usage_entry(assistant_info("a1")))
        self.assertIsNone(extract_usage_entry(assistant_info("a1", tokens={"input": 0, "output": 0})))

    def test_combined_tokens_cover_context(self) -> None:
        entry = extract_usage_entry(
            assistant_info(
                "a1",
                tokens={"input": 100, "output": 20, "reasoning": 5, "cache": {"read": 300, "write": 10}},
                cost=0.25,
            )
        )
        self.assertEqual(435, entry.combined_tokens)
        self.assertEqual(300, entry.cache_read_tokens)
        self.assertEqual(2000, entry.timestamp)
        self.assertTrue(entry.has_context_usage)
        self.assertAlmostEqual(0.25, entry.cost)

    def test_summary_messages_count_only_output(self) -> None:
        entry = extract_usage_entry(assistant_info("a1", tokens={"input": 900, "output": 40}, summary=True))
        self.assertEqual(40, entry.combined_tokens)


class AggregateTests(unittest.TestCase):
    def test_apply_and_remove_keep_totals_consistent(self) -> None:
        state = SessionUsageState()
        first = extract_usage_entry(assistant_info("a1", tokens={"input": 10, "output": 1}, cost=0.1, created=1))
        second = extract_usage_entry(assistant_info("a2", tokens={"input": 20, "output": 2}, cost=0.2, created=2))
        apply_usage(state, first)
        apply_usage(state, second)
        self.assertEqual(30, state.total_input_tokens)
        self.assertEqual("a2", state.latest_message_id)
        self.assertEqual(22, state.actual_usage_tokens)

        removed = remove_usage(state, "a2")
        self.assertEqual(second, removed)
        self.assertEqual(10, state.total_input_tokens)
        self.assertAlmostEqual(0.1, state.total_cost)
        self.assertEqual("a1", state.latest_message_id)
        self.assertEqual(11, state.actual_usage_tokens)

        self.assertIsNone(remove_usage(state, "a2"))
        self.assertIsNone(remove_usage(state, None))

    def test_rebuild_from_infos(self) -> None:
        state = rebuild_usage_state(
            [
                user_info("u1"),
                assistant_info("a1", tokens={"input": 10, "output": 1}, created=1),
                assistant_info("a2", tokens={"input": 20, "output": 2}, created=2),
            ]
        )
        self.assertEqual(["a1", "a2"], sorted(state.entries))
        self.assertEqual(3, state.total_output_tokens)
        self.assertEqual("a2", state.latest_message_id)


if __name__ == "__main__":
    unittest.main()
