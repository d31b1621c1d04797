import re
import unittest

from session_sync.ids import ID_LENGTH, create_id


class CreateIdTests(unittest.TestCase):
    def test_format(self) -> None:
        value = create_id("msg")
        self.assertRegex(value, re.compile(rf"^msg_[0-9a-f]{{12}}[0-9A-Za-z]{{{ID_LENGTH - 12}}}$"))

    def test_ids_sort_by_creation(self) -> None:
        now = 1_700_000_000_000
        same_ms = [create_id("part", now_ms=now) for _ in range(5)]
        later = create_id("part", now_ms=now + 1)

        ids = [*same_ms, later]
        self.assertEqual(ids, sorted(ids))
        self.assertEqual(len(ids), len(set(ids)))


if __name__ == "__main__":
    unittest.main()
