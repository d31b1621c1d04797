import sqlite3
import unittest

from session_sync.catalog import SessionCatalog
from session_sync.store.models import RevertMarker
from tests.base import INSTANCE_ID, FakeClock, make_store


class SessionCatalogTests(unittest.TestCase):
    def setUp(self) -> None:
        self.catalog = SessionCatalog(":memory:")
        self.catalog.save_instance(INSTANCE_ID, "http://localhost:4096", "/proxy")

    def tearDown(self) -> None:
        self.catalog.close()

    def _populated_store(self):
        store = make_store(session_id=None)
        store.upsert_session(
            "ses_a",
            title="Alpha",
            time={"created": 100, "updated": 300},
            agent="build",
            provider_id="anthropic",
            model_id="claude",
        )
        store.upsert_session(
            "ses_b",
            title="Beta",
            parent_id="ses_a",
            revert=RevertMarker(message_id="m9", part_id="p1"),
            time={"created": 150, "updated": 200},
        )
        store.upsert_message("m1", "ses_a", role="user", status="complete")
        return store

    def test_instances_are_upserted(self) -> None:
        self.catalog.save_instance(INSTANCE_ID, "http://other:1", "")
        instances = self.catalog.list_instances()
        self.assertEqual(1, len(instances))
        self.assertEqual(("http://other:1", ""), (instances[0]["base_url"], instances[0]["proxy_path"]))

    def test_save_and_load_sessions(self) -> None:
        written = self.catalog.save_sessions(INSTANCE_ID, self._populated_store().list_sessions())
        self.assertEqual(2, written)

        loaded = self.catalog.load_sessions(INSTANCE_ID)

        self.assertEqual(["ses_a", "ses_b"], [row["id"] for row in loaded])
        alpha, beta = loaded
        self.assertEqual(("Alpha", "build", "anthropic", "claude"), (alpha["title"], alpha["agent"], alpha["provider_id"], alpha["model_id"]))
        self.assertIsNone(alpha["revert"])
        self.assertEqual({"created": 100, "updated": 300}, alpha["time"])
        self.assertEqual("ses_a", beta["parent_id"])
        self.assertEqual("m9", beta["revert"]["messageID"])

    def test_save_replaces_previous_listing(self) -> None:
        store = self._populated_store()
        self.catalog.save_sessions(INSTANCE_ID, store.list_sessions())
        store.clear_session("ses_b")
        self.catalog.save_sessions(INSTANCE_ID, store.list_sessions())
        self.assertEqual(["ses_a"], [row["id"] for row in self.catalog.load_sessions(INSTANCE_ID)])

    def test_seed_store_restores_sessions_without_messages(self) -> None:
        self.catalog.save_sessions(INSTANCE_ID, self._populated_store().list_sessions())
        fresh = make_store(FakeClock(), session_id=None)

        seeded = self.catalog.seed_store(fresh)

        self.assertEqual(2, seeded)
        alpha = fresh.get_session("ses_a")
        self.assertEqual(("Alpha", 100, 300), (alpha.title, alpha.created_at, alpha.updated_at))
        self.assertEqual(("build", "anthropic", "claude"), (alpha.agent, alpha.provider_id, alpha.model_id))
        self.assertEqual([], alpha.message_ids)
        beta = fresh.get_session("ses_b")
        self.assertEqual(RevertMarker(message_id="m9", part_id="p1"), beta.revert)
        self.assertEqual("ses_a", beta.parent_id)

    def test_sessions_require_a_known_instance(self) -> None:
        store = self._populated_store()
        with self.assertRaises(sqlite3.IntegrityError):
            self.catalog.save_sessions("unknown", store.list_sessions())
        self.assertEqual([], self.catalog.load_sessions("unknown"))

    def test_removing_an_instance_removes_its_sessions(self) -> None:
        self.catalog.save_sessions(INSTANCE_ID, self._populated_store().list_sessions())
        self.assertTrue(self.catalog.remove_instance(INSTANCE_ID))
        self.assertEqual([], self.catalog.load_sessions(INSTANCE_ID))
        self.assertFalse(self.catalog.remove_instance(INSTANCE_ID))


if __name__ == "__main__":
    unittest.main()
