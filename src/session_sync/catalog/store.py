from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

from session_sync.store.message_store import InstanceMessageStore
from session_sync.store.models import RevertMarker, SessionRecord


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


class SessionCatalog:
    """Persisted listing of known instances and their sessions.

    Read on startup to seed an instance store before any event has arrived.
    Message content is never persisted here; it is always reloaded from the
    backend.
    """

    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._initialize_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
        except Exception:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()

    def save_instance(self, instance_id: str, base_url: str, proxy_path: str = "") -> None:
        now = utc_now()
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO instances (id, base_url, proxy_path, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    base_url = excluded.base_url,
                    proxy_path = excluded.proxy_path,
                    updated_at = excluded.updated_at
                """,
                (instance_id, base_url, proxy_path, now, now),
            )

    def list_instances(self) -> list[dict]:
        rows = self._conn.execute(
            """
            SELECT id, base_url, proxy_path, created_at, updated_at
            FROM instances
            ORDER BY updated_at DESC, created_at DESC
            """
        ).fetchall()
        return [dict(row) for row in rows]

    def remove_instance(self, instance_id: str) -> bool:
        with self.transaction():
            cursor = self._conn.execute("DELETE FROM instances WHERE id = ?", (instance_id,))
        return cursor.rowcount > 0

    def save_sessions(self, instance_id: str, sessions: Iterable[SessionRecord]) -> int:
        """Replace the stored listing for an instance. Returns the number of rows written."""
        rows = [
            (
                instance_id,
                session.id,
                session.title,
                session.parent_id,
                session.created_at,
                session.updated_at,
                json.dumps(session.time, ensure_ascii=True),
                json.dumps(self._revert_to_json(session.revert), ensure_ascii=True),
                session.agent,
                session.provider_id,
                session.model_id,
            )
            for session in sessions
        ]
        with self.transaction():
            self._conn.execute("DELETE FROM sessions WHERE instance_id = ?", (instance_id,))
            self._conn.executemany(
                """
                INSERT INTO sessions (
                    instance_id, id, title, parent_id, created_at, updated_at,
                    time_json, revert_json, agent, provider_id, model_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        logger.bind(instance_id=instance_id).debug(f"Catalog saved {len(rows)} session(s)")
        return len(rows)

    def load_sessions(self, instance_id: str) -> list[dict]:
        rows = self._conn.execute(
            """
            SELECT id, title, parent_id, created_at, updated_at, time_json, revert_json,
                   agent, provider_id, model_id
            FROM sessions
            WHERE instance_id = ?
            ORDER BY updated_at DESC, created_at DESC
            """,
            (instance_id,),
        ).fetchall()
        results: list[dict] = []
        for row in rows:
            session = dict(row)
            session["time"] = self._parse_json(session.pop("time_json"), {})
            session["revert"] = self._parse_json(session.pop("revert_json"), None)
            results.append(session)
        return results

    def seed_store(self, store: InstanceMessageStore) -> int:
        """Create a store session for every persisted one. Returns the number seeded."""
        sessions = self.load_sessions(store.instance_id)
        with store.emitter.batch():
            for session in sessions:
                store.upsert_session(
                    session["id"],
                    title=session["title"],
                    parent_id=session["parent_id"],
                    revert=RevertMarker.from_wire(session["revert"]),
                    time=session["time"],
                    created_at=session["created_at"],
                    agent=session["agent"] or None,
                    provider_id=session["provider_id"] or None,
                    model_id=session["model_id"] or None,
                )
        return len(sessions)

    @staticmethod
    def _revert_to_json(revert: RevertMarker | None) -> dict[str, Any] | None:
        if revert is None:
            return None
        return {
            "messageID": revert.message_id,
            "partID": revert.part_id,
            "snapshot": revert.snapshot,
            "diff": revert.diff,
        }

    @staticmethod
    def _parse_json(raw: str | None, default: Any) -> Any:
        if not raw:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return default

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS instances (
                id TEXT PRIMARY KEY,
                base_url TEXT NOT NULL,
                proxy_path TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                instance_id TEXT NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
                id TEXT NOT NULL,
                title TEXT NULL,
                parent_id TEXT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                time_json TEXT NOT NULL DEFAULT '{}',
                revert_json TEXT NOT NULL DEFAULT 'null',
                agent TEXT NOT NULL DEFAULT '',
                provider_id TEXT NOT NULL DEFAULT '',
                model_id TEXT NOT NULL DEFAULT '',
                PRIMARY KEY (instance_id, id)
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_instance_updated
                ON sessions(instance_id, updated_at);
            """
        )
        self._conn.commit()
