from __future__ import annotations

from typing import Any

from session_sync.store.models import PermissionEntry, PermissionLookup

GLOBAL_KEY = "__global__"


class PermissionQueue:
    """Outstanding permission requests for one instance.

    Arrival order is tracked by an explicit sequence number assigned on first
    enqueue. At most one entry is active; it stays active until removed, and the
    oldest remaining entry takes over. Per-session counts back the session-level
    "has pending permission" flag.
    """

    def __init__(self) -> None:
        self._entries: dict[str, PermissionEntry] = {}
        self._by_message: dict[str, dict[str, str]] = {}
        self._session_counts: dict[str, int] = {}
        self._active_id: str | None = None
        self._next_sequence = 0

    @property
    def active(self) -> PermissionEntry | None:
        if self._active_id is None:
            return None
        return self._entries.get(self._active_id)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, permission_id: object) -> bool:
        return permission_id in self._entries

    def get(self, permission_id: str) -> PermissionEntry | None:
        return self._entries.get(permission_id)

    def ordered(self) -> list[PermissionEntry]:
        return sorted(self._entries.values(), key=lambda entry: entry.sequence)

    def entries_for_session(self, session_id: str) -> list[PermissionEntry]:
        return [entry for entry in self.ordered() if entry.session_id == session_id]

    def pending_count(self, session_id: str) -> int:
        return self._session_counts.get(session_id, 0)

    def session_ids(self) -> list[str]:
        return list(self._session_counts)

    def enqueue(self, permission: dict[str, Any]) -> tuple[PermissionEntry, bool]:
        """Insert or refresh a permission. Returns ``(entry, inserted)``."""
        permission_id = permission["id"]
        existing = self._entries.get(permission_id)
        if existing is not None:
            if existing.permission == permission:
                return existing, False
            self._unindex(existing)
            entry = PermissionEntry(permission=dict(permission), sequence=existing.sequence)
            self._entries[permission_id] = entry
            self._index(entry)
            return entry, False

        entry = PermissionEntry(permission=dict(permission), sequence=self._next_sequence)
        self._next_sequence += 1
        self._entries[permission_id] = entry
        self._index(entry)
        self._session_counts[entry.session_id] = self._session_counts.get(entry.session_id, 0) + 1
        if self._active_id is None:
            self._active_id = permission_id
        return entry, True

    def remove(self, permission_id: str) -> PermissionEntry | None:
        entry = self._entries.pop(permission_id, None)
        if entry is None:
            return None
        self._unindex(entry)
        remaining = self._session_counts.get(entry.session_id, 0) - 1
        if remaining > 0:
            self._session_counts[entry.session_id] = remaining
        else:
            self._session_counts.pop(entry.session_id, None)
        if self._active_id == permission_id:
            ordered = self.ordered()
            self._active_id = ordered[0].id if ordered else None
        return entry

    def lookup(self, message_id: str | None, part_id: str | None = None) -> PermissionLookup | None:
        part_map = self._by_message.get(message_id or GLOBAL_KEY)
        if not part_map:
            return None
        permission_id = part_map.get(part_id or GLOBAL_KEY)
        if permission_id is None:
            return None
        entry = self._entries.get(permission_id)
        if entry is None:
            return None
        return PermissionLookup(entry=entry, active=permission_id == self._active_id)

    def rekey_message(self, old_id: str, new_id: str) -> bool:
        part_map = self._by_message.pop(old_id, None)
        if part_map is None:
            return False
        merged = self._by_message.setdefault(new_id, {})
        merged.update(part_map)
        for permission_id in part_map.values():
            entry = self._entries.get(permission_id)
            if entry is None:
                continue
            updated = dict(entry.permission)
            updated["messageID"] = new_id
            self._entries[permission_id] = PermissionEntry(permission=updated, sequence=entry.sequence)
        return True

    def remove_session(self, session_id: str) -> list[PermissionEntry]:
        removed = [self.remove(entry.id) for entry in self.entries_for_session(session_id)]
        return [entry for entry in removed if entry is not None]

    def clear(self) -> list[str]:
        """Drop everything. Returns the session ids that had pending permissions."""
        sessions = list(self._session_counts)
        self._entries.clear()
        self._by_message.clear()
        self._session_counts.clear()
        self._active_id = None
        return sessions

    def _index(self, entry: PermissionEntry) -> None:
        message_key = entry.message_id or GLOBAL_KEY
        part_key = entry.part_id or GLOBAL_KEY
        self._by_message.setdefault(message_key, {})[part_key] = entry.id

    def _unindex(self, entry: PermissionEntry) -> None:
        message_key = entry.message_id or GLOBAL_KEY
        part_map = self._by_message.get(message_key)
        if not part_map:
            return
        for key, permission_id in list(part_map.items()):
            if permission_id == entry.id:
                del part_map[key]
        if not part_map:
            del self._by_message[message_key]
