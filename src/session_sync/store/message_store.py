from __future__ import annotations

import copy
import time
from collections.abc import Callable, Iterable
from typing import Any

from loguru import logger

from session_sync.normalizer import (
    ensure_part_id,
    info_timestamps,
    initialize_part_version,
    normalize_message,
    normalize_part,
    part_content_key,
    resolve_role,
    resolve_status,
)
from session_sync.store.changes import (
    PERMISSIONS_KEY,
    SESSIONS_KEY,
    ChangeEmitter,
    message_key,
    scroll_key,
    session_key,
    usage_key,
)
from session_sync.store.models import (
    STATUS_RANK,
    MessageRecord,
    PartRecord,
    PendingPartEntry,
    PermissionEntry,
    PermissionLookup,
    PermissionState,
    RevertMarker,
    ScrollSnapshot,
    SessionRecord,
    SessionUsageState,
)
from session_sync.store.permissions import PermissionQueue
from session_sync.store.usage import apply_usage, extract_usage_entry, rebuild_usage_state, remove_usage

_MISSING: Any = object()


def _now_ms() -> int:
    return int(time.time() * 1000)


class InstanceMessageStore:
    """Normalized state for one backend instance.

    Lookups never raise: unknown ids yield ``None`` or an empty list so callers
    can treat missing state as "not yet arrived". Every mutation that changes
    observable state publishes the affected keys through the change emitter.
    """

    def __init__(
        self,
        instance_id: str,
        *,
        emitter: ChangeEmitter | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self._instance_id = instance_id
        self._emitter = emitter or ChangeEmitter()
        self._clock = clock or _now_ms
        self._log = logger.bind(instance_id=instance_id)
        self._sessions: dict[str, SessionRecord] = {}
        self._messages: dict[str, MessageRecord] = {}
        self._message_infos: dict[str, dict[str, Any]] = {}
        self._pending_parts: dict[str, list[PendingPartEntry]] = {}
        self._permissions = PermissionQueue()
        self._usage: dict[str, SessionUsageState] = {}
        self._scroll: dict[str, ScrollSnapshot] = {}

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def emitter(self) -> ChangeEmitter:
        return self._emitter

    @property
    def permissions(self) -> PermissionQueue:
        return self._permissions

    def now(self) -> int:
        return self._clock()

    # -- sessions ---------------------------------------------------------

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get_session(self, session_id: str) -> SessionRecord | None:
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[SessionRecord]:
        return list(self._sessions.values())

    def get_session_message_ids(self, session_id: str) -> list[str]:
        session = self._sessions.get(session_id)
        return list(session.message_ids) if session else []

    def upsert_session(
        self,
        session_id: str,
        *,
        title: str | None = None,
        parent_id: Any = _MISSING,
        message_ids: list[str] | None = None,
        revert: Any = _MISSING,
        time: dict[str, Any] | None = None,
        created_at: int | None = None,
        agent: str | None = None,
        provider_id: str | None = None,
        model_id: str | None = None,
    ) -> SessionRecord:
        """Create the session on first reference, otherwise merge the supplied fields.

        Fields left out keep their current value; ``time`` is shallow-merged.
        """
        now = self._clock()
        session = self._sessions.get(session_id)
        created = session is None
        if session is None:
            created_time = (time or {}).get("created")
            if created_at is None and isinstance(created_time, (int, float)):
                created_at = int(created_time)
            session = SessionRecord(id=session_id, created_at=created_at or now, updated_at=now)
            self._sessions[session_id] = session

        changed = created
        if title is not None and title != session.title:
            session.title = title
            changed = True
        if parent_id is not _MISSING and parent_id != session.parent_id:
            session.parent_id = parent_id
            changed = True
        if message_ids is not None and list(message_ids) != session.message_ids:
            session.message_ids = list(dict.fromkeys(message_ids))
            changed = True
        if revert is not _MISSING and revert != session.revert:
            session.revert = revert
            changed = True
        for attr, value in (("agent", agent), ("provider_id", provider_id), ("model_id", model_id)):
            if value is not None and value != getattr(session, attr):
                setattr(session, attr, value)
                changed = True
        if time:
            merged = {**session.time, **time}
            if merged != session.time:
                session.time = merged
                changed = True

        if changed:
            updated = session.time.get("updated")
            session.updated_at = int(updated) if isinstance(updated, (int, float)) else now
            keys = [session_key(session_id)]
            if created:
                keys.append(SESSIONS_KEY)
            self._emit(keys)
        return session

    def set_session_compacting(self, session_id: str, compacting: bool) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.is_compacting == compacting:
            return False
        self.upsert_session(session_id, time={"compacting": compacting})
        return True

    def set_session_revert(self, session_id: str, revert: RevertMarker | None) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.revert == revert:
            return False
        self.upsert_session(session_id, revert=revert)
        return True

    def get_session_revert(self, session_id: str) -> RevertMarker | None:
        session = self._sessions.get(session_id)
        return session.revert if session else None

    def clear_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        keys = {session_key(session_id), SESSIONS_KEY, usage_key(session_id)}
        for message_id in [mid for mid, msg in self._messages.items() if msg.session_id == session_id]:
            self._messages.pop(message_id, None)
            self._message_infos.pop(message_id, None)
            keys.add(message_key(message_id))
        for message_id, pending in list(self._pending_parts.items()):
            if message_id in session.message_ids or any(e.part.get("sessionID") == session_id for e in pending):
                del self._pending_parts[message_id]
        if self._permissions.remove_session(session_id):
            keys.add(PERMISSIONS_KEY)
            active = self._permissions.active
            if active is not None:
                self.refresh_permission_parts(active.session_id)
        self._usage.pop(session_id, None)
        prefix = f"{session_id}:"
        for key in [k for k in self._scroll if k.startswith(prefix)]:
            del self._scroll[key]
        self._emit(keys)
        return True

    # -- messages ---------------------------------------------------------

    def get_message(self, message_id: str) -> MessageRecord | None:
        return self._messages.get(message_id)

    def get_session_messages(self, session_id: str) -> list[MessageRecord]:
        return [self._messages[mid] for mid in self.get_session_message_ids(session_id) if mid in self._messages]

    def upsert_message(
        self,
        message_id: str,
        session_id: str,
        *,
        role: str,
        status: str,
        created_at: int | None = None,
        updated_at: int | None = None,
        parts: list[dict[str, Any]] | None = None,
        is_ephemeral: bool | None = None,
        bump_revision: bool = False,
    ) -> MessageRecord:
        now = self._clock()
        record = self._messages.get(message_id)
        if record is None:
            record = MessageRecord(
                id=message_id,
                session_id=session_id,
                role=role,
                status=status,
                created_at=created_at or now,
                updated_at=updated_at or now,
                is_ephemeral=bool(is_ephemeral),
            )
            if parts:
                self._replace_parts(record, parts)
            self._messages[message_id] = record
            self._emit([message_key(message_id)])
            self._log.debug(f"Message created: {message_id} ({role}, {status}) in {session_id}")
        else:
            changed = bump_revision
            if record.role != role:
                record.role = role
                changed = True
            if STATUS_RANK.get(status, 0) >= STATUS_RANK.get(record.status, 0) and status != record.status:
                record.status = status
                changed = True
            if is_ephemeral is not None and is_ephemeral != record.is_ephemeral:
                record.is_ephemeral = is_ephemeral
                changed = True
            if created_at is not None and created_at != record.created_at:
                record.created_at = created_at
                changed = True
            if parts is not None and self._replace_parts(record, parts):
                changed = True
            if changed:
                record.revision += 1
                record.updated_at = updated_at or now
                self._emit([message_key(message_id)])

        self._insert_into_session(session_id, message_id)
        self.flush_pending_parts(message_id)
        return record

    def set_message_status(self, message_id: str, status: str, *, force: bool = False) -> bool:
        """Set a status directly. ``force`` allows moving backwards, e.g. for a failed send."""
        record = self._messages.get(message_id)
        if record is None or record.status == status:
            return False
        if not force and STATUS_RANK.get(status, 0) < STATUS_RANK.get(record.status, 0):
            return False
        record.status = status
        record.revision += 1
        record.updated_at = self._clock()
        self._emit([message_key(message_id)])
        return True

    def apply_part_update(
        self,
        message_id: str,
        part: dict[str, Any],
        *,
        bump_revision: bool = True,
        replaced_part_ids: Iterable[str] = (),
    ) -> bool:
        """Merge one part into its message. Returns True when observable content changed.

        Parts for a message that does not exist yet are buffered and replayed by
        ``flush_pending_parts`` once the message is created. A non-synthetic part
        evicts the message's synthetic parts, and the text parts listed in
        ``replaced_part_ids`` (those of a claimed placeholder), in the same
        revision as the merge.
        """
        record = self._messages.get(message_id)
        if record is None:
            self.buffer_pending_part(message_id, part)
            return False

        data = normalize_part(part)
        if not isinstance(data, dict):
            self._log.warning(f"Ignoring non-object part for message {message_id}")
            return False

        stripped = self._strip_stale_parts(record, data, set(replaced_part_ids))
        content = part_content_key(data)
        if not data.get("id"):
            for existing in record.ordered_parts():
                if part_content_key(existing.data) == {**content, "id": existing.id}:
                    return self._finish_part_update(record, stripped, bump_revision)
        part_id = ensure_part_id(message_id, data, len(record.part_ids))
        data["id"] = part_id
        initialize_part_version(data)

        existing = record.parts.get(part_id)
        if existing is not None and part_content_key(existing.data) == part_content_key(data):
            return self._finish_part_update(record, stripped, bump_revision)

        revision = existing.revision + 1 if existing is not None else data["version"]
        permission = existing.permission if existing is not None else None
        if permission is None:
            permission = self._permission_state_for_part(record, data)
        record.parts[part_id] = PartRecord(id=part_id, data=data, revision=revision, permission=permission)
        if part_id not in record.part_ids:
            record.part_ids.append(part_id)
        return self._finish_part_update(record, True, bump_revision)

    def _strip_stale_parts(self, record: MessageRecord, incoming: dict[str, Any], replaced_part_ids: set[str]) -> bool:
        incoming_id = incoming.get("id")
        evict_synthetic = not incoming.get("synthetic")
        stale = [
            pid
            for pid in record.part_ids
            if pid != incoming_id
            and (
                (evict_synthetic and record.parts[pid].data.get("synthetic"))
                or (pid in replaced_part_ids and record.parts[pid].data.get("type") == "text")
            )
        ]
        if not stale:
            return False
        for pid in stale:
            del record.parts[pid]
        record.part_ids = [pid for pid in record.part_ids if pid not in stale]
        self._log.debug(f"Dropped {len(stale)} placeholder part(s) from {record.id}")
        return True

    def _finish_part_update(self, record: MessageRecord, changed: bool, bump_revision: bool) -> bool:
        if not changed:
            return False
        record.updated_at = self._clock()
        if bump_revision:
            record.revision += 1
        self._emit([message_key(record.id)])
        return True

    def buffer_pending_part(self, message_id: str, part: dict[str, Any]) -> None:
        data = normalize_part(part)
        if not isinstance(data, dict):
            return
        pending = self._pending_parts.setdefault(message_id, [])
        part_id = data.get("id")
        entry = PendingPartEntry(message_id=message_id, part=data, received_at=self._clock())
        if part_id:
            for index, buffered in enumerate(pending):
                if buffered.part.get("id") != part_id:
                    continue
                if part_content_key(buffered.part) != part_content_key(data):
                    pending[index] = entry
                return
        pending.append(entry)
        self._log.debug(f"Buffered part for unknown message {message_id} ({len(pending)} pending)")

    def get_pending_parts(self, message_id: str) -> list[PendingPartEntry]:
        return list(self._pending_parts.get(message_id, []))

    def flush_pending_parts(self, message_id: str) -> int:
        if message_id not in self._messages:
            return 0
        pending = self._pending_parts.pop(message_id, None)
        if not pending:
            return 0
        applied = 0
        for entry in pending:
            if self.apply_part_update(message_id, entry.part):
                applied += 1
        self._log.debug(f"Flushed {len(pending)} buffered part(s) into {message_id}")
        return applied

    def replace_message_id(self, old_id: str, new_id: str) -> bool:
        """Re-key an optimistic placeholder to its server-assigned id.

        Message, session membership, message info, permission associations,
        buffered parts and usage all move together inside one change batch.
        """
        if old_id == new_id or old_id not in self._messages:
            return False

        with self._emitter.batch():
            record = self._messages.pop(old_id)
            keys = {message_key(old_id), message_key(new_id)}

            if new_id in self._messages:
                # The authoritative record already exists, so the placeholder is simply retired.
                self._log.debug(f"Retiring placeholder {old_id}; {new_id} already known")
            else:
                record.id = new_id
                record.is_ephemeral = False
                for part in record.parts.values():
                    if part.data.get("messageID") == old_id:
                        part.data["messageID"] = new_id
                self._messages[new_id] = record

            for session in self._sessions.values():
                if old_id not in session.message_ids:
                    continue
                ids = [new_id if mid == old_id else mid for mid in session.message_ids]
                session.message_ids = list(dict.fromkeys(ids))
                keys.add(session_key(session.id))

            info = self._message_infos.pop(old_id, None)
            usage = self._usage.get(record.session_id)
            if usage is not None and remove_usage(usage, old_id) is not None:
                keys.add(usage_key(record.session_id))
            if info is not None and new_id not in self._message_infos:
                info = dict(info)
                info["id"] = new_id
                self._message_infos[new_id] = info
                if usage is not None:
                    apply_usage(usage, extract_usage_entry(info))

            if self._permissions.rekey_message(old_id, new_id):
                keys.add(PERMISSIONS_KEY)

            pending = self._pending_parts.pop(old_id, None)
            if pending:
                self._pending_parts.setdefault(new_id, []).extend(pending)

            self._emit(keys)
            self.flush_pending_parts(new_id)

        self._log.debug(f"Message id replaced: {old_id} -> {new_id}")
        return True

    def remove_message(self, message_id: str) -> bool:
        record = self._messages.pop(message_id, None)
        if record is None:
            return False
        keys = {message_key(message_id)}
        self._message_infos.pop(message_id, None)
        self._pending_parts.pop(message_id, None)
        session = self._sessions.get(record.session_id)
        if session is not None and message_id in session.message_ids:
            session.message_ids = [mid for mid in session.message_ids if mid != message_id]
            keys.add(session_key(record.session_id))
        usage = self._usage.get(record.session_id)
        if usage is not None and remove_usage(usage, message_id) is not None:
            keys.add(usage_key(record.session_id))
        self._emit(keys)
        return True

    def seed_session_messages(self, session_id: str, messages: Iterable[dict[str, Any]]) -> list[str]:
        """Replace a session's messages with a fetched listing and rebuild its usage.

        Optimistic placeholders still awaiting their server id survive the reload.
        """
        with self._emitter.batch():
            self.upsert_session(session_id)
            listed: list[str] = []
            for raw in messages:
                if not isinstance(raw, dict):
                    continue
                info, parts = normalize_message(raw)
                message_id = info.get("id")
                if not isinstance(message_id, str) or not message_id:
                    self._log.warning(f"Skipping listed message without id in {session_id}")
                    continue
                created_at, updated_at = info_timestamps(info)
                self.upsert_message(
                    message_id,
                    session_id,
                    role=resolve_role(info),
                    status=resolve_status(info),
                    created_at=created_at,
                    updated_at=updated_at,
                    parts=parts,
                    is_ephemeral=False,
                )
                self.set_message_info(message_id, info)
                listed.append(message_id)

            listed_set = set(listed)
            retained: list[str] = []
            for message_id in self.get_session_message_ids(session_id):
                if message_id in listed_set:
                    continue
                record = self._messages.get(message_id)
                if record is not None and record.is_ephemeral and record.status == "sending":
                    retained.append(message_id)
                else:
                    self.remove_message(message_id)

            self.upsert_session(session_id, message_ids=listed + retained)
            self.rebuild_usage(session_id)
        return listed

    # -- message info & usage ----------------------------------------------

    def get_message_info(self, message_id: str) -> dict[str, Any] | None:
        return self._message_infos.get(message_id)

    def set_message_info(self, message_id: str, info: dict[str, Any]) -> bool:
        """Store accounting metadata. Returns False when it is unchanged.

        The session's usage is updated by removing any prior contribution from
        this message and reapplying the new one, so duplicates never double count.
        """
        previous = self._message_infos.get(message_id)
        if previous == info:
            return False
        stored = copy.deepcopy(info)
        self._message_infos[message_id] = stored

        record = self._messages.get(message_id)
        session_id = stored.get("sessionID") or (record.session_id if record else None)
        keys = {message_key(message_id)}
        if session_id:
            usage = self._usage.setdefault(session_id, SessionUsageState())
            remove_usage(usage, message_id)
            apply_usage(usage, extract_usage_entry(stored))
            keys.add(usage_key(session_id))
        self._emit(keys)
        return True

    def rebuild_usage(self, session_id: str, infos: Iterable[dict[str, Any]] | None = None) -> SessionUsageState:
        if infos is None:
            infos = [
                self._message_infos[mid]
                for mid in self.get_session_message_ids(session_id)
                if mid in self._message_infos
            ]
        state = rebuild_usage_state(infos)
        self._usage[session_id] = state
        self._emit([usage_key(session_id)])
        return state

    def get_session_usage(self, session_id: str) -> SessionUsageState | None:
        return self._usage.get(session_id)

    # -- permissions --------------------------------------------------------

    def upsert_permission(self, permission: dict[str, Any]) -> bool:
        """Queue a permission request. Returns True when it was not already queued."""
        entry, inserted = self._permissions.enqueue(permission)
        self.refresh_permission_parts(entry.session_id)
        if inserted:
            self._log.info(f"Permission queued: {entry.id} for session {entry.session_id}")
            self._emit([PERMISSIONS_KEY])
        return inserted

    def remove_permission(self, permission_id: str) -> PermissionEntry | None:
        entry = self._permissions.get(permission_id)
        if entry is None:
            return None
        with self._emitter.batch():
            self._detach_permission(entry)
            self._permissions.remove(permission_id)
            self.refresh_permission_parts(entry.session_id)
            active = self._permissions.active
            if active is not None and active.session_id != entry.session_id:
                self.refresh_permission_parts(active.session_id)
            self._emit([PERMISSIONS_KEY])
        self._log.info(f"Permission removed: {permission_id}")
        return entry

    def get_permission_state(self, message_id: str | None = None, part_id: str | None = None) -> PermissionLookup | None:
        return self._permissions.lookup(message_id, part_id)

    def clear_permissions(self) -> None:
        with self._emitter.batch():
            for entry in self._permissions.ordered():
                self._detach_permission(entry)
            for session_id in self._permissions.clear():
                self._set_pending_flag(session_id, False)
            self._emit([PERMISSIONS_KEY])

    def refresh_permission_parts(self, session_id: str) -> int:
        """Re-attach queued permission state onto the tool parts it targets.

        Returns the number of parts whose permission state changed.
        """
        changed = 0
        active = self._permissions.active
        for entry in self._permissions.entries_for_session(session_id):
            state = PermissionState(permission_id=entry.id, active=active is not None and active.id == entry.id)
            target = self._find_permission_target(entry)
            if target is not None and self.set_part_permission(target[0], target[1], state):
                changed += 1
        self._set_pending_flag(session_id, self._permissions.pending_count(session_id) > 0)
        return changed

    def set_part_permission(self, message_id: str, part_id: str, state: PermissionState | None) -> bool:
        record = self._messages.get(message_id)
        part = record.parts.get(part_id) if record else None
        if record is None or part is None or part.permission == state:
            return False
        part.permission = state
        part.revision += 1
        record.revision += 1
        self._emit([message_key(message_id)])
        return True

    def _detach_permission(self, entry: PermissionEntry) -> None:
        target = self._find_permission_target(entry)
        if target is None:
            return
        record = self._messages[target[0]]
        part = record.parts[target[1]]
        if part.permission is not None and part.permission.permission_id == entry.id:
            self.set_part_permission(target[0], target[1], None)

    def _find_permission_target(self, entry: PermissionEntry) -> tuple[str, str] | None:
        if not entry.message_id:
            return None
        record = self._messages.get(entry.message_id)
        if record is None:
            return None
        for part in record.ordered_parts():
            if self._part_matches_permission(part.data, entry):
                return record.id, part.id
        return None

    @staticmethod
    def _part_matches_permission(data: dict[str, Any], entry: PermissionEntry) -> bool:
        if data.get("type") != "tool":
            return False
        call_id = data.get("callID")
        expected = entry.part_id
        if expected:
            if call_id:
                return call_id == expected
            return data.get("id") == expected or data.get("messageID") == entry.message_id
        return call_id == entry.id or data.get("id") == entry.id or data.get("messageID") == entry.message_id

    def _permission_state_for_part(self, record: MessageRecord, data: dict[str, Any]) -> PermissionState | None:
        active = self._permissions.active
        for entry in self._permissions.entries_for_session(record.session_id):
            if entry.message_id == record.id and self._part_matches_permission(data, entry):
                return PermissionState(permission_id=entry.id, active=active is not None and active.id == entry.id)
        return None

    def _set_pending_flag(self, session_id: str, pending: bool) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.pending_permission == pending:
            return
        session.pending_permission = pending
        self._emit([session_key(session_id)])

    # -- scroll snapshots ---------------------------------------------------

    def set_scroll_snapshot(self, session_id: str, scope: str, *, scroll_top: float, at_bottom: bool) -> ScrollSnapshot:
        snapshot = ScrollSnapshot(scroll_top=scroll_top, at_bottom=at_bottom, updated_at=self._clock())
        self._scroll[f"{session_id}:{scope}"] = snapshot
        self._emit([scroll_key(session_id, scope)])
        return snapshot

    def get_scroll_snapshot(self, session_id: str, scope: str) -> ScrollSnapshot | None:
        return self._scroll.get(f"{session_id}:{scope}")

    # -- lifecycle ----------------------------------------------------------

    def clear_instance(self) -> None:
        self._sessions.clear()
        self._messages.clear()
        self._message_infos.clear()
        self._pending_parts.clear()
        self._permissions.clear()
        self._usage.clear()
        self._scroll.clear()
        self._emit([SESSIONS_KEY, PERMISSIONS_KEY])
        self._log.info("Instance store cleared")

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the observable state, for comparison."""
        return copy.deepcopy(
            {
                "sessions": self._sessions,
                "messages": self._messages,
                "message_infos": self._message_infos,
                "pending_parts": self._pending_parts,
                "permissions": self._permissions.ordered(),
                "active_permission": self._permissions.active,
                "usage": self._usage,
                "scroll": self._scroll,
            }
        )

    def _insert_into_session(self, session_id: str, message_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            session = self.upsert_session(session_id)
        if message_id in session.message_ids:
            return
        session.message_ids.append(message_id)
        session.updated_at = self._clock()
        self._emit([session_key(session_id)])

    def _replace_parts(self, record: MessageRecord, parts: list[dict[str, Any]]) -> bool:
        next_ids: list[str] = []
        next_parts: dict[str, PartRecord] = {}
        for index, raw in enumerate(parts):
            data = normalize_part(raw)
            if not isinstance(data, dict):
                continue
            part_id = ensure_part_id(record.id, data, index)
            data["id"] = part_id
            initialize_part_version(data)
            existing = record.parts.get(part_id)
            if existing is not None and part_content_key(existing.data) == part_content_key(data):
                next_parts[part_id] = existing
            else:
                next_parts[part_id] = PartRecord(
                    id=part_id,
                    data=data,
                    revision=existing.revision + 1 if existing is not None else data["version"],
                    permission=existing.permission if existing is not None else self._permission_state_for_part(record, data),
                )
            if part_id not in next_ids:
                next_ids.append(part_id)

        changed = next_ids != record.part_ids or any(
            record.parts.get(pid) is not next_parts[pid] for pid in next_ids
        )
        record.part_ids = next_ids
        record.parts = next_parts
        return changed

    def _emit(self, keys: Iterable[str]) -> None:
        self._emitter.emit(self._instance_id, keys)
