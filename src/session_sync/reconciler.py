"""Applies decoded stream events to an instance store.

Message identity is resolved in a fixed order: an existing record with the
event's id, then an optimistic placeholder named by the event's correlation id,
then the most recent placeholder still in "sending" (of the same role, or of
any role for a part event without message info), and finally a fresh record.
A claimed placeholder loses its synthetic and text parts to the first
authoritative part. Every handler is safe under duplicate delivery.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

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
    SyncEvent,
    ToastShown,
    UnknownEvent,
)
from session_sync.normalizer import info_timestamps, resolve_status
from session_sync.notifier import Notifier
from session_sync.permission_manager import PermissionManager
from session_sync.store.message_store import InstanceMessageStore
from session_sync.store.models import MessageRecord, RevertMarker

ReloadSession = Callable[[str], Awaitable[Any]]

COMPACTED_TOAST_DURATION_MS = 10000


def _correlation_id(*sources: dict[str, Any] | None) -> str | None:
    for source in sources:
        if not source:
            continue
        value = source.get("clientMessageID")
        if isinstance(value, str) and value:
            return value
    return None


class EventReconciler:
    def __init__(
        self,
        store: InstanceMessageStore,
        permissions: PermissionManager,
        *,
        notifier: Notifier | None = None,
        reload_session: ReloadSession | None = None,
    ):
        self._store = store
        self._permissions = permissions
        self._notifier = notifier or Notifier()
        self._reload_session = reload_session
        self._reloads: set[asyncio.Task] = set()
        self._log = logger.bind(instance_id=store.instance_id)
        self._handlers: dict[type, Callable[[Any], None]] = {
            MessageUpdated: self._on_message_updated,
            MessagePartUpdated: self._on_part_updated,
            MessageRemoved: self._on_removed,
            MessagePartRemoved: self._on_removed,
            SessionUpdated: self._on_session_updated,
            SessionCompacted: self._on_session_compacted,
            SessionError: self._on_session_error,
            SessionIdle: self._on_session_idle,
            PermissionUpdated: self._on_permission_updated,
            PermissionReplied: self._on_permission_replied,
            ToastShown: self._on_toast,
            UnknownEvent: self._on_unknown,
        }

    @property
    def instance_id(self) -> str:
        return self._store.instance_id

    def set_reload_session(self, reload_session: ReloadSession | None) -> None:
        self._reload_session = reload_session

    def apply(self, event: SyncEvent) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            self._log.warning(f"No handler for event {type(event).__name__}")
            return
        with self._store.emitter.batch():
            handler(event)

    async def drain(self) -> None:
        """Wait for every reload scheduled so far."""
        while self._reloads:
            await asyncio.gather(*list(self._reloads), return_exceptions=True)

    # -- messages --

    def _on_part_updated(self, event: MessagePartUpdated) -> None:
        session_id = event.session_id
        message_id = event.message_id
        if not self._store.has_session(session_id):
            self._log.debug(f"Dropping part update for unknown session {session_id}")
            return

        info = event.message
        record, placeholder_part_ids = self._resolve_identity(
            session_id, message_id, event.role, _correlation_id(info, event.part)
        )
        if record is None:
            created_at, _ = info_timestamps(info or {})
            self._store.upsert_message(
                message_id,
                session_id,
                role=event.role or "assistant",
                status="streaming",
                created_at=created_at,
                updated_at=created_at,
                is_ephemeral=False,
            )
        else:
            self._store.upsert_message(
                message_id,
                record.session_id,
                role=record.role,
                status="streaming",
                is_ephemeral=False,
            )

        if info is not None:
            self._store.set_message_info(message_id, info)
        self._store.apply_part_update(message_id, event.part, replaced_part_ids=placeholder_part_ids)
        self._permissions.refresh_session(session_id)

    def _on_message_updated(self, event: MessageUpdated) -> None:
        info = event.info
        session_id = event.session_id
        message_id = event.message_id
        if not self._store.has_session(session_id):
            self._log.debug(f"Dropping message update for unknown session {session_id}")
            return

        record, _ = self._resolve_identity(session_id, message_id, event.role, _correlation_id(info))
        created_at, updated_at = info_timestamps(info)
        status = resolve_status(info)
        if record is None:
            self._store.upsert_message(
                message_id,
                session_id,
                role=event.role,
                status=status,
                created_at=created_at,
                updated_at=updated_at,
                is_ephemeral=False,
            )
            self._store.set_message_info(message_id, info)
        else:
            info_changed = self._store.set_message_info(message_id, info)
            self._store.upsert_message(
                message_id,
                record.session_id,
                role=event.role,
                status=status,
                created_at=created_at,
                updated_at=updated_at,
                is_ephemeral=False,
                bump_revision=info_changed,
            )
        self._permissions.refresh_session(session_id)

    def _on_removed(self, event: MessageRemoved | MessagePartRemoved) -> None:
        if not self._store.has_session(event.session_id):
            return
        self._log.info(f"[SSE] Content removed from session {event.session_id}, reloading messages")
        self._schedule_reload(event.session_id)

    def _resolve_identity(
        self, session_id: str, message_id: str, role: str | None, correlation_id: str | None
    ) -> tuple[MessageRecord | None, list[str]]:
        """Find the record an event addresses, re-keying a claimed placeholder.

        Returns the record (None when a new one must be created) and the part ids
        the placeholder held before it was claimed. A role of None matches a
        placeholder of any role.
        """
        record = self._store.get_message(message_id)
        if record is not None:
            return record, []

        if correlation_id and correlation_id != message_id:
            placeholder = self._store.get_message(correlation_id)
            if placeholder is not None and placeholder.is_ephemeral and placeholder.session_id == session_id:
                return self._claim_placeholder(placeholder, message_id)

        pending_id = self._find_pending_message_id(session_id, role)
        if pending_id and pending_id != message_id:
            self._log.debug(f"Resolving placeholder {pending_id} to {message_id} by status")
            return self._claim_placeholder(self._store.get_message(pending_id), message_id)
        return None, []

    def _claim_placeholder(self, placeholder: MessageRecord, message_id: str) -> tuple[MessageRecord | None, list[str]]:
        part_ids = list(placeholder.part_ids)
        self._store.replace_message_id(placeholder.id, message_id)
        return self._store.get_message(message_id), part_ids

    def _find_pending_message_id(self, session_id: str, role: str | None) -> str | None:
        for message_id in reversed(self._store.get_session_message_ids(session_id)):
            record = self._store.get_message(message_id)
            if record is None or record.session_id != session_id:
                continue
            if role is not None and record.role != role:
                continue
            if record.status == "sending":
                return record.id
        return None

    # -- sessions --

    def _on_session_updated(self, event: SessionUpdated) -> None:
        info = event.info
        session_id = event.session_id
        existing = self._store.get_session(session_id)
        time = dict(info["time"]) if isinstance(info.get("time"), dict) else {}

        kwargs: dict[str, Any] = {}
        if existing is None:
            now = self._store.now()
            time.setdefault("created", now)
            time.setdefault("updated", now)
            kwargs["parent_id"] = info.get("parentID") or None
            self._log.info(f"[SSE] New session created: {session_id}")
        if "revert" in info:
            kwargs["revert"] = RevertMarker.from_wire(info.get("revert"))

        self._store.upsert_session(
            session_id,
            title=info.get("title") or None,
            time=time,
            **kwargs,
        )

    def _on_session_compacted(self, event: SessionCompacted) -> None:
        session = self._store.get_session(event.session_id)
        if session is None:
            return
        self._log.info(f"[SSE] Session compacted: {event.session_id}")
        self._store.set_session_compacting(event.session_id, True)
        self._schedule_reload(event.session_id, clear_compacting=True)
        label = f'"{session.title}"' if session.title and session.title.strip() else event.session_id
        self._notifier.toast(
            self.instance_id,
            f"Session {label} was compacted",
            variant="info",
            title=self.instance_id,
            duration=COMPACTED_TOAST_DURATION_MS,
        )

    def _on_session_error(self, event: SessionError) -> None:
        self._log.error(f"[SSE] Session error: {event.error}")
        if event.session_id and self._store.has_session(event.session_id):
            latest = next(
                (r for r in reversed(self._store.get_session_messages(event.session_id)) if r.role == "assistant"),
                None,
            )
            if latest is not None and latest.status in ("sending", "streaming"):
                self._store.set_message_status(latest.id, "error")
        self._notifier.alert(
            self.instance_id,
            f"Error: {event.message}",
            title="Session error",
            session_id=event.session_id,
        )

    def _on_session_idle(self, event: SessionIdle) -> None:
        self._log.info(f"[SSE] Session idle: {event.session_id}")
        for record in self._store.get_session_messages(event.session_id):
            if record.status == "streaming":
                self._store.set_message_status(record.id, "complete")

    # -- permissions & notifications --

    def _on_permission_updated(self, event: PermissionUpdated) -> None:
        self._log.info(f"[SSE] Permission updated: {event.permission_id} ({event.permission.get('type')})")
        self._permissions.enqueue(event.permission)

    def _on_permission_replied(self, event: PermissionReplied) -> None:
        self._log.info(f"[SSE] Permission replied: {event.permission_id}")
        self._permissions.remove(event.permission_id)

    def _on_toast(self, event: ToastShown) -> None:
        self._notifier.toast(
            self.instance_id,
            event.message,
            variant=event.variant,
            title=event.title,
            duration=event.duration,
        )

    def _on_unknown(self, event: UnknownEvent) -> None:
        self._log.warning(f"[SSE] Unknown event type: {event.type}")

    # -- reloads --

    def _schedule_reload(self, session_id: str, *, clear_compacting: bool = False) -> None:
        if self._reload_session is None:
            if clear_compacting:
                self._store.set_session_compacting(session_id, False)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._log.warning(f"No running loop; skipping reload of {session_id}")
            return
        task = loop.create_task(self._reload(session_id, clear_compacting))
        self._reloads.add(task)
        task.add_done_callback(self._reloads.discard)

    async def _reload(self, session_id: str, clear_compacting: bool) -> None:
        try:
            await self._reload_session(session_id)
        except Exception as ex:
            self._log.error(f"Failed to reload messages for {session_id}: {ex}")
        finally:
            if clear_compacting:
                self._store.set_session_compacting(session_id, False)
