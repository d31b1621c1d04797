from __future__ import annotations

from collections.abc import Callable

from loguru import logger

from session_sync.commands import CommandRouter
from session_sync.display import display_parts, part_text
from session_sync.errors import SessionSyncError
from session_sync.notifier import RecordingNotifier
from session_sync.permission_manager import PERMISSION_RESPONSES
from session_sync.registry import Instance, InstanceRegistry
from session_sync.store.changes import ChangeSet
from session_sync.store.models import MessageRecord, SessionRecord

_FINISHED = ("complete", "error")


class SessionShell:
    """Line-oriented front end over one instance.

    Plain lines are sent as prompts to the active session; lines starting with
    ``/`` are local commands and lines starting with ``!`` run a shell command.
    Finished assistant messages are printed as the store reports them.
    """

    _LINE_PREFIX = "sync> "

    def __init__(
        self,
        registry: InstanceRegistry,
        instance: Instance,
        notifier: RecordingNotifier,
        *,
        show_reasoning: bool = False,
        printer: Callable[[str], None] = print,
        short_id_len: int = 8,
    ):
        self._registry = registry
        self._instance = instance
        self._notifier = notifier
        self._show_reasoning = show_reasoning
        self._print = printer
        self._short_id_len = short_id_len
        self._active_session_id: str | None = None
        self._printed: dict[str, int] = {}
        self._unsubscribe = registry.emitter.subscribe(self._on_change)
        self._router = CommandRouter(
            on_help=self._on_help,
            on_session=self._handle_session_command,
            on_fork=self._on_fork,
            on_undo=self._on_undo,
            on_revert=self._on_revert,
            on_compact=self._on_compact,
            on_abort=self._on_abort,
            on_permission=self._handle_permission_command,
            on_shell=self._on_shell,
            on_status=self._on_status,
            on_unknown=self._on_unknown_command,
        )

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    def close(self) -> None:
        self._unsubscribe()

    async def start(self, session_id: str | None = None) -> str:
        """Fetch the session listing and activate a session, creating one when none exist."""
        sessions = await self._instance.actions.fetch_sessions()
        if session_id is None and sessions:
            session_id = max(sessions, key=lambda s: s.updated_at).id
        if session_id is None or self._instance.store.get_session(session_id) is None:
            session_id = (await self._instance.actions.create_session()).id
        await self._activate(session_id)
        return session_id

    async def handle(self, line: str) -> None:
        if await self._router.try_handle(line):
            return
        session_id = self._require_active()
        await self._instance.actions.send_message(session_id, line.strip())

    def flush_notifications(self) -> None:
        for notification in self._notifier.drain():
            title = f"{notification.title}: " if notification.title else ""
            self._print(f"{self._LINE_PREFIX}[{notification.variant}] {title}{notification.message}")

    # -- rendering --

    def _on_change(self, change: ChangeSet) -> None:
        if change.instance_id != self._instance.id or self._active_session_id is None:
            return
        for key in sorted(change.keys):
            if not key.startswith("message:"):
                continue
            record = self._instance.store.get_message(key.split(":", 1)[1])
            if record is None or record.session_id != self._active_session_id:
                continue
            if record.role != "assistant" or record.status not in _FINISHED:
                continue
            if self._printed.get(record.id) == record.revision:
                continue
            self._printed[record.id] = record.revision
            self._render_message(record)

    def _render_message(self, record: MessageRecord) -> None:
        parts = display_parts(record, show_reasoning=self._show_reasoning)
        for part in parts.reasoning:
            self._print(f"  (thinking) {part_text(part)}")
        for part in parts.tool:
            state = part.data.get("state") if isinstance(part.data.get("state"), dict) else {}
            self._print(f"  [tool] {part.data.get('tool', '?')} ({state.get('status', 'pending')})")
        for part in parts.text:
            self._print(f"assistant> {part_text(part)}")
        if record.status == "error":
            self._print(f"{self._LINE_PREFIX}Assistant message {record.id} ended with an error")

    def _short_id(self, value: str) -> str:
        if len(value) <= self._short_id_len:
            return value
        return value[: self._short_id_len]

    def _format_session(self, session: SessionRecord) -> str:
        marker = "*" if session.id == self._active_session_id else " "
        parent = session.parent_id or "-"
        title = session.title or session.id
        flags = []
        if session.is_compacting:
            flags.append("compacting")
        if session.revert is not None:
            flags.append(f"reverted@{self._short_id(session.revert.message_id)}")
        if session.pending_permission:
            flags.append("permission")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        return (
            f"{self._LINE_PREFIX}{marker} {title} [{self._short_id(session.id)}] "
            f"(id={session.id}, parent={parent}, messages={len(session.message_ids)}){suffix}"
        )

    # -- commands --

    async def _on_help(self) -> None:
        self._print(f"{self._LINE_PREFIX}Available commands:")
        self._print(f"{self._LINE_PREFIX}- /help")
        self._print(f"{self._LINE_PREFIX}- /status")
        self._print(f"{self._LINE_PREFIX}- /session")
        self._print(f"{self._LINE_PREFIX}- /session list")
        self._print(f"{self._LINE_PREFIX}- /session new [title]")
        self._print(f"{self._LINE_PREFIX}- /session use <id>")
        self._print(f"{self._LINE_PREFIX}- /session fork [message_id]")
        self._print(f"{self._LINE_PREFIX}- /session delete <id>")
        self._print(f"{self._LINE_PREFIX}- /fork [message_id]")
        self._print(f"{self._LINE_PREFIX}- /undo")
        self._print(f"{self._LINE_PREFIX}- /revert <message_id>")
        self._print(f"{self._LINE_PREFIX}- /compact")
        self._print(f"{self._LINE_PREFIX}- /abort")
        self._print(f"{self._LINE_PREFIX}- /permission")
        self._print(f"{self._LINE_PREFIX}- /permission <once|always|reject> [permission_id]")
        self._print(f"{self._LINE_PREFIX}- !<shell command>")

    def _on_unknown_command(self, trimmed: str) -> None:
        self._print(f"{self._LINE_PREFIX}Unknown local command: {trimmed}")

    async def _handle_session_command(self, command: str) -> None:
        parts = command.split(maxsplit=2)
        actions = self._instance.actions
        store = self._instance.store

        if len(parts) == 1:
            session = store.get_session(self._active_session_id or "")
            if session is None:
                self._print(f"{self._LINE_PREFIX}Current session: none")
                return
            self._print(f"{self._LINE_PREFIX}Current session:")
            self._print(self._format_session(session))
            return

        sub = parts[1].lower()
        arg = parts[2].strip() if len(parts) > 2 else ""

        if sub == "list":
            sessions = sorted(store.list_sessions(), key=lambda s: s.updated_at, reverse=True)
            if not sessions:
                self._print(f"{self._LINE_PREFIX}No sessions found.")
                return
            self._print(f"{self._LINE_PREFIX}Sessions:")
            for session in sessions:
                self._print(self._format_session(session))
            return

        if sub == "new":
            session = await actions.create_session(arg or None)
            await self._activate(session.id)
            self._print(f"{self._LINE_PREFIX}Started new session: {session.id}")
            return

        if sub == "use":
            if not arg:
                self._print(f"{self._LINE_PREFIX}Usage: /session use <id>")
                return
            if store.get_session(arg) is None:
                self._print(f"{self._LINE_PREFIX}Session not found: {arg}")
                return
            await self._activate(arg)
            self._print(f"{self._LINE_PREFIX}Active session: {arg}")
            return

        if sub == "fork":
            await self._fork(arg or None)
            return

        if sub == "delete":
            if not arg:
                self._print(f"{self._LINE_PREFIX}Usage: /session delete <id>")
                return
            await actions.delete_session(arg)
            if arg == self._active_session_id:
                self._active_session_id = None
            self._print(f"{self._LINE_PREFIX}Deleted session: {arg}")
            return

        self._print(
            f"{self._LINE_PREFIX}Unknown /session command. "
            "Use /session, /session list, /session new [title], /session use <id>, "
            "/session fork [message_id], /session delete <id>"
        )

    async def _on_fork(self, command: str) -> None:
        parts = command.split(maxsplit=1)
        await self._fork(parts[1].strip() if len(parts) > 1 else None)

    async def _fork(self, message_id: str | None) -> None:
        source_id = self._require_active()
        fork = await self._instance.actions.fork_session(source_id, message_id)
        await self._activate(fork.id)
        self._print(f"{self._LINE_PREFIX}Forked session {source_id} -> {fork.id}")

    async def _on_undo(self) -> None:
        result = await self._instance.actions.undo_last(self._require_active())
        if result is None:
            self._print(f"{self._LINE_PREFIX}Nothing to undo.")
            return
        self._print(f"{self._LINE_PREFIX}Reverted to before {result.message_id}")
        if result.restored_text:
            self._print(f"{self._LINE_PREFIX}Restored prompt: {result.restored_text}")

    async def _on_revert(self, command: str) -> None:
        parts = command.split(maxsplit=1)
        if len(parts) < 2:
            self._print(f"{self._LINE_PREFIX}Usage: /revert <message_id>")
            return
        await self._instance.actions.revert(self._require_active(), parts[1].strip())
        self._print(f"{self._LINE_PREFIX}Reverted to {parts[1].strip()}")

    async def _on_compact(self) -> None:
        await self._instance.actions.compact(self._require_active())
        self._print(f"{self._LINE_PREFIX}Compaction requested.")

    async def _on_abort(self) -> None:
        await self._instance.actions.abort(self._require_active())
        self._print(f"{self._LINE_PREFIX}Abort requested.")

    async def _on_shell(self, command: str) -> None:
        if not command:
            self._print(f"{self._LINE_PREFIX}Usage: !<shell command>")
            return
        await self._instance.actions.run_shell(self._require_active(), command)

    async def _handle_permission_command(self, command: str) -> None:
        permissions = self._instance.permissions
        parts = command.split()

        if len(parts) == 1:
            queued = permissions.queued()
            if not queued:
                self._print(f"{self._LINE_PREFIX}No pending permissions.")
                return
            active = permissions.active
            self._print(f"{self._LINE_PREFIX}Pending permissions:")
            for entry in queued:
                marker = "*" if active is not None and entry.id == active.id else " "
                title = entry.permission.get("title") or entry.permission.get("type") or "permission"
                self._print(f"{self._LINE_PREFIX}{marker} {entry.id} ({title}, session={entry.session_id})")
            return

        response = parts[1].lower()
        if response not in PERMISSION_RESPONSES:
            self._print(f"{self._LINE_PREFIX}Usage: /permission <once|always|reject> [permission_id]")
            return

        entry = permissions.active
        if len(parts) > 2:
            entry = next((e for e in permissions.queued() if e.id == parts[2]), None)
        if entry is None:
            self._print(f"{self._LINE_PREFIX}No matching permission request.")
            return

        if await permissions.respond(entry.session_id, entry.id, response):
            self._print(f"{self._LINE_PREFIX}Permission {entry.id}: {response}")
        else:
            self._print(f"{self._LINE_PREFIX}Permission {entry.id} already has a reply in flight.")

    async def _on_status(self) -> None:
        instance = self._instance
        status = self._registry.transport.get_status(instance.id) or "disconnected"
        self._print(f"{self._LINE_PREFIX}Instance: {instance.id} ({status})")
        if instance.disconnected_reason:
            self._print(f"{self._LINE_PREFIX}Disconnected: {instance.disconnected_reason}")
        session_id = self._active_session_id
        if session_id is None:
            return
        self._print(f"{self._LINE_PREFIX}Session: {session_id}")
        self._print(f"{self._LINE_PREFIX}Messages: {len(instance.store.get_session_message_ids(session_id))}")
        usage = instance.store.get_session_usage(session_id)
        if usage is not None:
            self._print(
                f"{self._LINE_PREFIX}Tokens: input={usage.total_input_tokens:,} "
                f"output={usage.total_output_tokens:,} reasoning={usage.total_reasoning_tokens:,} "
                f"cost=${usage.total_cost:.4f}"
            )
        pending = len(instance.permissions.pending_for_session(session_id))
        if pending:
            self._print(f"{self._LINE_PREFIX}Pending permissions: {pending}")

    async def _activate(self, session_id: str) -> None:
        await self._instance.actions.load_messages(session_id)
        self._active_session_id = session_id
        for record in self._instance.store.get_session_messages(session_id):
            if record.status in _FINISHED:
                self._printed[record.id] = record.revision
        logger.bind(instance_id=self._instance.id).debug(f"Active session: {session_id}")

    def _require_active(self) -> str:
        if self._active_session_id is None:
            raise SessionSyncError("No active session. Use /session new or /session use <id>")
        return self._active_session_id
