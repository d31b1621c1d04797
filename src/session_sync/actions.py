from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger

from session_sync.api_client import InstanceApiClient
from session_sync.display import message_text
from session_sync.errors import InstanceNotReadyError, SessionNotFoundError, SessionSyncError
from session_sync.ids import create_id
from session_sync.store.message_store import InstanceMessageStore
from session_sync.store.models import RevertMarker, SessionRecord

DEFAULT_SHELL_AGENT = "build"
_PASTED_PLACEHOLDER_PREFIX = "pasted #"


@dataclass(frozen=True)
class UndoResult:
    message_id: str
    restored_text: str


class ActionDispatcher:
    """Locally initiated actions for one instance.

    Optimistic records are written before the HTTP call so the reconciler can
    later resolve them against the server's events. Failures are re-raised to
    the caller; optimistic state is left in place, marked as failed.
    """

    def __init__(
        self,
        store: InstanceMessageStore,
        client: InstanceApiClient | None,
        *,
        default_agent: str = "",
        default_provider_id: str = "",
        default_model_id: str = "",
        id_factory: Callable[[str], str] = create_id,
    ):
        self._store = store
        self._client = client
        self._default_agent = default_agent
        self._default_provider_id = default_provider_id
        self._default_model_id = default_model_id
        self._create_id = id_factory
        self._loaded: set[str] = set()
        self._loading: set[str] = set()
        self._log = logger.bind(instance_id=store.instance_id)

    def is_loaded(self, session_id: str) -> bool:
        return session_id in self._loaded

    def is_loading(self, session_id: str) -> bool:
        return session_id in self._loading

    # -- messages --

    async def send_message(
        self,
        session_id: str,
        prompt: str,
        attachments: Sequence[dict[str, Any]] = (),
    ) -> str:
        """Send a prompt. Returns the client-generated message id."""
        client = self._require_client()
        session = self._require_session(session_id)

        message_id = self._create_id("msg")
        text_part_id = self._create_id("part")
        optimistic_parts: list[dict[str, Any]] = [
            {"id": text_part_id, "type": "text", "text": prompt, "synthetic": True}
        ]
        request_parts: list[dict[str, Any]] = [{"id": text_part_id, "type": "text", "text": prompt}]

        for attachment in attachments:
            part = self._attachment_part(attachment)
            if part is None:
                continue
            request_parts.append(part)
            optimistic_parts.append({**part, "synthetic": True})

        self._store.upsert_message(
            message_id,
            session_id,
            role="user",
            status="sending",
            parts=optimistic_parts,
            is_ephemeral=True,
        )

        body: dict[str, Any] = {"messageID": message_id, "parts": request_parts}
        agent = session.agent or self._default_agent
        if agent:
            body["agent"] = agent
        provider_id, model_id = self._model_for(session)
        if provider_id and model_id:
            body["model"] = {"providerID": provider_id, "modelID": model_id}

        self._log.info(f"[HTTP] POST prompt to session {session_id} ({message_id})")
        try:
            await client.send_prompt(session_id, body)
        except Exception as ex:
            self._log.error(f"Failed to send prompt for {session_id}: {ex}")
            self._store.set_message_status(message_id, "error")
            raise
        return message_id

    def _attachment_part(self, attachment: dict[str, Any]) -> dict[str, Any] | None:
        kind = attachment.get("type")
        if kind == "file":
            return {
                "id": self._create_id("part"),
                "type": "file",
                "url": attachment.get("url"),
                "mime": attachment.get("mime"),
                "filename": attachment.get("filename"),
            }
        if kind == "text":
            display = attachment.get("display")
            value = attachment.get("value")
            if isinstance(display, str) and display.startswith(_PASTED_PLACEHOLDER_PREFIX):
                return None
            if not isinstance(value, str):
                return None
            return {"id": self._create_id("part"), "type": "text", "text": value}
        self._log.warning(f"Ignoring attachment of unknown type {kind!r}")
        return None

    async def run_command(self, session_id: str, command: str, arguments: str = "") -> None:
        client = self._require_client()
        session = self._require_session(session_id)
        body: dict[str, Any] = {
            "command": command,
            "arguments": arguments,
            "messageID": self._create_id("msg"),
        }
        agent = session.agent or self._default_agent
        if agent:
            body["agent"] = agent
        provider_id, model_id = self._model_for(session)
        if provider_id and model_id:
            body["model"] = f"{provider_id}/{model_id}"
        await client.run_command(session_id, body)

    async def run_shell(self, session_id: str, command: str) -> None:
        client = self._require_client()
        session = self._require_session(session_id)
        agent = session.agent or self._default_agent or DEFAULT_SHELL_AGENT
        await client.run_shell(session_id, {"agent": agent, "command": command})

    async def abort(self, session_id: str) -> None:
        client = self._require_client()
        self._require_session(session_id)
        self._log.info(f"[HTTP] Aborting session {session_id}")
        await client.abort(session_id)

    # -- history --

    async def revert(self, session_id: str, message_id: str) -> SessionRecord:
        client = self._require_client()
        self._require_session(session_id)
        response = await client.revert(session_id, message_id)
        if isinstance(response, dict) and response.get("id") == session_id:
            return self._apply_session_info(response)
        self._store.set_session_revert(session_id, RevertMarker(message_id=message_id))
        return self._store.get_session(session_id)

    async def undo_last(self, session_id: str) -> UndoResult | None:
        """Revert to the last user message before the current revert point.

        Returns None when there is nothing left to undo.
        """
        self._require_client()
        self._require_session(session_id)

        after = 0
        revert = self._store.get_session_revert(session_id)
        if revert is not None:
            after = self._created_at(revert.message_id)

        target = None
        for message_id in reversed(self._store.get_session_message_ids(session_id)):
            record = self._store.get_message(message_id)
            created = self._created_at(message_id)
            if record is None or record.role != "user" or record.is_ephemeral or not created:
                continue
            if after > 0 and created >= after:
                continue
            target = record
            break

        if target is None:
            self._log.info(f"Nothing to undo in session {session_id}")
            return None

        restored_text = message_text(target)
        await self.revert(session_id, target.id)
        return UndoResult(message_id=target.id, restored_text=restored_text)

    def _created_at(self, message_id: str) -> int:
        info = self._store.get_message_info(message_id) or {}
        created = (info.get("time") or {}).get("created")
        if isinstance(created, (int, float)):
            return int(created)
        record = self._store.get_message(message_id)
        return record.created_at if record else 0

    async def compact(self, session_id: str) -> None:
        client = self._require_client()
        session = self._require_session(session_id)
        provider_id, model_id = self._model_for(session)
        if not provider_id or not model_id:
            raise SessionSyncError(f"No model selected for session {session_id}")

        self._store.set_session_compacting(session_id, True)
        try:
            await client.summarize(session_id, provider_id, model_id)
        except Exception as ex:
            self._store.set_session_compacting(session_id, False)
            self._log.error(f"Failed to compact session {session_id}: {ex}")
            raise

    # -- sessions --

    async def create_session(self, title: str | None = None) -> SessionRecord:
        client = self._require_client()
        info = await client.create_session(title=title)
        session = self._apply_session_info(info)
        self._store.upsert_session(
            session.id,
            agent=session.agent or self._default_agent,
            provider_id=session.provider_id or self._default_provider_id,
            model_id=session.model_id or self._default_model_id,
        )
        self._log.info(f"Session created: {session.id}")
        return session

    async def fork_session(self, session_id: str, message_id: str | None = None) -> SessionRecord:
        client = self._require_client()
        self._require_session(session_id)
        info = await client.fork_session(session_id, message_id)
        if not isinstance(info, dict) or not info.get("id"):
            raise SessionSyncError("Failed to fork session: no data returned")
        session = self._apply_session_info(info)
        self._log.info(f"Session {session_id} forked into {session.id}")
        return session

    async def delete_session(self, session_id: str) -> None:
        client = self._require_client()
        await client.delete_session(session_id)
        self._store.clear_session(session_id)
        self._loaded.discard(session_id)
        self._loading.discard(session_id)
        self._log.info(f"Session deleted: {session_id}")

    async def fetch_sessions(self) -> list[SessionRecord]:
        """Replace the session listing with the server's.

        Sessions the server no longer lists are dropped; sessions still listed
        keep their loaded messages.
        """
        client = self._require_client()
        infos = await client.list_sessions()

        listed: list[SessionRecord] = []
        with self._store.emitter.batch():
            for info in infos:
                if isinstance(info, dict) and info.get("id"):
                    listed.append(self._apply_session_info(info))
            valid = {session.id for session in listed}
            for session in self._store.list_sessions():
                if session.id not in valid:
                    self._store.clear_session(session.id)
        self._loaded &= valid
        self._log.info(f"Fetched {len(listed)} session(s)")
        return listed

    async def load_messages(self, session_id: str, force: bool = False) -> bool:
        """Load a session's messages into the store. Returns False when skipped."""
        if force:
            self._loaded.discard(session_id)
        if session_id in self._loaded or session_id in self._loading:
            return False

        client = self._require_client()
        session = self._require_session(session_id)

        self._loading.add(session_id)
        try:
            raw_messages = await client.list_messages(session_id)
            self._store.seed_session_messages(session_id, raw_messages)
            agent, provider_id, model_id = self._model_from_history(raw_messages)
            self._store.upsert_session(
                session_id,
                agent=agent or session.agent or self._default_agent,
                provider_id=provider_id or session.provider_id or self._default_provider_id,
                model_id=model_id or session.model_id or self._default_model_id,
            )
            self._loaded.add(session_id)
        finally:
            self._loading.discard(session_id)

        self._store.refresh_permission_parts(session_id)
        return True

    @staticmethod
    def _model_from_history(raw_messages: list[dict[str, Any]]) -> tuple[str, str, str]:
        agent = provider_id = model_id = ""
        for raw in reversed(raw_messages):
            info = raw.get("info") if isinstance(raw.get("info"), dict) else raw
            if info.get("role") != "assistant":
                continue
            agent = info.get("mode") or info.get("agent") or ""
            provider_id = info.get("providerID") or ""
            model_id = info.get("modelID") or ""
            if agent and provider_id and model_id:
                break
        return agent, provider_id, model_id

    def _apply_session_info(self, info: dict[str, Any]) -> SessionRecord:
        model = info.get("model") if isinstance(info.get("model"), dict) else {}
        time = dict(info.get("time") or {})
        time.setdefault("compacting", False)
        return self._store.upsert_session(
            info["id"],
            title=info.get("title") or None,
            parent_id=info.get("parentID") or None,
            revert=RevertMarker.from_wire(info.get("revert")),
            time=time,
            agent=info.get("agent") or None,
            provider_id=model.get("providerID") or None,
            model_id=model.get("modelID") or None,
        )

    def _model_for(self, session: SessionRecord) -> tuple[str, str]:
        if session.provider_id and session.model_id:
            return session.provider_id, session.model_id
        return self._default_provider_id, self._default_model_id

    def _require_client(self) -> InstanceApiClient:
        if self._client is None:
            raise InstanceNotReadyError(self._store.instance_id)
        return self._client

    def _require_session(self, session_id: str) -> SessionRecord:
        session = self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session
