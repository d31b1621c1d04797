from __future__ import annotations

from typing import Any

from loguru import logger

from session_sync.api_client import InstanceApiClient
from session_sync.errors import InstanceNotReadyError
from session_sync.store.message_store import InstanceMessageStore
from session_sync.store.models import PermissionEntry

PERMISSION_RESPONSES = frozenset({"once", "always", "reject"})


class PermissionManager:
    """Permission requests for one instance.

    A reply is sent at most once per permission at a time, and the entry leaves
    the queue only after the backend accepted the reply.
    """

    def __init__(self, store: InstanceMessageStore, client: InstanceApiClient | None = None):
        self._store = store
        self._client = client
        self._in_flight: set[str] = set()
        self._log = logger.bind(instance_id=store.instance_id)

    @property
    def active(self) -> PermissionEntry | None:
        return self._store.permissions.active

    def queued(self) -> list[PermissionEntry]:
        return self._store.permissions.ordered()

    def pending_for_session(self, session_id: str) -> list[PermissionEntry]:
        return self._store.permissions.entries_for_session(session_id)

    def is_in_flight(self, permission_id: str) -> bool:
        return permission_id in self._in_flight

    def enqueue(self, permission: dict[str, Any]) -> bool:
        return self._store.upsert_permission(permission)

    def remove(self, permission_id: str) -> PermissionEntry | None:
        return self._store.remove_permission(permission_id)

    def refresh_session(self, session_id: str) -> int:
        return self._store.refresh_permission_parts(session_id)

    def clear(self) -> None:
        self._in_flight.clear()
        self._store.clear_permissions()

    async def respond(self, session_id: str, permission_id: str, response: str) -> bool:
        """Send a reply. Returns False when a reply for this permission is already in flight."""
        if response not in PERMISSION_RESPONSES:
            raise ValueError(f"Unsupported permission response: {response!r}")
        if self._client is None:
            raise InstanceNotReadyError(self._store.instance_id)
        if permission_id in self._in_flight:
            self._log.debug(f"Permission {permission_id} reply already in flight")
            return False

        self._in_flight.add(permission_id)
        try:
            await self._client.respond_permission(session_id, permission_id, response)
        except Exception as ex:
            self._log.error(f"Failed to send permission response for {permission_id}: {ex}")
            raise
        finally:
            self._in_flight.discard(permission_id)

        self._store.remove_permission(permission_id)
        self._log.info(f"Permission {permission_id} answered: {response}")
        return True
