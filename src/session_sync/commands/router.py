from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_session: Callable[[str], Awaitable[None]],
        on_fork: Callable[[str], Awaitable[None]],
        on_undo: Callable[[], Awaitable[None]],
        on_revert: Callable[[str], Awaitable[None]],
        on_compact: Callable[[], Awaitable[None]],
        on_abort: Callable[[], Awaitable[None]],
        on_permission: Callable[[str], Awaitable[None]],
        on_shell: Callable[[str], Awaitable[None]],
        on_status: Callable[[], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_session = on_session
        self._on_fork = on_fork
        self._on_undo = on_undo
        self._on_revert = on_revert
        self._on_compact = on_compact
        self._on_abort = on_abort
        self._on_permission = on_permission
        self._on_shell = on_shell
        self._on_status = on_status
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if trimmed.startswith("!"):
            await self._on_shell(trimmed[1:].strip())
            return True
        if not trimmed.startswith("/"):
            return False

        if trimmed == "/help":
            await self._on_help()
            return True
        if trimmed.startswith("/session"):
            await self._on_session(trimmed)
            return True
        if trimmed.startswith("/fork"):
            await self._on_fork(trimmed)
            return True
        if trimmed == "/undo":
            await self._on_undo()
            return True
        if trimmed.startswith("/revert"):
            await self._on_revert(trimmed)
            return True
        if trimmed == "/compact":
            await self._on_compact()
            return True
        if trimmed == "/abort":
            await self._on_abort()
            return True
        if trimmed.startswith("/permission"):
            await self._on_permission(trimmed)
            return True
        if trimmed == "/status":
            await self._on_status()
            return True

        self._on_unknown(trimmed)
        return True
