from __future__ import annotations

from typing import Any

import httpx
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from session_sync.errors import ApiError

_MAX_ATTEMPTS = 3


def _on_retry(retry_state):
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.1f}s (attempt {attempt}/{_MAX_ATTEMPTS})...")


class InstanceApiClient:
    """HTTP actions against one backend instance.

    Every non-2xx response raises ``ApiError``. Read-only GETs are retried on
    connection-level failures; mutating requests are sent exactly once.
    """

    def __init__(
        self,
        base_url: str,
        *,
        proxy_path: str = "",
        auth_token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._base_url = base_url.rstrip("/") + proxy_path.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- sessions --

    async def list_sessions(self) -> list[dict]:
        data = await self._get("/session")
        return data if isinstance(data, list) else []

    async def create_session(self, *, title: str | None = None, parent_id: str | None = None) -> dict:
        body: dict[str, Any] = {}
        if title:
            body["title"] = title
        if parent_id:
            body["parentID"] = parent_id
        return await self._send("POST", "/session", body)

    async def delete_session(self, session_id: str) -> None:
        await self._send("DELETE", f"/session/{session_id}")

    async def fork_session(self, session_id: str, message_id: str | None = None) -> dict:
        body = {"messageID": message_id} if message_id else {}
        return await self._send("POST", f"/session/{session_id}/fork", body)

    async def list_messages(self, session_id: str) -> list[dict]:
        data = await self._get(f"/session/{session_id}/message")
        return data if isinstance(data, list) else []

    # -- session actions --

    async def send_prompt(self, session_id: str, body: dict[str, Any]) -> Any:
        return await self._send("POST", f"/session/{session_id}/message", body)

    async def abort(self, session_id: str) -> Any:
        return await self._send("POST", f"/session/{session_id}/abort")

    async def run_command(self, session_id: str, body: dict[str, Any]) -> Any:
        return await self._send("POST", f"/session/{session_id}/command", body)

    async def run_shell(self, session_id: str, body: dict[str, Any]) -> Any:
        return await self._send("POST", f"/session/{session_id}/shell", body)

    async def revert(self, session_id: str, message_id: str, part_id: str | None = None) -> Any:
        body = {"messageID": message_id}
        if part_id:
            body["partID"] = part_id
        return await self._send("POST", f"/session/{session_id}/revert", body)

    async def summarize(self, session_id: str, provider_id: str, model_id: str) -> Any:
        body = {"providerID": provider_id, "modelID": model_id}
        return await self._send("POST", f"/session/{session_id}/summarize", body)

    async def respond_permission(self, session_id: str, permission_id: str, response: str) -> Any:
        path = f"/session/{session_id}/permissions/{permission_id}"
        return await self._send("POST", path, {"response": response})

    # -- plumbing --

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(_MAX_ATTEMPTS),
        before_sleep=_on_retry,
        reraise=True,
    )
    async def _get(self, path: str) -> Any:
        response = await self._client.get(path)
        return self._decode("GET", path, response)

    async def _send(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        response = await self._client.request(method, path, json=body)
        return self._decode(method, path, response)

    @staticmethod
    def _decode(method: str, path: str, response: httpx.Response) -> Any:
        if not response.is_success:
            logger.error(f"{method} {path} -> HTTP {response.status_code}")
            raise ApiError(method, path, response.status_code, response.text[:500])
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text
