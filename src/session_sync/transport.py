"""Event-stream connections to backend instances.

One connection per instance. Frames arrive as ``data:`` lines of a
``text/event-stream`` response (or as bare JSON lines) and are decoded into the
typed event union before any listener sees them. A failed or ended stream is
retried with a linear backoff until the consecutive-failure ceiling is reached,
after which the connection is dropped and ``on_connection_lost`` fires.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal

import httpx
from loguru import logger

from session_sync.errors import MalformedEventError
from session_sync.events import SyncEvent, UnknownEvent, parse_event_data

ConnectionStatus = Literal["connecting", "connected", "disconnected", "error"]
StreamOpener = Callable[[str], Awaitable[AsyncIterator[str]]]
EventListener = Callable[[str, SyncEvent], None]
StatusListener = Callable[[str, ConnectionStatus], None]
ConnectionLostListener = Callable[[str, str], None]


@dataclass
class _Connection:
    instance_id: str
    url: str
    failures: int = 0
    status: ConnectionStatus = "connecting"
    task: asyncio.Task | None = None
    timer: asyncio.TimerHandle | None = None
    data_lines: list[str] = field(default_factory=list)


class EventTransport:
    def __init__(
        self,
        *,
        opener: StreamOpener | None = None,
        headers: dict[str, str] | None = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 5.0,
        on_event: EventListener | None = None,
        on_status: StatusListener | None = None,
        on_connection_lost: ConnectionLostListener | None = None,
    ):
        self._opener = opener or self._open_http_stream
        self._headers = dict(headers or {})
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self.on_event = on_event
        self.on_status = on_status
        self.on_connection_lost = on_connection_lost
        self._connections: dict[str, _Connection] = {}
        self._statuses: dict[str, ConnectionStatus] = {}

    def connect(self, instance_id: str, url: str) -> None:
        """Open (or reopen) the stream for an instance. Must be called on the running loop."""
        self._start(instance_id, url, failures=0)

    def disconnect(self, instance_id: str) -> None:
        connection = self._connections.pop(instance_id, None)
        if connection is None:
            return
        self._teardown(connection)
        self._set_status(connection, "disconnected")
        logger.bind(instance_id=instance_id).info(f"[SSE] Disconnected from instance {instance_id}")

    async def close(self) -> None:
        tasks = [conn.task for conn in self._connections.values() if conn.task is not None]
        for instance_id in list(self._connections):
            self.disconnect(instance_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_status(self, instance_id: str) -> ConnectionStatus | None:
        return self._statuses.get(instance_id)

    def get_statuses(self) -> dict[str, ConnectionStatus]:
        return dict(self._statuses)

    def is_connected(self, instance_id: str) -> bool:
        return instance_id in self._connections

    def pending_reconnect(self, instance_id: str) -> bool:
        connection = self._connections.get(instance_id)
        return connection is not None and connection.timer is not None

    def _start(self, instance_id: str, url: str, *, failures: int) -> None:
        existing = self._connections.get(instance_id)
        if existing is not None:
            self._teardown(existing)

        loop = asyncio.get_running_loop()
        connection = _Connection(instance_id=instance_id, url=url, failures=failures)
        self._connections[instance_id] = connection
        self._set_status(connection, "connecting")
        connection.task = loop.create_task(self._run(connection))

    async def _run(self, connection: _Connection) -> None:
        log = logger.bind(instance_id=connection.instance_id)
        try:
            lines = await self._opener(connection.url)
            if not self._is_current(connection):
                return
            connection.failures = 0
            self._set_status(connection, "connected")
            log.info(f"[SSE] Connected to instance {connection.instance_id}")
            async for line in lines:
                self._handle_line(connection, line)
            self._flush_data(connection)
            reason = "Event stream closed by server"
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            reason = f"Connection to instance lost: {type(ex).__name__}: {ex}"
        if self._is_current(connection):
            self._handle_error(connection, reason)

    def _handle_line(self, connection: _Connection, line: str) -> None:
        if not line.strip():
            self._flush_data(connection)
        elif line.startswith(":"):
            return
        elif line.startswith("data:"):
            value = line[5:]
            connection.data_lines.append(value[1:] if value.startswith(" ") else value)
        elif line.lstrip().startswith("{"):
            self._flush_data(connection)
            self._dispatch(connection, line)

    def _flush_data(self, connection: _Connection) -> None:
        if not connection.data_lines:
            return
        data = "\n".join(connection.data_lines)
        connection.data_lines = []
        self._dispatch(connection, data)

    def _dispatch(self, connection: _Connection, data: str) -> None:
        log = logger.bind(instance_id=connection.instance_id)
        try:
            event = parse_event_data(data)
        except MalformedEventError as ex:
            log.warning(f"[SSE] Dropping malformed event: {ex}")
            return
        if isinstance(event, UnknownEvent):
            log.debug(f"[SSE] Unknown event type: {event.type}")
        if self.on_event is None:
            return
        try:
            self.on_event(connection.instance_id, event)
        except Exception as ex:
            log.exception(f"[SSE] Event handler failed: {ex}")

    def _handle_error(self, connection: _Connection, reason: str) -> None:
        log = logger.bind(instance_id=connection.instance_id)
        connection.task = None
        self._set_status(connection, "error")
        connection.failures += 1
        log.error(f"[SSE] Connection error for instance {connection.instance_id}: {reason}")

        if connection.failures >= self._max_attempts:
            self._connections.pop(connection.instance_id, None)
            self._teardown(connection)
            self._set_status(connection, "disconnected")
            log.error(f"[SSE] Giving up on instance {connection.instance_id} after {connection.failures} attempts")
            if self.on_connection_lost is not None:
                self.on_connection_lost(connection.instance_id, reason)
            return

        delay = min(connection.failures * self._base_delay, self._max_delay)
        self._set_status(connection, "connecting")
        log.warning(
            f"[SSE] Attempting reconnect {connection.failures} for instance {connection.instance_id} in {delay:.1f}s"
        )
        loop = asyncio.get_running_loop()
        connection.timer = loop.call_later(delay, self._reconnect, connection)

    def _reconnect(self, connection: _Connection) -> None:
        connection.timer = None
        if not self._is_current(connection):
            return
        self._start(connection.instance_id, connection.url, failures=connection.failures)

    def _teardown(self, connection: _Connection) -> None:
        if connection.timer is not None:
            connection.timer.cancel()
            connection.timer = None
        task = connection.task
        connection.task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _is_current(self, connection: _Connection) -> bool:
        return self._connections.get(connection.instance_id) is connection

    def _set_status(self, connection: _Connection, status: ConnectionStatus) -> None:
        connection.status = status
        if self._statuses.get(connection.instance_id) == status:
            return
        self._statuses[connection.instance_id] = status
        if self.on_status is not None:
            self.on_status(connection.instance_id, status)

    async def _open_http_stream(self, url: str) -> AsyncIterator[str]:
        client = httpx.AsyncClient(
            headers={"Accept": "text/event-stream", **self._headers},
            timeout=httpx.Timeout(10.0, read=None),
        )
        try:
            response = await client.send(client.build_request("GET", url), stream=True)
        except BaseException:
            await client.aclose()
            raise
        if not response.is_success:
            status = response.status_code
            await response.aclose()
            await client.aclose()
            raise httpx.HTTPStatusError(f"HTTP {status} from event stream", request=response.request, response=response)
        return self._iter_lines(client, response)

    @staticmethod
    async def _iter_lines(client: httpx.AsyncClient, response: httpx.Response) -> AsyncIterator[str]:
        try:
            async for line in response.aiter_lines():
                yield line
        finally:
            await response.aclose()
            await client.aclose()
