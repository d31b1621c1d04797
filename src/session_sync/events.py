"""Typed events delivered by a backend instance's event stream.

Every frame on the wire is a JSON object ``{"type": ..., "properties": {...}}``.
Frames are decoded once, at the transport boundary, into one of the frozen
dataclasses below. A frame whose type is known but which lacks the fields that
type requires raises ``MalformedEventError``; a frame with an unrecognised type
becomes an ``UnknownEvent`` so newer servers do not break older clients.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Union

from session_sync.errors import MalformedEventError

TOAST_VARIANTS = frozenset({"info", "success", "warning", "error"})


def _require_dict(properties: dict[str, Any], key: str, event_type: str) -> dict[str, Any]:
    value = properties.get(key)
    if not isinstance(value, dict):
        raise MalformedEventError(f"{event_type}: missing object field {key!r}")
    return value


def _require_str(container: dict[str, Any], key: str, event_type: str) -> str:
    value = container.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedEventError(f"{event_type}: missing string field {key!r}")
    return value


@dataclass(frozen=True)
class MessageUpdated:
    TYPE: ClassVar[str] = "message.updated"
    info: dict[str, Any]

    @property
    def session_id(self) -> str:
        return self.info["sessionID"]

    @property
    def message_id(self) -> str:
        return self.info["id"]

    @property
    def role(self) -> str:
        return "user" if self.info.get("role") == "user" else "assistant"

    @classmethod
    def decode(cls, properties: dict[str, Any]) -> "MessageUpdated":
        info = _require_dict(properties, "info", cls.TYPE)
        _require_str(info, "id", cls.TYPE)
        _require_str(info, "sessionID", cls.TYPE)
        return cls(info=info)


@dataclass(frozen=True)
class MessagePartUpdated:
    TYPE: ClassVar[str] = "message.part.updated"
    part: dict[str, Any]
    message: dict[str, Any] | None = None

    @property
    def session_id(self) -> str:
        return self.part["sessionID"]

    @property
    def message_id(self) -> str:
        return self.part["messageID"]

    @property
    def role(self) -> str | None:
        """Role from the attached message info, or None when the event carries only the part."""
        if self.message is None:
            return None
        return "user" if self.message.get("role") == "user" else "assistant"

    @classmethod
    def decode(cls, properties: dict[str, Any]) -> "MessagePartUpdated":
        part = _require_dict(properties, "part", cls.TYPE)
        _require_str(part, "sessionID", cls.TYPE)
        _require_str(part, "messageID", cls.TYPE)
        message = properties.get("message")
        return cls(part=part, message=message if isinstance(message, dict) else None)


@dataclass(frozen=True)
class MessageRemoved:
    TYPE: ClassVar[str] = "message.removed"
    session_id: str
    message_id: str | None = None

    @classmethod
    def decode(cls, properties: dict[str, Any]) -> "MessageRemoved":
        message_id = properties.get("messageID")
        return cls(
            session_id=_require_str(properties, "sessionID", cls.TYPE),
            message_id=message_id if isinstance(message_id, str) else None,
        )


@dataclass(frozen=True)
class MessagePartRemoved:
    TYPE: ClassVar[str] = "message.part.removed"
    session_id: str
    message_id: str | None = None
    part_id: str | None = None

    @classmethod
    def decode(cls, properties: dict[str, Any]) -> "MessagePartRemoved":
        message_id = properties.get("messageID")
        part_id = properties.get("partID")
        return cls(
            session_id=_require_str(properties, "sessionID", cls.TYPE),
            message_id=message_id if isinstance(message_id, str) else None,
            part_id=part_id if isinstance(part_id, str) else None,
        )


@dataclass(frozen=True)
class SessionUpdated:
    TYPE: ClassVar[str] = "session.updated"
    info: dict[str, Any]

    @property
    def session_id(self) -> str:
        return self.info["id"]

    @classmethod
    def decode(cls, properties: dict[str, Any]) -> "SessionUpdated":
        info = _require_dict(properties, "info", cls.TYPE)
        _require_str(info, "id", cls.TYPE)
        return cls(info=info)


@dataclass(frozen=True)
class SessionCompacted:
    TYPE: ClassVar[str] = "session.compacted"
    session_id: str

    @classmethod
    def decode(cls, properties: dict[str, Any]) -> "SessionCompacted":
        return cls(session_id=_require_str(properties, "sessionID", cls.TYPE))


@dataclass(frozen=True)
class SessionError:
    TYPE: ClassVar[str] = "session.error"
    session_id: str | None = None
    error: dict[str, Any] | None = None

    @property
    def message(self) -> str:
        error = self.error or {}
        data = error.get("data")
        if isinstance(data, dict) and isinstance(data.get("message"), str):
            return data["message"]
        if isinstance(error.get("message"), str):
            return error["message"]
        return "Unknown error"

    @classmethod
    def decode(cls, properties: dict[str, Any]) -> "SessionError":
        session_id = properties.get("sessionID")
        error = properties.get("error")
        return cls(
            session_id=session_id if isinstance(session_id, str) and session_id else None,
            error=error if isinstance(error, dict) else None,
        )


@dataclass(frozen=True)
class SessionIdle:
    TYPE: ClassVar[str] = "session.idle"
    session_id: str

    @classmethod
    def decode(cls, properties: dict[str, Any]) -> "SessionIdle":
        return cls(session_id=_require_str(properties, "sessionID", cls.TYPE))


@dataclass(frozen=True)
class PermissionUpdated:
    TYPE: ClassVar[str] = "permission.updated"
    permission: dict[str, Any]

    @property
    def permission_id(self) -> str:
        return self.permission["id"]

    @property
    def session_id(self) -> str:
        return self.permission["sessionID"]

    @classmethod
    def decode(cls, properties: dict[str, Any]) -> "PermissionUpdated":
        _require_str(properties, "id", cls.TYPE)
        _require_str(properties, "sessionID", cls.TYPE)
        return cls(permission=dict(properties))


@dataclass(frozen=True)
class PermissionReplied:
    TYPE: ClassVar[str] = "permission.replied"
    permission_id: str
    session_id: str | None = None
    response: str | None = None

    @classmethod
    def decode(cls, properties: dict[str, Any]) -> "PermissionReplied":
        session_id = properties.get("sessionID")
        response = properties.get("response")
        return cls(
            permission_id=_require_str(properties, "permissionID", cls.TYPE),
            session_id=session_id if isinstance(session_id, str) else None,
            response=response if isinstance(response, str) else None,
        )


@dataclass(frozen=True)
class ToastShown:
    TYPE: ClassVar[str] = "tui.toast.show"
    message: str
    variant: str = "info"
    title: str | None = None
    duration: float | None = None

    @classmethod
    def decode(cls, properties: dict[str, Any]) -> "ToastShown":
        message = _require_str(properties, "message", cls.TYPE)
        if not message.strip():
            raise MalformedEventError(f"{cls.TYPE}: empty message")
        variant = properties.get("variant")
        title = properties.get("title")
        duration = properties.get("duration")
        return cls(
            message=message,
            variant=variant if variant in TOAST_VARIANTS else "info",
            title=title if isinstance(title, str) else None,
            duration=float(duration) if isinstance(duration, (int, float)) else None,
        )


@dataclass(frozen=True)
class UnknownEvent:
    type: str
    properties: dict[str, Any] = field(default_factory=dict)


SyncEvent = Union[
    MessageUpdated,
    MessagePartUpdated,
    MessageRemoved,
    MessagePartRemoved,
    SessionUpdated,
    SessionCompacted,
    SessionError,
    SessionIdle,
    PermissionUpdated,
    PermissionReplied,
    ToastShown,
    UnknownEvent,
]

_DECODERS: dict[str, Callable[[dict[str, Any]], SyncEvent]] = {
    cls.TYPE: cls.decode
    for cls in (
        MessageUpdated,
        MessagePartUpdated,
        MessageRemoved,
        MessagePartRemoved,
        SessionUpdated,
        SessionCompacted,
        SessionError,
        SessionIdle,
        PermissionUpdated,
        PermissionReplied,
        ToastShown,
    )
}


def decode_event(frame: object) -> SyncEvent:
    if not isinstance(frame, dict):
        raise MalformedEventError(f"Event frame is not an object: {type(frame).__name__}")
    event_type = frame.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("Event frame has no type")
    properties = frame.get("properties")
    if properties is None:
        properties = {}
    if not isinstance(properties, dict):
        raise MalformedEventError(f"{event_type}: properties is not an object")

    decoder = _DECODERS.get(event_type)
    if decoder is None:
        return UnknownEvent(type=event_type, properties=properties)
    return decoder(properties)


def parse_event_data(data: str) -> SyncEvent:
    try:
        frame = json.loads(data)
    except json.JSONDecodeError as ex:
        raise MalformedEventError(f"Event frame is not valid JSON: {ex}") from ex
    return decode_event(frame)
