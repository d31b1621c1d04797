from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

MessageRole = Literal["user", "assistant"]
MessageStatus = Literal["sending", "streaming", "complete", "error"]

# Out-of-order delivery must never move a message backwards through its lifecycle.
STATUS_RANK: dict[str, int] = {"sending": 0, "streaming": 1, "complete": 2, "error": 2}


@dataclass(frozen=True)
class RevertMarker:
    message_id: str
    part_id: str | None = None
    snapshot: str | None = None
    diff: str | None = None

    @classmethod
    def from_wire(cls, raw: Any) -> "RevertMarker | None":
        if not isinstance(raw, dict):
            return None
        message_id = raw.get("messageID")
        if not isinstance(message_id, str) or not message_id:
            return None
        return cls(
            message_id=message_id,
            part_id=raw.get("partID"),
            snapshot=raw.get("snapshot"),
            diff=raw.get("diff"),
        )


@dataclass
class SessionRecord:
    id: str
    created_at: int
    updated_at: int
    title: str | None = None
    parent_id: str | None = None
    message_ids: list[str] = field(default_factory=list)
    revert: RevertMarker | None = None
    time: dict[str, Any] = field(default_factory=dict)
    pending_permission: bool = False
    agent: str = ""
    provider_id: str = ""
    model_id: str = ""

    @property
    def is_compacting(self) -> bool:
        flag = self.time.get("compacting")
        if isinstance(flag, bool):
            return flag
        if isinstance(flag, (int, float)):
            return flag > 0
        return bool(flag)


@dataclass(frozen=True)
class PermissionState:
    permission_id: str
    active: bool


@dataclass
class PartRecord:
    id: str
    data: dict[str, Any]
    revision: int = 0
    permission: PermissionState | None = None


@dataclass
class MessageRecord:
    id: str
    session_id: str
    role: MessageRole
    status: MessageStatus
    created_at: int
    updated_at: int
    is_ephemeral: bool = False
    revision: int = 0
    part_ids: list[str] = field(default_factory=list)
    parts: dict[str, PartRecord] = field(default_factory=dict)

    def ordered_parts(self) -> list[PartRecord]:
        return [self.parts[pid] for pid in self.part_ids if pid in self.parts]


@dataclass(frozen=True)
class PendingPartEntry:
    message_id: str
    part: dict[str, Any]
    received_at: int


@dataclass(frozen=True)
class PermissionEntry:
    permission: dict[str, Any]
    sequence: int

    @property
    def id(self) -> str:
        return self.permission["id"]

    @property
    def session_id(self) -> str:
        return self.permission.get("sessionID", "")

    @property
    def message_id(self) -> str | None:
        value = self.permission.get("messageID")
        return value if isinstance(value, str) and value else None

    @property
    def part_id(self) -> str | None:
        value = self.permission.get("callID")
        return value if isinstance(value, str) and value else None

    @property
    def metadata(self) -> dict[str, Any]:
        value = self.permission.get("metadata")
        return value if isinstance(value, dict) else {}

    @property
    def created_at(self) -> int:
        created = (self.permission.get("time") or {}).get("created")
        return int(created) if isinstance(created, (int, float)) else 0


@dataclass(frozen=True)
class PermissionLookup:
    entry: PermissionEntry
    active: bool


@dataclass(frozen=True)
class UsageEntry:
    message_id: str
    input_tokens: int
    output_tokens: int
    reasoning_tokens: int
    cache_read_tokens: int
    cache_write_tokens: int
    combined_tokens: int
    cost: float
    timestamp: int
    has_context_usage: bool


@dataclass
class SessionUsageState:
    entries: dict[str, UsageEntry] = field(default_factory=dict)
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_reasoning_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_cache_write_tokens: int = 0
    total_cost: float = 0.0
    actual_usage_tokens: int = 0
    latest_message_id: str | None = None


@dataclass(frozen=True)
class ScrollSnapshot:
    scroll_top: float
    at_bottom: bool
    updated_at: int
