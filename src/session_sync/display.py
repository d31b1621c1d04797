from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from session_sync.store.models import MessageRecord, PartRecord


@dataclass(frozen=True)
class DisplayParts:
    text: list[PartRecord] = field(default_factory=list)
    tool: list[PartRecord] = field(default_factory=list)
    reasoning: list[PartRecord] = field(default_factory=list)
    show_reasoning: bool = False
    revision: int = 0

    @property
    def combined(self) -> list[PartRecord]:
        return [*self.text, *self.reasoning]


def _has_renderable_text(data: dict[str, Any]) -> bool:
    text = data.get("text")
    if isinstance(text, str):
        return bool(text.strip())
    if isinstance(text, dict):
        for key in ("value", "text"):
            if isinstance(text.get(key), str) and text[key].strip():
                return True
        if isinstance(text.get("content"), list) and text["content"]:
            return True
    content = data.get("content")
    if isinstance(content, list):
        return any(
            (isinstance(item, str) and item.strip())
            or (isinstance(item, dict) and isinstance(item.get("text"), str) and item["text"].strip())
            for item in content
        )
    return False


def display_parts(message: MessageRecord, show_reasoning: bool = False) -> DisplayParts:
    """Group a message's parts for presentation.

    The reasoning preference only filters what is shown; it never affects the
    revisions kept by the store.
    """
    text: list[PartRecord] = []
    tool: list[PartRecord] = []
    reasoning: list[PartRecord] = []
    for part in message.ordered_parts():
        part_type = part.data.get("type")
        if part_type == "text" and not part.data.get("synthetic") and _has_renderable_text(part.data):
            text.append(part)
        elif part_type == "tool":
            tool.append(part)
        elif part_type == "reasoning" and show_reasoning and _has_renderable_text(part.data):
            reasoning.append(part)
    return DisplayParts(
        text=text,
        tool=tool,
        reasoning=reasoning,
        show_reasoning=show_reasoning,
        revision=message.revision,
    )


def part_text(part: PartRecord) -> str:
    text = part.data.get("text")
    if isinstance(text, str):
        return text
    if isinstance(text, dict):
        for key in ("value", "text"):
            if isinstance(text.get(key), str):
                return text[key]
    return ""


def message_text(message: MessageRecord) -> str:
    """Plain text of a message's text parts, synthetic ones included."""
    chunks = [part_text(part) for part in message.ordered_parts() if part.data.get("type") == "text"]
    return "\n".join(chunk for chunk in chunks if chunk)
