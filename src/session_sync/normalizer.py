from __future__ import annotations

import copy
import re
from typing import Any

_ENTITY_PATTERN = re.compile(r"&(#[xX][0-9a-fA-F]+|#[0-9]+|[a-zA-Z][a-zA-Z0-9]+);")
_NAMED_ENTITIES = {
    "amp": "&",
    "lt": "<",
    "gt": ">",
    "quot": '"',
    "apos": "'",
    "nbsp": " ",
}


def _replace_entity(match: re.Match) -> str:
    entity = match.group(1)
    if entity.startswith("#"):
        try:
            if entity[1] in "xX":
                return chr(int(entity[2:], 16))
            return chr(int(entity[1:], 10))
        except (ValueError, OverflowError):
            return match.group(0)
    decoded = _NAMED_ENTITIES.get(entity.lower())
    return decoded if decoded is not None else match.group(0)


def decode_html_entities(content: str) -> str:
    """Decode HTML entities until the text stops changing (handles ``&amp;lt;``)."""
    if "&" not in content:
        return content
    result = content
    previous = None
    while "&" in result and result != previous:
        previous = result
        result = _ENTITY_PATTERN.sub(_replace_entity, result)
    return result


def _decode_segment(segment: Any) -> Any:
    if isinstance(segment, str):
        return decode_html_entities(segment)
    if isinstance(segment, dict):
        updated = dict(segment)
        if isinstance(updated.get("text"), str):
            updated["text"] = decode_html_entities(updated["text"])
        if isinstance(updated.get("value"), str):
            updated["value"] = decode_html_entities(updated["value"])
        if isinstance(updated.get("content"), list):
            updated["content"] = [_decode_segment(item) for item in updated["content"]]
        return updated
    return segment


def normalize_part(raw: Any) -> Any:
    """Return a canonical copy of a wire part.

    The input is never mutated. Cached render output is always dropped so a
    consumer can never reuse HTML rendered from older content; text payloads
    are entity-decoded.
    """
    if not isinstance(raw, dict):
        return raw

    normalized = copy.deepcopy(raw)
    normalized.pop("renderCache", None)

    if normalized.get("type") != "text":
        return normalized

    text = normalized.get("text")
    if isinstance(text, str):
        normalized["text"] = decode_html_entities(text)
    elif isinstance(text, dict):
        if isinstance(text.get("value"), str):
            text["value"] = decode_html_entities(text["value"])
        if isinstance(text.get("content"), list):
            text["content"] = [_decode_segment(item) for item in text["content"]]
        if isinstance(text.get("text"), str):
            text["text"] = decode_html_entities(text["text"])

    if isinstance(normalized.get("content"), list):
        normalized["content"] = [_decode_segment(item) for item in normalized["content"]]

    thinking = normalized.get("thinking")
    if isinstance(thinking, dict) and isinstance(thinking.get("content"), list):
        thinking["content"] = [_decode_segment(item) for item in thinking["content"]]

    return normalized


def ensure_part_id(message_id: str, part: dict[str, Any], index: int) -> str:
    part_id = part.get("id")
    if isinstance(part_id, str) and part_id:
        return part_id
    return f"{message_id}-part-{index}"


def initialize_part_version(part: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(part.get("version"), int):
        part["version"] = 0
    return part


def part_content_key(part: dict[str, Any]) -> dict[str, Any]:
    """The part payload with bookkeeping fields removed, for change detection."""
    return {k: v for k, v in part.items() if k not in ("version", "renderCache")}


def normalize_message(raw: dict[str, Any]) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    """Split a listed message (``{info, parts}`` or a bare info) into info and normalized parts."""
    info = raw.get("info") if isinstance(raw.get("info"), dict) else raw
    raw_parts = raw.get("parts") if isinstance(raw.get("parts"), list) else []
    parts = [normalize_part(part) for part in raw_parts if isinstance(part, dict)]
    return copy.deepcopy(info), parts


def resolve_role(info: dict[str, Any] | None) -> str:
    if info is not None and info.get("role") == "user":
        return "user"
    return "assistant"


def resolve_status(info: dict[str, Any]) -> str:
    """Lifecycle status implied by an authoritative message info."""
    if info.get("error"):
        return "error"
    if resolve_role(info) == "user":
        return "complete"
    time = info.get("time") if isinstance(info.get("time"), dict) else {}
    if time.get("completed"):
        return "complete"
    return "streaming"


def info_timestamps(info: dict[str, Any]) -> tuple[int | None, int | None]:
    time = info.get("time") if isinstance(info.get("time"), dict) else {}
    created = time.get("created")
    completed = time.get("completed")
    created_at = int(created) if isinstance(created, (int, float)) else None
    updated_at = int(completed) if isinstance(completed, (int, float)) else created_at
    return created_at, updated_at
