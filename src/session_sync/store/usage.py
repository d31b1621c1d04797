from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from session_sync.store.models import SessionUsageState, UsageEntry


def _int(value: Any) -> int:
    return int(value) if isinstance(value, (int, float)) else 0


def extract_usage_entry(info: dict[str, Any] | None) -> UsageEntry | None:
    """Accounting for one assistant message, or None when it carries no tokens."""
    if not info or info.get("role") != "assistant":
        return None
    message_id = info.get("id")
    if not isinstance(message_id, str) or not message_id:
        return None
    tokens = info.get("tokens")
    if not isinstance(tokens, dict):
        return None

    cache = tokens.get("cache") if isinstance(tokens.get("cache"), dict) else {}
    input_tokens = _int(tokens.get("input"))
    output_tokens = _int(tokens.get("output"))
    reasoning_tokens = _int(tokens.get("reasoning"))
    cache_read = _int(cache.get("read"))
    cache_write = _int(cache.get("write"))
    if not any((input_tokens, output_tokens, reasoning_tokens, cache_read, cache_write)):
        return None

    # Summary messages replace the context, so only their output counts toward it.
    if info.get("summary"):
        combined = output_tokens
    else:
        combined = input_tokens + cache_read + cache_write + output_tokens + reasoning_tokens

    cost = info.get("cost")
    return UsageEntry(
        message_id=message_id,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        reasoning_tokens=reasoning_tokens,
        cache_read_tokens=cache_read,
        cache_write_tokens=cache_write,
        combined_tokens=combined,
        cost=float(cost) if isinstance(cost, (int, float)) else 0.0,
        timestamp=_int((info.get("time") or {}).get("created")),
        has_context_usage=input_tokens + cache_read + cache_write > 0,
    )


def apply_usage(state: SessionUsageState, entry: UsageEntry | None) -> None:
    if entry is None:
        return
    state.entries[entry.message_id] = entry
    state.total_input_tokens += entry.input_tokens
    state.total_output_tokens += entry.output_tokens
    state.total_reasoning_tokens += entry.reasoning_tokens
    state.total_cache_read_tokens += entry.cache_read_tokens
    state.total_cache_write_tokens += entry.cache_write_tokens
    state.total_cost += entry.cost
    latest = state.entries.get(state.latest_message_id) if state.latest_message_id else None
    if latest is None or entry.timestamp >= latest.timestamp:
        state.latest_message_id = entry.message_id
        state.actual_usage_tokens = entry.combined_tokens


def remove_usage(state: SessionUsageState, message_id: str | None) -> UsageEntry | None:
    if not message_id:
        return None
    existing = state.entries.pop(message_id, None)
    if existing is None:
        return None
    state.total_input_tokens -= existing.input_tokens
    state.total_output_tokens -= existing.output_tokens
    state.total_reasoning_tokens -= existing.reasoning_tokens
    state.total_cache_read_tokens -= existing.cache_read_tokens
    state.total_cache_write_tokens -= existing.cache_write_tokens
    state.total_cost -= existing.cost
    if state.latest_message_id == message_id:
        state.latest_message_id = None
        state.actual_usage_tokens = 0
        latest: UsageEntry | None = None
        for candidate in state.entries.values():
            if latest is None or candidate.timestamp >= latest.timestamp:
                latest = candidate
        if latest is not None:
            state.latest_message_id = latest.message_id
            state.actual_usage_tokens = latest.combined_tokens
    return existing


def rebuild_usage_state(infos: Iterable[dict[str, Any]]) -> SessionUsageState:
    state = SessionUsageState()
    for info in infos:
        apply_usage(state, extract_usage_entry(info))
    return state
