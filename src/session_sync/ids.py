from __future__ import annotations

import secrets
import time

ID_LENGTH = 26
_BASE62 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"

_last_timestamp = 0
_counter = 0


def create_id(prefix: str, *, now_ms: int | None = None) -> str:
    """Client-side id such as ``msg_0193ab12cd34XyZ...``.

    Twelve hex characters of ``(timestamp << 12) + counter`` keep ids created in
    the same process sortable by creation; a base62 tail makes them unique.
    """
    global _last_timestamp, _counter
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    if timestamp != _last_timestamp:
        _last_timestamp = timestamp
        _counter = 0
    _counter += 1

    value = ((timestamp << 12) + _counter) & 0xFFFFFFFFFFFF
    random_tail = "".join(secrets.choice(_BASE62) for _ in range(ID_LENGTH - 12))
    return f"{prefix}_{value:012x}{random_tail}"
