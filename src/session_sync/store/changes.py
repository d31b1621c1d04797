from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from loguru import logger


@dataclass(frozen=True)
class ChangeSet:
    instance_id: str
    keys: frozenset[str]


ChangeListener = Callable[[ChangeSet], None]


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def message_key(message_id: str) -> str:
    return f"message:{message_id}"


def usage_key(session_id: str) -> str:
    return f"usage:{session_id}"


def scroll_key(session_id: str, scope: str) -> str:
    return f"scroll:{session_id}:{scope}"


PERMISSIONS_KEY = "permissions"
SESSIONS_KEY = "sessions"


class ChangeEmitter:
    """Publishes the set of state keys invalidated by each store mutation.

    Inside ``batch()`` keys accumulate and are published once when the outermost
    batch exits, so observers never see a partially applied compound mutation.
    """

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []
        self._depth = 0
        self._pending: dict[str, set[str]] = {}

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, instance_id: str, keys: Iterable[str]) -> None:
        key_set = set(keys)
        if not key_set:
            return
        if self._depth > 0:
            self._pending.setdefault(instance_id, set()).update(key_set)
            return
        self._publish(ChangeSet(instance_id=instance_id, keys=frozenset(key_set)))

    @contextmanager
    def batch(self) -> Iterator[None]:
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1
            if self._depth == 0 and self._pending:
                pending, self._pending = self._pending, {}
                for instance_id, keys in pending.items():
                    self._publish(ChangeSet(instance_id=instance_id, keys=frozenset(keys)))

    def _publish(self, change: ChangeSet) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as ex:
                logger.error(f"Change listener failed for {change.instance_id}: {ex}")
