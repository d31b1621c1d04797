from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from loguru import logger

_LEVELS = {"info": "INFO", "success": "SUCCESS", "warning": "WARNING", "error": "ERROR"}


@dataclass(frozen=True)
class Notification:
    instance_id: str
    kind: Literal["toast", "alert"]
    message: str
    variant: str = "info"
    title: str | None = None
    session_id: str | None = None
    duration: float | None = None


class Notifier:
    """Sink for user-facing toasts and alerts. The default implementation logs them."""

    def notify(self, notification: Notification) -> None:
        level = _LEVELS.get(notification.variant, "INFO")
        prefix = f"{notification.title}: " if notification.title else ""
        logger.bind(instance_id=notification.instance_id).log(
            level, f"[{notification.kind}] {prefix}{notification.message}"
        )

    def toast(
        self,
        instance_id: str,
        message: str,
        *,
        variant: str = "info",
        title: str | None = None,
        duration: float | None = None,
    ) -> None:
        self.notify(
            Notification(
                instance_id=instance_id,
                kind="toast",
                message=message,
                variant=variant,
                title=title,
                duration=duration,
            )
        )

    def alert(self, instance_id: str, message: str, *, title: str | None = None, session_id: str | None = None) -> None:
        self.notify(
            Notification(
                instance_id=instance_id,
                kind="alert",
                message=message,
                variant="error",
                title=title,
                session_id=session_id,
            )
        )


class RecordingNotifier(Notifier):
    """Keeps every notification, used by the REPL to print them between prompts."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)
        super().notify(notification)

    def drain(self) -> list[Notification]:
        drained, self.notifications = self.notifications, []
        return drained
