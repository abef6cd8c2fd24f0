"""User-facing notifications derived from realtime traffic.

The presentation layer itself is an external collaborator; it receives
``Notification`` values through anything implementing ``Notifier``.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, List, Optional, Protocol, Union

from freshline.realtime.connection import ConnectionLost, ConnectionManager
from freshline.realtime.messages import (
    AlertMessage,
    CallEndedMessage,
    CallStartedMessage,
    HandoffTriggeredMessage,
)

logger = logging.getLogger(__name__)

INFO = "info"
SUCCESS = "success"
WARNING = "warning"
ERROR = "error"

DEFAULT_DURATION = 4.0
WARNING_DURATION = 7.0
HANDOFF_DURATION = 10.0

DEFAULT_ALERT_MESSAGE = "System alert"
CONNECTION_LOST_MESSAGE = "Connection lost. Please reconnect."


@dataclass(frozen=True)
class Presentation:
    level: str
    duration: Optional[float]
    urgent: bool = False

    @property
    def persistent(self) -> bool:
        return self.duration is None


@dataclass(frozen=True)
class Notification:
    """One message for the notification surface; ``duration=None`` means it stays until dismissed."""

    level: str
    message: str
    duration: Optional[float] = DEFAULT_DURATION
    urgent: bool = False
    source: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def persistent(self) -> bool:
        return self.duration is None


def presentation_for_severity(severity: Optional[str]) -> Presentation:
    """critical/high stay up as urgent errors, medium warns briefly, the rest is informational."""

    name = (severity or "").strip().lower()
    if name in ("critical", "high"):
        return Presentation(level=ERROR, duration=None, urgent=True)
    if name == "medium":
        return Presentation(level=WARNING, duration=WARNING_DURATION)
    return Presentation(level=INFO, duration=DEFAULT_DURATION)


class Notifier(Protocol):
    def notify(self, notification: Notification) -> Union[None, Awaitable[None]]: ...


class LoggingNotifier:
    """Fallback surface: writes notifications to the log."""

    _levels = {
        INFO: logging.INFO,
        SUCCESS: logging.INFO,
        WARNING: logging.WARNING,
        ERROR: logging.ERROR,
    }

    def __init__(self, logger_name: str = "freshline.notifications") -> None:
        self._logger = logging.getLogger(logger_name)

    def notify(self, notification: Notification) -> None:
        self._logger.log(
            self._levels.get(notification.level, logging.INFO),
            notification.message,
            extra={
                "level_name": notification.level,
                "source": notification.source,
                "persistent": notification.persistent,
            },
        )


class RecordingNotifier:
    """Keeps every notification in memory (tests, headless runs)."""

    def __init__(self) -> None:
        self.notifications: List[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def clear(self) -> None:
        self.notifications.clear()


def _format_duration(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.1f}"


class NotificationRouter:
    """Turns call, handoff, alert and connection-loss events into notifications."""

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier

    async def emit(self, notification: Notification) -> None:
        result = self.notifier.notify(notification)
        if inspect.isawaitable(result):
            await result

    def install(self, manager: ConnectionManager) -> None:
        """Register the default handlers and chain the terminal callback."""

        manager.register("call-started", self.call_started)
        manager.register("call-ended", self.call_ended)
        manager.register("handoff-triggered", self.handoff_triggered)
        manager.register("alert", self.alert)

        previous = manager.on_terminal

        async def on_terminal(event: ConnectionLost) -> None:
            await self.connection_lost(event)
            if previous is not None:
                result: Any = previous(event)
                if inspect.isawaitable(result):
                    await result

        manager.on_terminal = on_terminal

    async def call_started(self, message: CallStartedMessage) -> None:
        phone = message.data.phone_number or "unknown number"
        await self.emit(
            Notification(level=INFO, message=f"New call started: {phone}", source=message.type)
        )

    async def call_ended(self, message: CallEndedMessage) -> None:
        duration = _format_duration(message.data.duration)
        text = f"Call completed ({duration}s)" if duration is not None else "Call completed"
        await self.emit(Notification(level=SUCCESS, message=text, source=message.type))

    async def handoff_triggered(self, message: HandoffTriggeredMessage) -> None:
        text = "Call requires human intervention!"
        if message.data.reason:
            text = f"{text} ({message.data.reason})"
        await self.emit(
            Notification(
                level=WARNING,
                message=text,
                duration=HANDOFF_DURATION,
                source=message.type,
            )
        )

    async def alert(self, message: AlertMessage) -> None:
        presentation = presentation_for_severity(message.data.severity)
        await self.emit(
            Notification(
                level=presentation.level,
                message=message.data.message or DEFAULT_ALERT_MESSAGE,
                duration=presentation.duration,
                urgent=presentation.urgent,
                source=message.type,
            )
        )

    async def connection_lost(self, event: ConnectionLost) -> None:
        logger.error(
            "notifications.connection_lost",
            extra={"url": event.url, "attempts": event.attempts},
        )
        await self.emit(
            Notification(
                level=ERROR,
                message=CONNECTION_LOST_MESSAGE,
                duration=None,
                urgent=True,
                source="connection",
            )
        )


__all__ = [
    "CONNECTION_LOST_MESSAGE",
    "DEFAULT_ALERT_MESSAGE",
    "LoggingNotifier",
    "Notification",
    "NotificationRouter",
    "Notifier",
    "Presentation",
    "RecordingNotifier",
    "presentation_for_severity",
]
