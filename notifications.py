"""
Tea Machine — Notification sinks
Anything with notify(Notification) can receive engine events.
"""

from collections import deque
from typing import Protocol

import structlog

from models import Notification, Severity

log = structlog.get_logger()


class NotificationSink(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LogSink:
    """
    Logs every notification and keeps the most recent ones
    so the HTTP surface can hand them to a client.
    """

    def __init__(self, maxlen: int = 50):
        self._recent: deque[Notification] = deque(maxlen=maxlen)

    def notify(self, notification: Notification) -> None:
        self._recent.append(notification)
        emit = log.warning if notification.severity == Severity.WARNING else log.info
        emit("teamachine.notification",
            title=notification.title,
            description=notification.description,
            severity=notification.severity,
        )

    def recent(self) -> list[Notification]:
        return list(self._recent)

    def clear(self) -> None:
        self._recent.clear()
