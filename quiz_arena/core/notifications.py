"""Best-effort outbound notifications.

Notifications never take part in a request's outcome: the transport runs on a
detached daemon thread and any failure is logged and dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Thread
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Notification:
    recipient: str
    subject: str
    body: str


Transport = Callable[[Notification], None]


def log_transport(notification: Notification) -> None:
    """Default transport: record the message instead of delivering it."""
    logger.info("Notification for %s: %s", notification.recipient, notification.subject)


class BestEffortNotifier:
    """Sends notifications without making the caller wait or fail."""

    def __init__(self, transport: Transport = log_transport) -> None:
        self._transport = transport

    def notify(self, recipient: str, subject: str, body: str) -> Thread:
        notification = Notification(recipient=recipient, subject=subject, body=body)
        thread = Thread(
            target=self._deliver,
            args=(notification,),
            name="QuizArenaNotifier",
            daemon=True,
        )
        thread.start()
        return thread

    def _deliver(self, notification: Notification) -> None:
        try:
            self._transport(notification)
        except Exception:
            logger.warning("Notification to %s failed", notification.recipient, exc_info=True)
