"""Notification sink port and the in-process adapter.

Order and payment lifecycle messages are handed to a sink and forgotten.
Delivery is at-least-once: the same message can be enqueued again after a
retry, so consumers de-duplicate on ``(event_type, payload["order_id"])``
or whatever key their template needs.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Notification:
    event_type: str
    recipient: str
    payload: dict
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class NotificationSink(ABC):
    """Abstract notification sink interface."""

    @abstractmethod
    def enqueue(self, event_type: str, recipient: str, payload: dict) -> None:
        """Queue a notification for delivery. Must not block on delivery."""
        ...


class InMemoryNotificationSink(NotificationSink):
    """Keeps enqueued notifications in memory; used in development and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.messages: list[Notification] = []
        self.should_fail = False

    def enqueue(self, event_type: str, recipient: str, payload: dict) -> None:
        if self.should_fail:
            raise RuntimeError("Notification queue unavailable")
        with self._lock:
            self.messages.append(Notification(event_type=event_type, recipient=recipient, payload=dict(payload)))
        logger.debug("Notification enqueued", event_type=event_type, recipient=recipient)

    def of_type(self, event_type: str) -> list[Notification]:
        return [message for message in self.messages if message.event_type == event_type]
