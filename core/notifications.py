"""
Outbound notifications for the presentation layer.

The core never renders anything; it publishes Notification records that
the UI polls (GET /notifications) or receives through a listener.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from core.rules import RULES

logger = logging.getLogger("billpay.notifications")


class Variant(Enum):
    DEFAULT = "default"
    DESTRUCTIVE = "destructive"


@dataclass(frozen=True)
class NotificationAction:
    """Button attached to a notification. `kind` tells the UI which action to wire."""
    label: str
    kind: str
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    variant: Variant = Variant.DEFAULT
    action: Optional[NotificationAction] = None
    duration_ms: Optional[int] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "variant": self.variant.value,
            "action": {
                "label": self.action.label,
                "kind": self.action.kind,
                "payload": dict(self.action.payload),
            } if self.action else None,
            "duration_ms": self.duration_ms,
            "created_at": self.created_at,
        }


class NotificationCenter:
    """Bounded buffer of recent notifications plus optional listeners."""

    def __init__(self, max_items: int = RULES.MAX_NOTIFICATIONS):
        self._items: deque[Notification] = deque(maxlen=max_items)
        self._listeners: list[Callable[[Notification], None]] = []

    def subscribe(self, listener: Callable[[Notification], None]):
        self._listeners.append(listener)

    def publish(self, notification: Notification):
        self._items.append(notification)
        if notification.variant is Variant.DESTRUCTIVE:
            logger.info(f"notify[!]: {notification.title} - {notification.description}")
        else:
            logger.debug(f"notify: {notification.title} - {notification.description}")
        for listener in self._listeners:
            try:
                listener(notification)
            except Exception as e:
                logger.warning(f"Notification listener failed: {e}")

    def info(self, title: str, description: str, **kwargs):
        self.publish(Notification(title=title, description=description, **kwargs))

    def error(self, title: str, description: str, **kwargs):
        self.publish(Notification(
            title=title, description=description, variant=Variant.DESTRUCTIVE, **kwargs,
        ))

    def recent(self, since: float = 0.0) -> list[Notification]:
        return [n for n in self._items if n.created_at > since]

    def clear(self):
        self._items.clear()
