from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

from warehouse_ops.realtime import Channel, ChangeEvent, ChangeFeed, ChangeType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    variant: str = "default"
    duration_ms: int = 3000

    def as_dict(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "variant": self.variant,
            "duration_ms": self.duration_ms,
        }


NotificationSink = Callable[[Notification], None]


class Notifier:
    """Transient user-facing notifications, passed explicitly to whoever raises them."""

    def __init__(
        self, sinks: Optional[List[NotificationSink]] = None, history_size: int = 100
    ) -> None:
        self.sinks: List[NotificationSink] = list(sinks or [])
        self.history: Deque[Notification] = deque(maxlen=history_size)

    def notify(self, notification: Notification) -> None:
        self.history.append(notification)
        if notification.variant == "destructive":
            logger.warning("%s: %s", notification.title, notification.description)
        else:
            logger.info("%s: %s", notification.title, notification.description)
        for sink in self.sinks:
            sink(notification)

    def info(self, title: str, description: str, duration_ms: int = 3000) -> None:
        self.notify(Notification(title, description, "default", duration_ms))

    def error(self, title: str, description: str, duration_ms: int = 5000) -> None:
        self.notify(Notification(title, description, "destructive", duration_ms))


def announce_change(event: ChangeEvent, notifier: Notifier) -> None:
    record = event.record or {}
    if event.table == "trucks":
        if event.type == ChangeType.INSERT:
            notifier.info(
                "New Truck Scheduled", f"Truck {record.get('license_plate')} has been added"
            )
        elif event.type == ChangeType.UPDATE and record.get("status") == "DONE":
            notifier.info(
                "Truck Completed", f"Truck {record.get('license_plate')} has been completed"
            )
    elif event.table == "truck_exceptions" and event.type == ChangeType.INSERT:
        notifier.error("New Exception Reported", "A new truck exception has been reported")


def subscribe_announcements(feed: ChangeFeed, notifier: Notifier) -> Channel:
    def handler(event: ChangeEvent) -> None:
        announce_change(event, notifier)

    channel = feed.channel("announcements")
    channel.on("trucks", handler).on("truck_exceptions", handler, event="INSERT")
    return channel.subscribe()
