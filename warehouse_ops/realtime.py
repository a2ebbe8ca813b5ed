"""
Change notifications and the refresh coordinator built on them.

Services publish a ``ChangeEvent`` after every successful commit:

    feed.publish(ChangeEvent("trucks", ChangeType.INSERT, {"id": truck.id}))

Consumers open named channels on the feed and bind handlers per table and
event type (``"*"`` matches every type). The feed lives on the application
object and is handed to whoever needs it; there is no process-wide instance.

``RefreshCoordinator`` is the coarse "something changed, go refetch" signal
used by KPI consumers. It watches four tables on one channel and keeps a
counter with the time of the last change. Each consumer opens its own
coordinator.
"""
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

WILDCARD = "*"


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChangeEvent:
    table: str
    type: ChangeType
    record: Dict[str, Any] = field(default_factory=dict)
    committed_at: datetime = field(default_factory=_utcnow)


ChangeHandler = Callable[[ChangeEvent], Any]


class Channel:
    """A named group of table bindings that subscribe and unsubscribe together."""

    def __init__(self, feed: "ChangeFeed", name: str) -> None:
        self.feed = feed
        self.name = name
        self.bindings: List[Tuple[str, str, ChangeHandler]] = []
        self.subscribed = False

    def on(self, table: str, handler: ChangeHandler, event: str = WILDCARD) -> "Channel":
        if event != WILDCARD:
            event = ChangeType(event).value
        self.bindings.append((table, event, handler))
        return self

    def matches(self, table: str, event: ChangeType) -> List[ChangeHandler]:
        return [
            handler
            for bound_table, bound_event, handler in self.bindings
            if bound_table == table and bound_event in (WILDCARD, event.value)
        ]

    def subscribe(self) -> "Channel":
        self.feed._attach(self)
        self.subscribed = True
        return self

    def unsubscribe(self) -> None:
        if self.subscribed:
            self.feed._detach(self)
            self.subscribed = False


class ChangeFeed:
    def __init__(self) -> None:
        self._channels: List[Channel] = []
        self._ids = itertools.count(1)

    def channel(self, name: Optional[str] = None) -> Channel:
        return Channel(self, name or f"channel-{next(self._ids)}")

    @property
    def channels(self) -> List[Channel]:
        return list(self._channels)

    def _attach(self, channel: Channel) -> None:
        if channel not in self._channels:
            self._channels.append(channel)
            logger.debug("Channel %s subscribed", channel.name)

    def _detach(self, channel: Channel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)
            logger.debug("Channel %s removed", channel.name)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every matching binding; returns the delivery count."""
        delivered = 0
        for channel in list(self._channels):
            for handler in channel.matches(event.table, event.type):
                try:
                    handler(event)
                except Exception as exc:
                    logger.error(
                        "Change handler on %s failed for %s %s: %s",
                        channel.name,
                        event.type.value,
                        event.table,
                        exc,
                    )
                delivered += 1
        logger.debug("%s on %s delivered to %d handlers", event.type.value, event.table, delivered)
        return delivered

    def emit(self, table: str, change: ChangeType, record: Optional[Dict[str, Any]] = None) -> int:
        return self.publish(ChangeEvent(table=table, type=change, record=record or {}))


WATCHED_TABLES = ("trucks", "truck_exceptions", "user_kpi_metrics", "performance_trends")

RefreshListener = Callable[[int], Any]


class RefreshCoordinator:
    def __init__(
        self,
        feed: ChangeFeed,
        clock: Callable[[], datetime] = _utcnow,
        tables: Tuple[str, ...] = WATCHED_TABLES,
    ) -> None:
        self.feed = feed
        self.clock = clock
        self.tables = tables
        self.refresh_count = 0
        self.last_update: datetime = clock()
        self._listeners: List[RefreshListener] = []
        self._channel: Optional[Channel] = None
        # Sync routes publish from threadpool workers.
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._channel is not None

    def add_listener(self, listener: RefreshListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: RefreshListener) -> None:
        self._listeners = [existing for existing in self._listeners if existing is not listener]

    def open(self) -> "RefreshCoordinator":
        if self._channel is not None:
            return self
        channel = self.feed.channel("kpi-refresh")
        for table in self.tables:
            channel.on(table, self._on_change)
        self._channel = channel.subscribe()
        return self

    def close(self) -> None:
        if self._channel is not None:
            self._channel.unsubscribe()
            self._channel = None

    def _on_change(self, event: ChangeEvent) -> None:
        with self._lock:
            self.refresh_count += 1
            self.last_update = self.clock()
            count = self.refresh_count
        for listener in list(self._listeners):
            listener(count)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {"refresh_count": self.refresh_count, "last_update": self.last_update.isoformat()}

    def __enter__(self) -> "RefreshCoordinator":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class Generation:
    """Generation counter for discarding superseded or orphaned responses.

    A fetch takes a token from ``begin()`` and applies its result only while
    ``is_current(token)`` holds. ``close()`` invalidates every token, so a
    response that resolves after teardown is dropped.
    """

    def __init__(self) -> None:
        self._current = 0
        self.closed = False

    def begin(self) -> int:
        self._current += 1
        return self._current

    def is_current(self, token: int) -> bool:
        return not self.closed and token == self._current

    def close(self) -> None:
        self.closed = True
        self._current += 1
