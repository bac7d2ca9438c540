"""Outbound change events for downstream fan-out (websocket bridge, queues)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from captable_mirror.contracts import ChangeEvent, ChangeType

log = structlog.get_logger(__name__)

Subscriber = Callable[[ChangeEvent], None]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class NotificationChannel:
    """
    Ordered, typed publish/subscribe channel.

    Subscribers are called synchronously in registration order. A failing
    subscriber is logged and skipped; it never fails the projection or
    workflow that published the event.
    """

    def __init__(self, subscribers: Optional[List[Subscriber]] = None) -> None:
        self._subscribers: List[Subscriber] = list(subscribers or [])

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, change_type: ChangeType, security: str, data: Optional[Mapping[str, Any]] = None) -> ChangeEvent:
        event = ChangeEvent(type=change_type, security=security, data=dict(data or {}), timestamp=_now_utc())
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as exc:  # subscriber bugs must not stop ingestion
                log.error("notification_subscriber_failed", change_type=str(change_type), error=str(exc))
        return event


class RecordingSink:
    """Keeps every published event in memory; handy for tests and the CLI."""

    def __init__(self) -> None:
        self.events: List[ChangeEvent] = []

    def __call__(self, event: ChangeEvent) -> None:
        self.events.append(event)

    def of_type(self, change_type: ChangeType) -> List[ChangeEvent]:
        return [e for e in self.events if e.type == change_type]


def to_message(event: ChangeEvent) -> Dict[str, Any]:
    """Wire shape used by the websocket bridge: {type, data, timestamp}."""
    return {
        "type": str(event.type),
        "data": {"security": event.security, **event.data},
        "timestamp": event.timestamp.isoformat().replace("+00:00", "Z"),
    }
