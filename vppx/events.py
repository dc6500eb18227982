from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable
from uuid import uuid4


UTC = timezone.utc
_LOGGER = logging.getLogger("vppx.events")

EVENT_EXECUTION_COMPLETED = "EXECUTION_COMPLETED"
EVENT_EXECUTION_FAILED = "EXECUTION_FAILED"
EVENT_EXECUTION_REJECTED = "EXECUTION_REJECTED"
EVENT_EXECUTION_CANCELLED = "EXECUTION_CANCELLED"
EVENT_ALERT = "ALERT"
EVENT_LOG = "LOG"
EVENT_RISK = "RISK_EVENT"
EVENT_BACKTEST_PROGRESS = "BACKTEST_PROGRESS"
EVENT_BACKTEST_COMPLETED = "BACKTEST_COMPLETED"


@dataclass(frozen=True)
class OutboundEvent:
    event_type: str
    detail: str
    timestamp: datetime
    strategy_id: str | None = None
    task_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid4().hex)

    def to_record(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "detail": self.detail,
            "timestamp": self.timestamp,
            "strategy_id": self.strategy_id,
            "task_id": self.task_id,
            "payload": dict(self.payload),
        }


EventSubscriber = Callable[[OutboundEvent], None]


class EventChannel:
    """Bounded outbound event buffer.

    Publishing never raises: once full the oldest event is dropped, and a
    failing subscriber is logged and skipped.
    """

    def __init__(self, *, maxsize: int = 10000) -> None:
        self._events: deque[OutboundEvent] = deque(maxlen=max(1, int(maxsize)))
        self._subscribers: list[EventSubscriber] = []
        self._lock = Lock()
        self._dropped = 0

    def publish(
        self,
        event_type: str,
        detail: str,
        *,
        strategy_id: str | None = None,
        task_id: str | None = None,
        payload: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> OutboundEvent:
        event = OutboundEvent(
            event_type=event_type,
            detail=detail,
            timestamp=timestamp or datetime.now(UTC),
            strategy_id=strategy_id,
            task_id=task_id,
            payload=dict(payload or {}),
        )
        with self._lock:
            if len(self._events) == self._events.maxlen:
                self._dropped += 1
            self._events.append(event)
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                _LOGGER.exception(
                    "event subscriber failed event_type=%s event_id=%s", event.event_type, event.event_id
                )
        return event

    def drain(self, limit: int | None = None) -> list[OutboundEvent]:
        with self._lock:
            count = len(self._events) if limit is None else min(max(0, int(limit)), len(self._events))
            return [self._events.popleft() for _ in range(count)]

    def peek(self) -> list[OutboundEvent]:
        with self._lock:
            return list(self._events)

    def subscribe(self, subscriber: EventSubscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    @property
    def dropped(self) -> int:
        return self._dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


event_channel = EventChannel()
