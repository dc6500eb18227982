from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from .events import EVENT_ALERT, EVENT_LOG, EventChannel, event_channel
from .models import Action, ContextSnapshot


_LOGGER = logging.getLogger("vppx.actions")

BID_ACTION_TYPES: frozenset[str] = frozenset({"bid_price", "bid_quantity"})
SIDE_EFFECT_ACTION_TYPES: frozenset[str] = frozenset({"alert", "log"})


def _to_iso_utc(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ActionResult:
    type: str
    value: Any
    timestamp: datetime
    rule_id: str | None = None
    confidence: float | None = None
    source: str = "rule"
    error: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "value": self.value,
            "timestamp": _to_iso_utc(self.timestamp),
            "rule_id": self.rule_id,
            "confidence": self.confidence,
            "source": self.source,
            "error": self.error,
        }


class ObservabilitySink(Protocol):
    def emit(self, kind: str, message: str, payload: dict[str, Any]) -> None:
        ...


class EventChannelSink:
    """Routes alert/log side effects onto the outbound event channel."""

    def __init__(self, channel: EventChannel | None = None) -> None:
        self._channel = channel if channel is not None else event_channel

    def emit(self, kind: str, message: str, payload: dict[str, Any]) -> None:
        event_type = EVENT_ALERT if kind == "alert" else EVENT_LOG
        self._channel.publish(
            event_type,
            message,
            strategy_id=payload.get("strategy_id"),
            payload=payload,
        )


_DEFAULT_SINK = EventChannelSink()


def _number(parameters: dict[str, Any], key: str, default: float) -> float:
    raw = parameters.get(key)
    if raw is None:
        return float(default)
    return float(raw)


def compute_bid_price(action: Action, snapshot: ContextSnapshot) -> float:
    adjustment = _number(action.parameters, "adjustment", 0.0)
    multiplier = _number(action.parameters, "multiplier", 1.0)
    return (snapshot.market.price + adjustment) * multiplier


def compute_bid_quantity(action: Action, snapshot: ContextSnapshot) -> float:
    capacity = snapshot.resource.available_capacity
    ratio = _number(action.parameters, "ratio", 1.0)
    max_quantity = _number(action.parameters, "max_quantity", capacity)
    return min(capacity * ratio, max_quantity)


def compute_market_participation(action: Action, snapshot: ContextSnapshot) -> bool:
    min_price = _number(action.parameters, "min_price", 0.0)
    min_capacity = _number(action.parameters, "min_capacity", 0.0)
    return (
        snapshot.market.price >= min_price
        and snapshot.resource.available_capacity >= min_capacity
    )


def _emit_side_effect(
    action: Action,
    snapshot: ContextSnapshot,
    *,
    sink: ObservabilitySink,
    strategy_id: str | None,
    rule_id: str | None,
) -> ActionResult:
    message = str(action.parameters.get("message") or f"{action.type} from rule {rule_id or '-'}")
    payload = {
        "strategy_id": strategy_id,
        "rule_id": rule_id,
        "level": str(action.parameters.get("level") or ("warning" if action.type == "alert" else "info")),
        "snapshot_timestamp": _to_iso_utc(snapshot.timestamp),
        "market_price": snapshot.market.price,
        "available_capacity": snapshot.resource.available_capacity,
    }
    try:
        sink.emit(action.type, message, payload)
    except Exception as exc:
        _LOGGER.warning(
            "observability sink failed action=%s strategy_id=%s rule_id=%s error=%s",
            action.type,
            strategy_id,
            rule_id,
            exc,
        )
        return ActionResult(
            type=action.type,
            value=f"{action.type}_failed",
            timestamp=snapshot.timestamp,
            rule_id=rule_id,
            error=str(exc) or exc.__class__.__name__,
        )
    return ActionResult(
        type=action.type,
        value=message,
        timestamp=snapshot.timestamp,
        rule_id=rule_id,
    )


def dispatch(
    action: Action,
    snapshot: ContextSnapshot,
    *,
    strategy_id: str | None = None,
    rule_id: str | None = None,
    sink: ObservabilitySink | None = None,
) -> ActionResult:
    """Execute one action against a snapshot.

    Bid computations are pure. ``alert``/``log`` go to the sink and never
    raise past this function.
    """
    if action.type == "bid_price":
        value: Any = compute_bid_price(action, snapshot)
    elif action.type == "bid_quantity":
        value = compute_bid_quantity(action, snapshot)
    elif action.type == "market_participation":
        value = compute_market_participation(action, snapshot)
    elif action.type in SIDE_EFFECT_ACTION_TYPES:
        return _emit_side_effect(
            action,
            snapshot,
            sink=sink if sink is not None else _DEFAULT_SINK,
            strategy_id=strategy_id,
            rule_id=rule_id,
        )
    else:
        raise ValueError(f"unsupported action type: {action.type}")
    return ActionResult(
        type=action.type,
        value=value,
        timestamp=snapshot.timestamp,
        rule_id=rule_id,
    )
