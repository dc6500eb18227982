from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest
from pydantic import ValidationError

from vppx.actions import EventChannelSink, dispatch
from vppx.events import EVENT_ALERT, EVENT_LOG, EventChannel
from vppx.models import Action, ContextSnapshot


UTC = timezone.utc


class _ListSink:
    def __init__(self) -> None:
        self.items: list[tuple[str, str, dict[str, Any]]] = []

    def emit(self, kind: str, message: str, payload: dict[str, Any]) -> None:
        self.items.append((kind, message, payload))


class _BrokenSink:
    def emit(self, kind: str, message: str, payload: dict[str, Any]) -> None:
        raise ConnectionError("sink offline")


def _snapshot(price: float = 60.0, capacity: float = 100.0) -> ContextSnapshot:
    return ContextSnapshot(
        timestamp=datetime(2026, 3, 2, 12, 0, tzinfo=UTC),
        market={"price": price, "volume": 1000.0},
        resource={"available_capacity": capacity},
    )


def test_bid_price_applies_adjustment_then_multiplier() -> None:
    result = dispatch(
        Action(type="bid_price", parameters={"adjustment": 2.0, "multiplier": 0.5}),
        _snapshot(price=60.0),
    )
    assert result.type == "bid_price"
    assert result.value == pytest.approx(31.0)
    assert result.timestamp == datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

    defaults = dispatch(Action(type="bid_price"), _snapshot(price=42.5))
    assert defaults.value == 42.5


def test_bid_quantity_is_capped_by_max_quantity() -> None:
    snap = _snapshot(capacity=100.0)
    assert dispatch(Action(type="bid_quantity", parameters={"ratio": 0.8}), snap).value == pytest.approx(80.0)
    capped = dispatch(Action(type="bid_quantity", parameters={"ratio": 0.8, "max_quantity": 50}), snap)
    assert capped.value == 50.0
    assert dispatch(Action(type="bid_quantity"), snap).value == 100.0


def test_market_participation_requires_both_floors() -> None:
    action = Action(type="market_participation", parameters={"min_price": 50, "min_capacity": 80})
    assert dispatch(action, _snapshot(price=50.0, capacity=80.0)).value is True
    assert dispatch(action, _snapshot(price=49.99, capacity=200.0)).value is False
    assert dispatch(action, _snapshot(price=70.0, capacity=79.0)).value is False


def test_alert_and_log_go_to_sink() -> None:
    sink = _ListSink()
    alert = dispatch(
        Action(type="alert", parameters={"message": "price spike"}),
        _snapshot(),
        strategy_id="S-1",
        rule_id="r1",
        sink=sink,
    )
    log = dispatch(Action(type="log"), _snapshot(), strategy_id="S-1", rule_id="r2", sink=sink)

    assert alert.value == "price spike"
    assert alert.error is None
    assert log.value == "log from rule r2"
    assert [item[0] for item in sink.items] == ["alert", "log"]
    assert sink.items[0][2]["strategy_id"] == "S-1"
    assert sink.items[0][2]["level"] == "warning"
    assert sink.items[1][2]["level"] == "info"


def test_sink_failure_is_reported_not_raised() -> None:
    result = dispatch(Action(type="alert", parameters={"message": "x"}), _snapshot(), sink=_BrokenSink())
    assert result.value == "alert_failed"
    assert result.error == "sink offline"

    result = dispatch(Action(type="log"), _snapshot(), sink=_BrokenSink())
    assert result.value == "log_failed"


def test_event_channel_sink_publishes_events() -> None:
    channel = EventChannel(maxsize=10)
    sink = EventChannelSink(channel)
    dispatch(Action(type="alert"), _snapshot(), strategy_id="S-2", rule_id="r1", sink=sink)
    dispatch(Action(type="log"), _snapshot(), strategy_id="S-2", rule_id="r1", sink=sink)

    events = channel.drain()
    assert [event.event_type for event in events] == [EVENT_ALERT, EVENT_LOG]
    assert events[0].strategy_id == "S-2"
    assert len(channel) == 0


def test_action_parameter_validation() -> None:
    with pytest.raises(ValidationError, match="must be numeric"):
        Action(type="bid_price", parameters={"multiplier": "high"})
    with pytest.raises(ValidationError, match="cannot be negative"):
        Action(type="bid_quantity", parameters={"ratio": -0.1})
    with pytest.raises(ValidationError):
        Action(type="bid_price", timeout_ms=0)
    with pytest.raises(ValidationError):
        Action(type="place_order")


def test_result_record_is_json_friendly() -> None:
    record = dispatch(Action(type="bid_quantity", parameters={"ratio": 0.5}), _snapshot(), rule_id="r9").to_record()
    assert record == {
        "type": "bid_quantity",
        "value": 50.0,
        "timestamp": "2026-03-02T12:00:00Z",
        "rule_id": "r9",
        "confidence": None,
        "source": "rule",
        "error": None,
    }
