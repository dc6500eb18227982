from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from vppx.actions import ActionResult
from vppx.engine import RuleEngine, RuleRateLimiter
from vppx.models import ContextSnapshot, Strategy
from vppx.prediction import FixturePredictionProvider, Prediction, PredictionError


UTC = timezone.utc
T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _strategy(rules: list[dict[str, Any]], *, strategy_type: str = "rule_based", **extra: Any) -> Strategy:
    return Strategy.model_validate(
        {
            "id": "S-UT-ENGINE",
            "name": "engine test",
            "type": strategy_type,
            "status": "active",
            "rules": rules,
            "created_at": T0,
            "updated_at": T0,
            **extra,
        }
    )


def _snapshot(price: float = 60.0, capacity: float = 100.0, at: datetime = T0) -> ContextSnapshot:
    return ContextSnapshot(
        timestamp=at,
        market={"price": price, "volume": 1000.0},
        resource={"available_capacity": capacity},
    )


class _FailingProvider:
    def predict(self, snapshot: ContextSnapshot) -> Prediction:
        raise PredictionError("model endpoint unreachable")


def test_scenario_price_rule_fires_bid() -> None:
    strategy = _strategy(
        [
            {
                "id": "r1",
                "conditions": [{"field": "price", "operator": "greater_than", "value": 50}],
                "actions": [{"type": "bid_price", "parameters": {"multiplier": 0.98}}],
            }
        ]
    )
    result = RuleEngine().execute_strategy(strategy, _snapshot(price=60.0))

    assert result.success is True
    assert result.fired_rules == ["r1"]
    assert len(result.actions) == 1
    assert result.actions[0].type == "bid_price"
    assert result.actions[0].value == pytest.approx(58.8)
    assert result.action_value("bid_price") == pytest.approx(58.8)


def test_rules_do_not_short_circuit_each_other() -> None:
    strategy = _strategy(
        [
            {"id": "a", "conditions": [], "actions": [{"type": "bid_price"}]},
            {
                "id": "b",
                "conditions": [{"field": "price", "operator": "less_than", "value": 10}],
                "actions": [{"type": "log"}],
            },
            {"id": "c", "conditions": [], "actions": [{"type": "bid_quantity", "parameters": {"ratio": 0.5}}]},
            {"id": "d", "enabled": False, "conditions": [], "actions": [{"type": "bid_quantity"}]},
        ]
    )
    result = RuleEngine().execute_strategy(strategy, _snapshot())

    assert result.fired_rules == ["a", "c"]
    assert [item.type for item in result.actions] == ["bid_price", "bid_quantity"]
    assert result.action_value("bid_quantity") == 50.0


def test_actions_dispatch_by_priority_then_declaration() -> None:
    strategy = _strategy(
        [
            {
                "id": "r1",
                "actions": [
                    {"type": "log", "parameters": {"message": "first low"}, "priority": 0},
                    {"type": "bid_price", "priority": 10},
                    {"type": "log", "parameters": {"message": "second low"}, "priority": 0},
                    {"type": "bid_quantity", "priority": 10},
                ],
            }
        ]
    )
    seen: list[str] = []

    def dispatcher(action: Any, snapshot: ContextSnapshot, **kwargs: Any) -> ActionResult:
        seen.append(str(action.parameters.get("message") or action.type))
        return ActionResult(type=action.type, value=None, timestamp=snapshot.timestamp, rule_id=kwargs["rule_id"])

    RuleEngine().execute_strategy(strategy, _snapshot(), dispatcher=dispatcher)
    assert seen == ["bid_price", "bid_quantity", "first low", "second low"]


def test_dispatcher_errors_propagate() -> None:
    strategy = _strategy([{"id": "r1", "actions": [{"type": "bid_price"}]}])

    def dispatcher(*args: Any, **kwargs: Any) -> Any:
        raise TimeoutError("downstream slow")

    with pytest.raises(TimeoutError):
        RuleEngine().execute_strategy(strategy, _snapshot(), dispatcher=dispatcher)


def test_rate_limit_uses_snapshot_time() -> None:
    strategy = _strategy(
        [
            {
                "id": "r1",
                "actions": [{"type": "bid_price"}],
                "rate_limit": {"max_fires": 2, "per_seconds": 3600},
            }
        ]
    )
    engine = RuleEngine()
    limiter = RuleRateLimiter()
    fired = [
        engine.execute_strategy(strategy, _snapshot(at=T0 + timedelta(minutes=minute)), rate_limiter=limiter)
        for minute in (0, 10, 20, 61)
    ]

    assert [bool(item.fired_rules) for item in fired] == [True, True, False, True]
    assert fired[2].rate_limited_rules == ["r1"]
    assert engine.metrics()["rules_rate_limited"] == 1


def test_ai_driven_uses_prediction_provider() -> None:
    strategy = _strategy([], strategy_type="ai_driven")
    engine = RuleEngine(prediction_provider=FixturePredictionProvider(price_factor=0.9, capacity_ratio=0.5))
    result = engine.execute_strategy(strategy, _snapshot(price=50.0, capacity=200.0))

    assert result.degraded is False
    assert [item.source for item in result.actions] == ["prediction", "prediction"]
    assert result.action_value("bid_price") == pytest.approx(45.0)
    assert result.action_value("bid_quantity") == pytest.approx(100.0)
    assert result.actions[0].confidence == 0.85


def test_ai_driven_degrades_when_provider_missing_or_failing() -> None:
    strategy = _strategy([], strategy_type="ai_driven")

    absent = RuleEngine().execute_strategy(strategy, _snapshot())
    assert absent.success is True
    assert absent.actions == []
    assert absent.degraded_reason == "prediction_unavailable"

    engine = RuleEngine(prediction_provider=_FailingProvider())
    failed = engine.execute_strategy(strategy, _snapshot())
    assert failed.success is True
    assert failed.actions == []
    assert failed.degraded_reason == "prediction_failed"
    assert engine.metrics()["prediction_failures"] == 1

class _StaticProvider:
    def __init__(self, payload: Any) -> None:
        self._payload = payload

    def predict(self, snapshot: ContextSnapshot) -> Any:
        return self._payload


def test_prediction_record_from_provider_is_accepted() -> None:
    strategy = _strategy([], strategy_type="ai_driven")
    engine = RuleEngine(
        prediction_provider=_StaticProvider({"bidPrice": 50.0, "bidQuantity": 10.0, "confidence": 0.9})
    )
    result = engine.execute_strategy(strategy, _snapshot())

    assert result.degraded is False
    assert result.action_value("bid_price") == 50.0
    assert result.action_value("bid_quantity") == 10.0


@pytest.mark.parametrize(
    "payload",
    [
        None,
        {"bidPrice": 50.0, "bidQuantity": 10.0, "confidence": float("nan")},
        {"bidPrice": 50.0, "confidence": 0.9},
        {"bidPrice": "cheap", "bidQuantity": 10.0, "confidence": 0.9},
        Prediction(bid_price=-1.0, bid_quantity=10.0, confidence=0.9),
    ],
)
def test_malformed_prediction_degrades_instead_of_raising(payload: Any) -> None:
    strategy = _strategy(
        [{"id": "r1", "actions": [{"type": "bid_quantity", "parameters": {"ratio": 0.25}}]}],
        strategy_type="hybrid",
    )
    engine = RuleEngine(prediction_provider=_StaticProvider(payload))
    result = engine.execute_strategy(strategy, _snapshot())

    assert result.success is True
    assert result.degraded_reason == "prediction_failed"
    assert [item.source for item in result.actions] == ["rule"]
    assert engine.metrics()["prediction_failures"] == 1


def test_failed_run_hands_back_rate_limit_slot() -> None:
    strategy = _strategy(
        [
            {
                "id": "r1",
                "actions": [{"type": "bid_price"}],
                "rate_limit": {"max_fires": 1, "per_seconds": 3600},
            }
        ]
    )

    def dispatcher(*args: Any, **kwargs: Any) -> Any:
        raise ConnectionError("bidding endpoint refused")

    engine = RuleEngine()
    limiter = RuleRateLimiter()
    with pytest.raises(ConnectionError):
        engine.execute_strategy(strategy, _snapshot(), rate_limiter=limiter, dispatcher=dispatcher)

    retried = engine.execute_strategy(strategy, _snapshot(), rate_limiter=limiter)
    assert retried.fired_rules == ["r1"]
    again = engine.execute_strategy(strategy, _snapshot(), rate_limiter=limiter)
    assert again.rate_limited_rules == ["r1"]



def test_low_confidence_prediction_is_dropped() -> None:
    strategy = _strategy([], strategy_type="ai_driven", prediction_config={"min_confidence": 0.9})
    engine = RuleEngine(prediction_provider=FixturePredictionProvider(confidence=0.5))
    result = engine.execute_strategy(strategy, _snapshot())
    assert result.actions == []
    assert result.degraded_reason == "prediction_low_confidence"


def test_hybrid_concatenates_rule_then_prediction_actions() -> None:
    strategy = _strategy(
        [{"id": "r1", "actions": [{"type": "bid_quantity", "parameters": {"ratio": 0.25}}]}],
        strategy_type="hybrid",
    )
    engine = RuleEngine(prediction_provider=FixturePredictionProvider())
    result = engine.execute_strategy(strategy, _snapshot(capacity=100.0))

    assert [(item.type, item.source) for item in result.actions] == [
        ("bid_quantity", "rule"),
        ("bid_price", "prediction"),
        ("bid_quantity", "prediction"),
    ]

    rules_only = RuleEngine().execute_strategy(strategy, _snapshot(capacity=100.0))
    assert [item.type for item in rules_only.actions] == ["bid_quantity"]
    assert rules_only.degraded is True


def test_engine_is_pure_for_identical_inputs() -> None:
    strategy = _strategy(
        [
            {
                "id": "r1",
                "conditions": [{"field": "price", "operator": "between", "value": [40, 80]}],
                "actions": [{"type": "bid_price", "parameters": {"adjustment": -1}}, {"type": "bid_quantity"}],
            }
        ]
    )
    engine = RuleEngine()
    first = engine.execute_strategy(strategy, _snapshot())
    second = engine.execute_strategy(strategy, _snapshot())
    assert first.actions == second.actions
    assert engine.metrics()["executions"] == 2
