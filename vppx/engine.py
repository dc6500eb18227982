from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable

from .actions import ActionResult, dispatch
from .evaluator import evaluate_conditions
from .models import Action, ContextSnapshot, RateLimit, Rule, Strategy
from .prediction import Prediction, PredictionProvider, coerce_prediction, get_shared_prediction_provider


_LOGGER = logging.getLogger("vppx.engine")
PREDICTION_STRATEGY_TYPES: frozenset[str] = frozenset({"ai_driven", "hybrid"})

ActionDispatcher = Callable[..., ActionResult]


@dataclass(frozen=True)
class StrategyRunResult:
    actions: list[ActionResult]
    success: bool
    fired_rules: list[str] = field(default_factory=list)
    rate_limited_rules: list[str] = field(default_factory=list)
    prediction: Prediction | None = None
    degraded: bool = False
    degraded_reason: str | None = None

    def action_value(self, action_type: str) -> Any:
        """Value of the last action of ``action_type``, or None."""
        for result in reversed(self.actions):
            if result.type == action_type and result.error is None:
                return result.value
        return None


class RuleRateLimiter:
    """Sliding-window firing limiter keyed on snapshot timestamps.

    Each executor (live engine, one backtest run) owns its own instance so
    replays stay deterministic.
    """

    def __init__(self) -> None:
        self._fires: dict[tuple[str, str], deque[datetime]] = {}
        self._lock = Lock()

    def try_acquire(self, strategy_id: str, rule_id: str, limit: RateLimit, at: datetime) -> bool:
        window_start = at - timedelta(seconds=limit.per_seconds)
        key = (strategy_id, rule_id)
        with self._lock:
            fired = self._fires.setdefault(key, deque())
            while fired and fired[0] <= window_start:
                fired.popleft()
            if len(fired) >= limit.max_fires:
                return False
            fired.append(at)
            return True

    def release(self, strategy_id: str, rule_id: str, at: datetime) -> bool:
        """Hand back the most recent slot taken at ``at``."""
        with self._lock:
            fired = self._fires.get((strategy_id, rule_id))
            if not fired:
                return False
            for index in range(len(fired) - 1, -1, -1):
                if fired[index] == at:
                    del fired[index]
                    return True
            return False

    def reset(self) -> None:
        with self._lock:
            self._fires.clear()


def _ordered_actions(rule: Rule) -> list[Action]:
    # sorted() is stable: equal priorities keep declaration order.
    return sorted(rule.actions, key=lambda action: -action.priority)


class RuleEngine:
    def __init__(self, *, prediction_provider: PredictionProvider | None = None) -> None:
        self._prediction_provider = prediction_provider
        self._metrics_lock = Lock()
        self._metrics: dict[str, int] = {
            "executions": 0,
            "rules_evaluated": 0,
            "rules_fired": 0,
            "rules_rate_limited": 0,
            "actions_dispatched": 0,
            "prediction_calls": 0,
            "prediction_failures": 0,
            "prediction_low_confidence": 0,
        }

    @property
    def prediction_provider(self) -> PredictionProvider | None:
        return self._prediction_provider

    def metrics(self) -> dict[str, int]:
        with self._metrics_lock:
            return dict(self._metrics)

    def _bump(self, key: str, amount: int = 1) -> None:
        with self._metrics_lock:
            self._metrics[key] = self._metrics.get(key, 0) + amount

    def execute_strategy(
        self,
        strategy: Strategy,
        snapshot: ContextSnapshot,
        *,
        rate_limiter: RuleRateLimiter | None = None,
        dispatcher: ActionDispatcher | None = None,
    ) -> StrategyRunResult:
        """Run every enabled rule in order, then the prediction path if the type asks for it.

        Exceptions raised by ``dispatcher`` propagate to the caller. Rate-limit
        slots taken by the failed run are released first, so retrying the same
        snapshot fires the same rules again.
        """
        dispatch_action = dispatcher or dispatch
        self._bump("executions")
        actions: list[ActionResult] = []
        fired_rules: list[str] = []
        rate_limited: list[str] = []
        acquired: list[str] = []

        try:
            for rule in strategy.rules:
                if not rule.enabled:
                    continue
                self._bump("rules_evaluated")
                if not evaluate_conditions(rule.conditions, snapshot):
                    continue
                if rule.rate_limit is not None and rate_limiter is not None:
                    if not rate_limiter.try_acquire(strategy.id, rule.id, rule.rate_limit, snapshot.timestamp):
                        self._bump("rules_rate_limited")
                        rate_limited.append(rule.id)
                        continue
                    acquired.append(rule.id)
                self._bump("rules_fired")
                fired_rules.append(rule.id)
                for action in _ordered_actions(rule):
                    actions.append(
                        dispatch_action(action, snapshot, strategy_id=strategy.id, rule_id=rule.id)
                    )
                    self._bump("actions_dispatched")
        except Exception:
            if rate_limiter is not None:
                for rule_id in acquired:
                    rate_limiter.release(strategy.id, rule_id, snapshot.timestamp)
            raise

        prediction: Prediction | None = None
        degraded_reason: str | None = None
        if strategy.type in PREDICTION_STRATEGY_TYPES:
            prediction, degraded_reason = self._predict(strategy, snapshot)
            if prediction is not None:
                actions.extend(
                    [
                        ActionResult(
                            type="bid_price",
                            value=prediction.bid_price,
                            timestamp=snapshot.timestamp,
                            confidence=prediction.confidence,
                            source="prediction",
                        ),
                        ActionResult(
                            type="bid_quantity",
                            value=prediction.bid_quantity,
                            timestamp=snapshot.timestamp,
                            confidence=prediction.confidence,
                            source="prediction",
                        ),
                    ]
                )

        return StrategyRunResult(
            actions=actions,
            success=True,
            fired_rules=fired_rules,
            rate_limited_rules=rate_limited,
            prediction=prediction,
            degraded=degraded_reason is not None,
            degraded_reason=degraded_reason,
        )

    def _predict(
        self, strategy: Strategy, snapshot: ContextSnapshot
    ) -> tuple[Prediction | None, str | None]:
        provider = self._prediction_provider
        if provider is None:
            return None, "prediction_unavailable"
        self._bump("prediction_calls")
        try:
            prediction = coerce_prediction(provider.predict(snapshot))
        except Exception as exc:
            self._bump("prediction_failures")
            _LOGGER.warning(
                "prediction failed strategy_id=%s provider=%s error=%s",
                strategy.id,
                provider.__class__.__name__,
                exc,
            )
            return None, "prediction_failed"
        min_confidence = float(strategy.prediction_config.get("min_confidence", 0.0))
        if prediction.confidence < min_confidence:
            self._bump("prediction_low_confidence")
            _LOGGER.info(
                "prediction below confidence floor strategy_id=%s confidence=%s min=%s",
                strategy.id,
                prediction.confidence,
                min_confidence,
            )
            return None, "prediction_low_confidence"
        return prediction, None


def build_rule_engine_from_config() -> RuleEngine:
    return RuleEngine(prediction_provider=get_shared_prediction_provider())
