from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Sequence

from .actions import ActionResult, dispatch
from .config import BacktestConfig, RiskConfig, load_app_config
from .engine import RuleEngine, RuleRateLimiter
from .errors import BacktestCancelled, SimulationDataError
from .events import EventChannel
from .feed import coerce_snapshot
from .models import ContextSnapshot, Strategy
from .risk import RiskGate, RiskLedger


_LOGGER = logging.getLogger("vppx.backtest")

REASON_CLEARED = "cleared"
REASON_PRICE_NOT_COMPETITIVE = "price_not_competitive"
REASON_INSUFFICIENT_MARKET_VOLUME = "insufficient_market_volume"
REASON_INSUFFICIENT_CAPACITY = "insufficient_capacity"
REASON_NO_BID_SUBMITTED = "no_bid_submitted"
OUTCOME_REASONS: tuple[str, ...] = (
    REASON_CLEARED,
    REASON_PRICE_NOT_COMPETITIVE,
    REASON_INSUFFICIENT_MARKET_VOLUME,
    REASON_INSUFFICIENT_CAPACITY,
    REASON_NO_BID_SUBMITTED,
)
MAX_RECORDED_SKIPS = 50

ProgressCallback = Callable[[int, int, int], None]
CancelCheck = Callable[[], bool]


@dataclass(frozen=True)
class Trade:
    trade_id: str
    timestamp: datetime
    cleared: bool
    reason: str
    market_price: float
    market_volume: float
    available_capacity: float
    bid_price: float | None = None
    bid_quantity: float | None = None
    cleared_price: float | None = None
    cleared_quantity: float | None = None
    revenue: float = 0.0
    cost: float = 0.0
    profit: float = 0.0

    def __post_init__(self) -> None:
        if self.profit != self.revenue - self.cost:
            raise ValueError(f"trade {self.trade_id}: profit must equal revenue - cost")

    @property
    def submitted(self) -> bool:
        return self.reason != REASON_NO_BID_SUBMITTED

    def to_record(self) -> dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "cleared": self.cleared,
            "reason": self.reason,
            "market_price": self.market_price,
            "market_volume": self.market_volume,
            "available_capacity": self.available_capacity,
            "bid_price": self.bid_price,
            "bid_quantity": self.bid_quantity,
            "cleared_price": self.cleared_price,
            "cleared_quantity": self.cleared_quantity,
            "revenue": self.revenue,
            "cost": self.cost,
            "profit": self.profit,
        }


def simulate_clearing(
    trade_id: str,
    snapshot: ContextSnapshot,
    bid_price: float | None,
    bid_quantity: float | None,
    *,
    clearing_tolerance: float,
    unit_cost_constant: float,
) -> Trade:
    """Clear one bid against one tick.

    Checks run price, then volume, then capacity; the first failure names
    the reason. A cleared bid settles at the market price.
    """
    market_price = snapshot.market.price
    market_volume = snapshot.market.volume
    capacity = snapshot.resource.available_capacity
    base = {
        "trade_id": trade_id,
        "timestamp": snapshot.timestamp,
        "market_price": market_price,
        "market_volume": market_volume,
        "available_capacity": capacity,
        "bid_price": bid_price,
        "bid_quantity": bid_quantity,
    }
    if bid_price is None or bid_quantity is None:
        return Trade(cleared=False, reason=REASON_NO_BID_SUBMITTED, **base)
    if abs(bid_price - market_price) / market_price > clearing_tolerance:
        return Trade(cleared=False, reason=REASON_PRICE_NOT_COMPETITIVE, **base)
    if bid_quantity > market_volume:
        return Trade(cleared=False, reason=REASON_INSUFFICIENT_MARKET_VOLUME, **base)
    if bid_quantity > capacity:
        return Trade(cleared=False, reason=REASON_INSUFFICIENT_CAPACITY, **base)

    revenue = market_price * bid_quantity
    cost = bid_quantity * unit_cost_constant
    return Trade(
        cleared=True,
        reason=REASON_CLEARED,
        cleared_price=market_price,
        cleared_quantity=bid_quantity,
        revenue=revenue,
        cost=cost,
        profit=revenue - cost,
        **base,
    )


@dataclass(frozen=True)
class SkippedTick:
    index: int
    reason: str


@dataclass
class SimulationResult:
    trades: list[Trade] = field(default_factory=list)
    total_ticks: int = 0
    skipped_ticks: int = 0
    skipped: list[SkippedTick] = field(default_factory=list)
    risk_annotations: list[dict[str, Any]] = field(default_factory=list)
    alerts_emitted: int = 0
    degraded_ticks: int = 0


class _CollectingSink:
    """Keeps backtest alert/log side effects local to the run."""

    def __init__(self) -> None:
        self.emitted: list[tuple[str, str]] = []

    def emit(self, kind: str, message: str, payload: dict[str, Any]) -> None:
        self.emitted.append((kind, message))


def extract_bid(actions: Sequence[Any]) -> tuple[float | None, float | None]:
    """Last bid_price / bid_quantity values; a declined participation means no bid."""
    bid_price: float | None = None
    bid_quantity: float | None = None
    participate = True
    for result in actions:
        if result.error is not None:
            continue
        if result.type == "bid_price":
            bid_price = float(result.value)
        elif result.type == "bid_quantity":
            bid_quantity = float(result.value)
        elif result.type == "market_participation":
            participate = bool(result.value)
    if not participate:
        return None, None
    return bid_price, bid_quantity


class BacktestSimulator:
    def __init__(
        self,
        *,
        rule_engine: RuleEngine | None = None,
        config: BacktestConfig | None = None,
        risk_config: RiskConfig | None = None,
        clearing_tolerance: float | None = None,
        unit_cost_constant: float | None = None,
    ) -> None:
        app_cfg = load_app_config() if config is None or risk_config is None else None
        self._config = config or app_cfg.backtest
        self._risk_config = risk_config or app_cfg.risk
        self._rule_engine = rule_engine or RuleEngine()
        self.clearing_tolerance = (
            self._config.clearing_tolerance if clearing_tolerance is None else float(clearing_tolerance)
        )
        self.unit_cost_constant = (
            self._config.unit_cost_constant if unit_cost_constant is None else float(unit_cost_constant)
        )

    @property
    def config(self) -> BacktestConfig:
        return self._config

    def _risk_gate(self) -> RiskGate | None:
        if not self._config.annotate_risk:
            return None
        ledger = RiskLedger(
            initial_cash_reserve=self._risk_config.initial_cash_reserve,
            daily_loss_window_hours=self._risk_config.daily_loss_window_hours,
        )
        # private channel: annotations are never published
        return RiskGate(config=self._risk_config, ledger=ledger, channel=EventChannel(maxsize=1))

    def run(
        self,
        strategy: Strategy,
        records: Sequence[Any],
        *,
        progress: ProgressCallback | None = None,
        should_cancel: CancelCheck | None = None,
    ) -> SimulationResult:
        """Replay ``records`` in order; bad ticks are skipped and counted."""
        total = len(records)
        result = SimulationResult(total_ticks=total)
        rate_limiter = RuleRateLimiter()
        sink = _CollectingSink()
        gate = self._risk_gate()
        step = max(1, int(self._config.progress_step_pct))
        last_reported = 0

        def dispatch_local(action: Any, snapshot: ContextSnapshot, **kwargs: Any) -> ActionResult:
            return dispatch(action, snapshot, sink=sink, **kwargs)

        for index, raw in enumerate(records):
            if should_cancel is not None and should_cancel():
                raise BacktestCancelled(f"backtest cancelled after {index} of {total} ticks")
            try:
                snapshot = coerce_snapshot(raw)
            except SimulationDataError as exc:
                result.skipped_ticks += 1
                if len(result.skipped) < MAX_RECORDED_SKIPS:
                    result.skipped.append(SkippedTick(index=index, reason=str(exc)))
                _LOGGER.warning("skip tick index=%s strategy_id=%s reason=%s", index, strategy.id, exc)
            else:
                run = self._rule_engine.execute_strategy(
                    strategy,
                    snapshot,
                    rate_limiter=rate_limiter,
                    dispatcher=dispatch_local,
                )
                if run.degraded:
                    result.degraded_ticks += 1
                bid_price, bid_quantity = extract_bid(run.actions)
                if gate is not None and bid_price is not None and bid_quantity is not None:
                    decision = gate.check(now=snapshot.timestamp, overrides=strategy.risk)
                    if not decision.passed:
                        result.risk_annotations.append(
                            {
                                "tick": index,
                                "timestamp": snapshot.timestamp.isoformat().replace("+00:00", "Z"),
                                "reason_code": decision.reason_code,
                                "reason": decision.reason,
                            }
                        )
                trade = simulate_clearing(
                    f"T{index + 1:06d}",
                    snapshot,
                    bid_price,
                    bid_quantity,
                    clearing_tolerance=self.clearing_tolerance,
                    unit_cost_constant=self.unit_cost_constant,
                )
                if gate is not None and trade.cleared:
                    gate.ledger.record_pnl(trade.profit, snapshot.timestamp)
                result.trades.append(trade)

            processed = index + 1
            pct = processed * 100 // total
            if progress is not None and (pct >= last_reported + step or processed == total):
                last_reported = pct
                progress(pct, processed, total)

        result.alerts_emitted = len(sink.emitted)
        _LOGGER.info(
            "replay finished strategy_id=%s ticks=%s trades=%s skipped=%s",
            strategy.id,
            total,
            len(result.trades),
            result.skipped_ticks,
        )
        return result
