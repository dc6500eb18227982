from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from vppx.analytics import build_report, market_analysis, max_drawdown, recommendations, sharpe_ratio, time_analysis
from vppx.config import BacktestConfig
from vppx.models import Strategy
from vppx.simulator import (
    REASON_CLEARED,
    REASON_NO_BID_SUBMITTED,
    REASON_PRICE_NOT_COMPETITIVE,
    SimulationResult,
    SkippedTick,
    Trade,
)


UTC = timezone.utc
T0 = datetime(2026, 3, 2, 0, 0, tzinfo=UTC)

CFG = BacktestConfig(
    clearing_tolerance=0.10,
    unit_cost_constant=30.0,
    progress_step_pct=10,
    price_band_low=40.0,
    price_band_high=80.0,
    volatility_reference_price=50.0,
    min_success_rate=0.5,
    min_profit_margin=0.1,
    min_sharpe_ratio=1.0,
    max_drawdown_ratio=0.2,
    annotate_risk=False,
)

STRATEGY = Strategy.model_validate(
    {
        "id": "S-UT-REPORT",
        "name": "report test",
        "type": "ai_driven",
        "status": "testing",
        "created_at": T0,
        "updated_at": T0,
    }
)


def _cleared(index: int, profit: float, *, hours: int | None = None, price: float = 50.0) -> Trade:
    return Trade(
        trade_id=f"T{index:06d}",
        timestamp=T0 + timedelta(hours=index if hours is None else hours),
        cleared=True,
        reason=REASON_CLEARED,
        market_price=price,
        market_volume=1000.0,
        available_capacity=100.0,
        bid_price=price,
        bid_quantity=10.0,
        cleared_price=price,
        cleared_quantity=10.0,
        revenue=profit + 100.0,
        cost=100.0,
        profit=profit,
    )


def _missed(index: int, reason: str = REASON_PRICE_NOT_COMPETITIVE) -> Trade:
    return Trade(
        trade_id=f"T{index:06d}",
        timestamp=T0 + timedelta(hours=index),
        cleared=False,
        reason=reason,
        market_price=50.0,
        market_volume=1000.0,
        available_capacity=100.0,
        bid_price=None if reason == REASON_NO_BID_SUBMITTED else 70.0,
        bid_quantity=None if reason == REASON_NO_BID_SUBMITTED else 10.0,
    )


def test_sharpe_uses_population_stddev() -> None:
    assert sharpe_ratio([10.0, 20.0, 30.0]) == pytest.approx(20.0 / math.sqrt(200.0 / 3.0))
    assert sharpe_ratio([5.0, 5.0]) == 0.0
    assert sharpe_ratio([]) == 0.0


def test_drawdown_follows_cumulative_cleared_profit() -> None:
    trades = [_cleared(1, 100.0), _cleared(2, -30.0), _missed(3), _cleared(4, 50.0), _cleared(5, -80.0)]
    drawdown, ratio = max_drawdown(trades)
    assert drawdown == pytest.approx(80.0)
    assert ratio == pytest.approx(80.0 / 120.0)


def test_drawdown_orders_by_time() -> None:
    shuffled = [_cleared(5, -80.0), _cleared(1, 100.0), _cleared(4, 50.0), _cleared(2, -30.0)]
    assert max_drawdown(shuffled) == max_drawdown(sorted(shuffled, key=lambda trade: trade.timestamp))


def test_drawdown_of_losses_only_has_no_ratio() -> None:
    drawdown, ratio = max_drawdown([_cleared(1, -10.0), _cleared(2, -15.0)])
    assert drawdown == pytest.approx(25.0)
    assert ratio == 0.0


def test_time_analysis_buckets_by_utc_hour() -> None:
    timing = time_analysis([_cleared(1, 10.0, hours=18), _cleared(2, 30.0, hours=42), _cleared(3, -5.0, hours=3)])
    assert timing["timezone"] == "UTC"
    assert len(timing["hourly_performance"]) == 24
    assert timing["hourly_performance"][18] == {"hour": 18, "trades": 2, "profit": 40.0}
    assert timing["best_trading_hour"] == 18
    assert timing["worst_trading_hour"] == 3
    assert [item["date"] for item in timing["daily_performance"]] == ["2026-03-02", "2026-03-03"]

    empty = time_analysis([])
    assert empty["best_trading_hour"] is None
    assert empty["daily_performance"] == []


def test_market_analysis_bands() -> None:
    market = market_analysis(
        [
            _cleared(1, 5.0, price=30.0),
            _cleared(2, 50.0, price=52.0),
            _cleared(3, 20.0, price=80.0),
            _cleared(4, -10.0, price=40.0),
        ],
        CFG,
    )
    bands = market["price_bands"]
    assert (bands["low"]["trades"], bands["medium"]["trades"], bands["high"]["trades"]) == (1, 2, 1)
    assert bands["medium"]["profit"] == pytest.approx(40.0)

    volatility = market["volatility_bands"]
    # deviation from 50: 0.4, 0.04, 0.6, 0.2
    assert (volatility["low"]["trades"], volatility["medium"]["trades"], volatility["high"]["trades"]) == (1, 1, 2)
    assert market["optimal_conditions"] == {"optimal_price_band": "medium", "optimal_volatility_band": "low"}


def test_recommendations_thresholds() -> None:
    optimal = {"optimal_price_band": None, "optimal_volatility_band": None}
    none_submitted = recommendations(
        submitted=0, success_rate=0.0, profit_margin=0.0, sharpe=0.0, drawdown_ratio=0.0, optimal=optimal, cfg=CFG
    )
    assert len(none_submitted) == 1
    assert none_submitted[0].startswith("No bids were submitted")

    weak = recommendations(
        submitted=10, success_rate=0.2, profit_margin=0.05, sharpe=0.5, drawdown_ratio=0.5, optimal=optimal, cfg=CFG
    )
    assert len(weak) == 4

    healthy = recommendations(
        submitted=10,
        success_rate=0.9,
        profit_margin=0.4,
        sharpe=2.0,
        drawdown_ratio=0.1,
        optimal={"optimal_price_band": "medium", "optimal_volatility_band": "low"},
        cfg=CFG,
    )
    assert healthy[0].startswith("Strategy performs well")
    assert healthy[1:] == [
        "Best results came in the medium price band.",
        "Best results came in low volatility conditions.",
    ]


def test_build_report_aggregates() -> None:
    trades = [
        _cleared(1, 100.0),
        _cleared(2, -30.0),
        _missed(3),
        _missed(4, REASON_NO_BID_SUBMITTED),
        _cleared(5, 50.0),
    ]
    result = SimulationResult(
        trades=trades,
        total_ticks=6,
        skipped_ticks=1,
        skipped=[SkippedTick(index=5, reason="snapshot missing required fields: market.price")],
        alerts_emitted=2,
    )
    report = build_report(STRATEGY, result, config=CFG, clearing_tolerance=0.1, unit_cost_constant=30.0)

    perf = report["performance_metrics"]
    assert perf["total_ticks"] == 6
    assert perf["total_bids"] == 4
    assert perf["cleared_trades"] == 3
    assert perf["success_rate"] == pytest.approx(0.75)
    assert perf["net_profit"] == pytest.approx(120.0)
    assert perf["total_revenue"] == pytest.approx(420.0)
    assert perf["total_cost"] == pytest.approx(300.0)
    assert perf["profit_margin"] == pytest.approx(120.0 / 420.0)

    risk = report["risk_metrics"]
    assert risk["max_profit"] == 100.0
    assert risk["max_loss"] == 30.0
    assert risk["average_profit"] == pytest.approx(75.0)
    assert risk["profit_loss_ratio"] == pytest.approx(2.5)
    assert risk["sharpe_ratio"] == pytest.approx(sharpe_ratio([100.0, 50.0]))
    assert risk["max_drawdown"] == pytest.approx(30.0)
    assert risk["max_drawdown_ratio"] == pytest.approx(0.3)

    assert report["outcomes"]["cleared"] == 3
    assert report["outcomes"]["price_not_competitive"] == 1
    assert report["outcomes"]["no_bid_submitted"] == 1
    assert report["outcomes"]["insufficient_capacity"] == 0
    assert report["data_quality"]["skipped_ticks"] == 1
    assert report["alerts_emitted"] == 2
    assert [point["cumulative_profit"] for point in report["profit_curve"]] == [100.0, 70.0, 120.0]
    assert report["executive_summary"]["recommendation_count"] == len(report["recommendations"])
    assert report["strategy"]["id"] == "S-UT-REPORT"


def test_report_without_bids() -> None:
    result = SimulationResult(trades=[_missed(1, REASON_NO_BID_SUBMITTED)], total_ticks=1)
    report = build_report(STRATEGY, result, config=CFG, clearing_tolerance=0.1, unit_cost_constant=30.0)
    assert report["performance_metrics"]["success_rate"] == 0.0
    assert report["risk_metrics"]["sharpe_ratio"] == 0.0
    assert report["recommendations"] == [
        "No bids were submitted; check that rule conditions can match the replayed data."
    ]


def test_report_is_deterministic() -> None:
    result = SimulationResult(trades=[_cleared(1, 10.0), _cleared(2, 20.0)], total_ticks=2)
    first = build_report(STRATEGY, result, config=CFG, clearing_tolerance=0.1, unit_cost_constant=30.0)
    second = build_report(STRATEGY, result, config=CFG, clearing_tolerance=0.1, unit_cost_constant=30.0)
    assert first == second
