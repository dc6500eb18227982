from __future__ import annotations

import math
from collections import Counter
from typing import Any, Sequence

from .config import BacktestConfig
from .models import Strategy
from .simulator import OUTCOME_REASONS, SimulationResult, Trade


VOLATILITY_LOW = 0.1
VOLATILITY_MEDIUM = 0.3
BAND_NAMES: tuple[str, ...] = ("low", "medium", "high")


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def population_stddev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = _mean(values)
    return math.sqrt(sum((value - mean) ** 2 for value in values) / len(values))


def sharpe_ratio(profits: Sequence[float]) -> float:
    """mean / population stddev, no risk-free term; 0.0 when undefined."""
    stddev = population_stddev(profits)
    if stddev <= 0:
        return 0.0
    return _mean(profits) / stddev


def max_drawdown(trades: Sequence[Trade]) -> tuple[float, float]:
    """Largest peak-to-trough fall of cumulative realized profit.

    Only cleared trades move the curve; the peak starts at zero. Returns the
    absolute drawdown and the drawdown as a share of the peak it fell from.
    """
    cumulative = 0.0
    peak = 0.0
    worst = 0.0
    worst_ratio = 0.0
    for trade in _time_ordered(trades):
        if not trade.cleared:
            continue
        cumulative += trade.profit
        peak = max(peak, cumulative)
        drawdown = peak - cumulative
        if drawdown > worst:
            worst = drawdown
        if peak > 0:
            worst_ratio = max(worst_ratio, drawdown / peak)
    return worst, worst_ratio


def _time_ordered(trades: Sequence[Trade]) -> list[Trade]:
    # sorted() is stable, so same-timestamp trades keep replay order.
    return sorted(trades, key=lambda trade: trade.timestamp)


def _price_band(price: float, cfg: BacktestConfig) -> str:
    if price < cfg.price_band_low:
        return "low"
    if price < cfg.price_band_high:
        return "medium"
    return "high"


def _volatility_band(price: float, reference: float) -> str:
    deviation = abs(price - reference) / reference
    if deviation < VOLATILITY_LOW:
        return "low"
    if deviation < VOLATILITY_MEDIUM:
        return "medium"
    return "high"


def _best_band(bands: dict[str, dict[str, Any]]) -> str | None:
    traded = [name for name in BAND_NAMES if bands[name]["trades"] > 0]
    if not traded:
        return None
    best = traded[0]
    for name in traded[1:]:
        if bands[name]["profit"] > bands[best]["profit"]:
            best = name
    return best


def time_analysis(cleared: Sequence[Trade]) -> dict[str, Any]:
    hourly = [{"hour": hour, "trades": 0, "profit": 0.0} for hour in range(24)]
    daily: dict[str, dict[str, Any]] = {}
    for trade in cleared:
        bucket = hourly[trade.timestamp.hour]
        bucket["trades"] += 1
        bucket["profit"] += trade.profit
        day = trade.timestamp.date().isoformat()
        slot = daily.setdefault(day, {"date": day, "trades": 0, "profit": 0.0})
        slot["trades"] += 1
        slot["profit"] += trade.profit

    active_hours = [bucket for bucket in hourly if bucket["trades"] > 0]
    best_hour = worst_hour = None
    if active_hours:
        best_hour = active_hours[0]["hour"]
        worst_hour = active_hours[0]["hour"]
        for bucket in active_hours[1:]:
            if bucket["profit"] > hourly[best_hour]["profit"]:
                best_hour = bucket["hour"]
            if bucket["profit"] < hourly[worst_hour]["profit"]:
                worst_hour = bucket["hour"]
    return {
        "timezone": "UTC",
        "hourly_performance": hourly,
        "best_trading_hour": best_hour,
        "worst_trading_hour": worst_hour,
        "daily_performance": [daily[day] for day in sorted(daily)],
    }


def market_analysis(cleared: Sequence[Trade], cfg: BacktestConfig) -> dict[str, Any]:
    price_bands: dict[str, dict[str, Any]] = {
        "low": {"min": 0.0, "max": cfg.price_band_low, "trades": 0, "profit": 0.0},
        "medium": {"min": cfg.price_band_low, "max": cfg.price_band_high, "trades": 0, "profit": 0.0},
        "high": {"min": cfg.price_band_high, "max": None, "trades": 0, "profit": 0.0},
    }
    volatility_bands: dict[str, dict[str, Any]] = {
        "low": {"max_deviation": VOLATILITY_LOW, "trades": 0, "profit": 0.0},
        "medium": {"max_deviation": VOLATILITY_MEDIUM, "trades": 0, "profit": 0.0},
        "high": {"max_deviation": None, "trades": 0, "profit": 0.0},
    }
    for trade in cleared:
        band = price_bands[_price_band(trade.market_price, cfg)]
        band["trades"] += 1
        band["profit"] += trade.profit
        vol = volatility_bands[_volatility_band(trade.market_price, cfg.volatility_reference_price)]
        vol["trades"] += 1
        vol["profit"] += trade.profit
    return {
        "price_bands": price_bands,
        "volatility_reference_price": cfg.volatility_reference_price,
        "volatility_bands": volatility_bands,
        "optimal_conditions": {
            "optimal_price_band": _best_band(price_bands),
            "optimal_volatility_band": _best_band(volatility_bands),
        },
    }


def recommendations(
    *,
    submitted: int,
    success_rate: float,
    profit_margin: float,
    sharpe: float,
    drawdown_ratio: float,
    optimal: dict[str, Any],
    cfg: BacktestConfig,
) -> list[str]:
    if submitted == 0:
        return ["No bids were submitted; check that rule conditions can match the replayed data."]
    items: list[str] = []
    if success_rate < cfg.min_success_rate:
        items.append("Clearing success rate is low; refine rule conditions or bid price adjustments.")
    if profit_margin < cfg.min_profit_margin:
        items.append("Profit margin is thin; review cost assumptions and pricing.")
    if sharpe < cfg.min_sharpe_ratio:
        items.append("Risk-adjusted return is weak; tighten risk limits on this strategy.")
    if drawdown_ratio > cfg.max_drawdown_ratio:
        items.append("Drawdown is large relative to peak profit; add loss limits before activation.")
    if not items:
        items.append("Strategy performs well; consider increasing committed capacity.")
    if optimal.get("optimal_price_band"):
        items.append(f"Best results came in the {optimal['optimal_price_band']} price band.")
    if optimal.get("optimal_volatility_band"):
        items.append(f"Best results came in {optimal['optimal_volatility_band']} volatility conditions.")
    return items


def build_report(
    strategy: Strategy,
    result: SimulationResult,
    *,
    config: BacktestConfig,
    clearing_tolerance: float,
    unit_cost_constant: float,
) -> dict[str, Any]:
    """Aggregate a replay into the report dict.

    Contains no wall-clock values: identical inputs give an identical report.
    """
    trades = result.trades
    submitted = [trade for trade in trades if trade.submitted]
    cleared = [trade for trade in trades if trade.cleared]
    profitable = [trade.profit for trade in cleared if trade.profit > 0]
    losses = [-trade.profit for trade in cleared if trade.profit < 0]

    total_revenue = sum(trade.revenue for trade in cleared)
    total_cost = sum(trade.cost for trade in cleared)
    net_profit = sum(trade.profit for trade in cleared)
    success_rate = len(cleared) / len(submitted) if submitted else 0.0
    profit_margin = net_profit / total_revenue if total_revenue > 0 else 0.0
    average_profit = _mean(profitable)
    average_loss = _mean(losses)
    sharpe = sharpe_ratio(profitable)
    drawdown, drawdown_ratio = max_drawdown(trades)

    outcomes = Counter(trade.reason for trade in trades)
    timing = time_analysis(_time_ordered(cleared))
    market = market_analysis(cleared, config)

    cumulative = 0.0
    profit_curve: list[dict[str, Any]] = []
    for trade in _time_ordered(cleared):
        cumulative += trade.profit
        profit_curve.append(
            {"timestamp": trade.timestamp.isoformat().replace("+00:00", "Z"), "cumulative_profit": cumulative}
        )

    performance = {
        "total_ticks": result.total_ticks,
        "total_bids": len(submitted),
        "cleared_trades": len(cleared),
        "success_rate": success_rate,
        "total_revenue": total_revenue,
        "total_cost": total_cost,
        "net_profit": net_profit,
        "profit_margin": profit_margin,
        "average_revenue": _mean([trade.revenue for trade in cleared]),
        "average_cost": _mean([trade.cost for trade in cleared]),
    }
    risk = {
        "max_profit": max(profitable) if profitable else 0.0,
        "max_loss": max(losses) if losses else 0.0,
        "average_profit": average_profit,
        "average_loss": average_loss,
        "profit_loss_ratio": average_profit / average_loss if average_loss > 0 else 0.0,
        "sharpe_ratio": sharpe,
        "sharpe_basis": "profitable_trades",
        "max_drawdown": drawdown,
        "max_drawdown_ratio": drawdown_ratio,
    }
    advice = recommendations(
        submitted=len(submitted),
        success_rate=success_rate,
        profit_margin=profit_margin,
        sharpe=sharpe,
        drawdown_ratio=drawdown_ratio,
        optimal=market["optimal_conditions"],
        cfg=config,
    )
    findings = [
        f"{len(cleared)} of {len(submitted)} bids cleared ({success_rate:.1%}).",
        f"Net profit {net_profit:.2f} on revenue {total_revenue:.2f} (margin {profit_margin:.1%}).",
        f"Maximum drawdown {drawdown:.2f}.",
    ]
    if result.skipped_ticks:
        findings.append(f"{result.skipped_ticks} ticks skipped for missing or invalid data.")
    if timing["best_trading_hour"] is not None:
        findings.append(f"Best trading hour {timing['best_trading_hour']:02d}:00 UTC.")

    return {
        "strategy": {
            "id": strategy.id,
            "name": strategy.name,
            "type": strategy.type,
            "version": strategy.version,
        },
        "parameters": {
            "clearing_tolerance": clearing_tolerance,
            "unit_cost_constant": unit_cost_constant,
        },
        "data_quality": {
            "total_ticks": result.total_ticks,
            "skipped_ticks": result.skipped_ticks,
            "skipped_samples": [{"index": item.index, "reason": item.reason} for item in result.skipped],
            "degraded_ticks": result.degraded_ticks,
        },
        "performance_metrics": performance,
        "risk_metrics": risk,
        "outcomes": {reason: outcomes.get(reason, 0) for reason in OUTCOME_REASONS},
        "time_analysis": timing,
        "market_analysis": market,
        "profit_curve": profit_curve,
        "risk_annotations": {
            "count": len(result.risk_annotations),
            "items": list(result.risk_annotations),
        },
        "alerts_emitted": result.alerts_emitted,
        "recommendations": advice,
        "executive_summary": {
            "headline": (
                f"{strategy.name}: {len(cleared)} cleared trades, net profit {net_profit:.2f}, "
                f"Sharpe {sharpe:.2f}"
            ),
            "key_findings": findings,
            "recommendation_count": len(advice),
        },
    }
