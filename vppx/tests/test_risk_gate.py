from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from vppx.config import RiskConfig
from vppx.events import EVENT_RISK, EventChannel
from vppx.models import RiskParameters
from vppx.risk import (
    REASON_MAX_DAILY_LOSS,
    REASON_MAX_POSITION_SIZE,
    REASON_MIN_CASH_RESERVE,
    RiskGate,
    RiskLedger,
)


UTC = timezone.utc
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

BASE_RISK = RiskConfig(
    max_daily_loss=1000.0,
    max_position_size=100.0,
    min_cash_reserve=5000.0,
    max_drawdown=0.1,
    warning_ratio=0.8,
    cash_warning_ratio=1.2,
    initial_cash_reserve=20000.0,
    daily_loss_window_hours=24,
)


def _gate(cfg: RiskConfig = BASE_RISK, channel: EventChannel | None = None) -> RiskGate:
    ledger = RiskLedger(
        initial_cash_reserve=cfg.initial_cash_reserve,
        daily_loss_window_hours=cfg.daily_loss_window_hours,
    )
    return RiskGate(config=cfg, ledger=ledger, channel=channel if channel is not None else EventChannel(maxsize=100))


def test_clean_ledger_passes() -> None:
    decision = _gate().check(now=NOW)
    assert decision.passed is True
    assert decision.reason_code is None
    assert decision.metrics.daily_loss == 0.0


def test_daily_loss_over_limit_is_rejected() -> None:
    gate = _gate()
    gate.ledger.record_pnl(-1200.0, NOW - timedelta(hours=1))

    decision = gate.check(now=NOW)
    assert decision.passed is False
    assert decision.reason_code == REASON_MAX_DAILY_LOSS
    assert decision.reason == "exceeds max daily loss"
    assert decision.metrics.daily_loss == 1200.0


def test_daily_loss_window_rolls_off() -> None:
    gate = _gate()
    gate.ledger.record_pnl(-1200.0, NOW - timedelta(hours=25))
    assert gate.check(now=NOW).passed is True


def test_checks_run_in_fixed_order() -> None:
    gate = _gate()
    gate.ledger.record_pnl(-1500.0, NOW)
    gate.ledger.adjust_position(250.0)
    gate.ledger.adjust_cash(-20000.0)
    assert gate.check(now=NOW).reason_code == REASON_MAX_DAILY_LOSS

    gate = _gate()
    gate.ledger.adjust_position(-100.0)
    gate.ledger.adjust_cash(-20000.0)
    assert gate.check(now=NOW).reason_code == REASON_MAX_POSITION_SIZE

    gate = _gate()
    gate.ledger.adjust_cash(-15000.01)
    decision = gate.check(now=NOW)
    assert decision.reason_code == REASON_MIN_CASH_RESERVE
    assert decision.reason == "insufficient cash reserve"


def test_cash_exactly_at_minimum_passes() -> None:
    gate = _gate()
    gate.ledger.adjust_cash(-15000.0)
    assert gate.check(now=NOW).passed is True


def test_strategy_overrides_tighten_limits() -> None:
    gate = _gate()
    gate.ledger.record_pnl(-300.0, NOW)
    assert gate.check(now=NOW).passed is True
    decision = gate.check(now=NOW, overrides=RiskParameters(max_daily_loss=250.0))
    assert decision.reason_code == REASON_MAX_DAILY_LOSS


def test_sweep_is_advisory_and_publishes() -> None:
    channel = EventChannel(maxsize=100)
    gate = _gate(channel=channel)
    gate.ledger.record_pnl(-850.0, NOW)
    gate.ledger.adjust_position(120.0)

    events = gate.sweep(NOW)
    by_type = {event.risk_type: event for event in events}
    assert by_type["daily_loss"].risk_level == "medium"
    assert by_type["daily_loss"].threshold == 800.0
    assert by_type["position_size"].risk_level == "high"
    assert "cash_reserve" not in by_type

    published = channel.drain()
    assert [event.event_type for event in published] == [EVENT_RISK] * len(events)

    # The sweep never blocks on its own; admission still decides independently.
    assert gate.check(now=NOW).reason_code == REASON_MAX_POSITION_SIZE


def test_sweep_reports_drawdown_and_cash() -> None:
    cfg = replace(BASE_RISK, min_cash_reserve=19000.0)
    gate = _gate(cfg)
    gate.ledger.record_pnl(5000.0, NOW - timedelta(days=2))
    gate.ledger.record_pnl(-2600.0, NOW - timedelta(days=2))

    metrics = gate.ledger.snapshot(NOW)
    assert metrics.peak_equity == 25000.0
    assert metrics.equity == 22400.0

    events = gate.sweep(NOW, publish=False)
    by_type = {event.risk_type: event for event in events}
    assert by_type["drawdown"].risk_level == "high"
    assert by_type["cash_reserve"].risk_level == "medium"
    assert "daily_loss" not in by_type


def test_ledger_reset() -> None:
    gate = _gate()
    gate.ledger.record_pnl(-2000.0, NOW)
    gate.ledger.adjust_position(500.0)
    gate.ledger.reset()
    metrics = gate.ledger.snapshot(NOW)
    assert metrics.daily_loss == 0.0
    assert metrics.net_position == 0.0
    assert metrics.cash_reserve == 20000.0


def test_late_settlement_outside_window_is_ignored() -> None:
    gate = _gate()
    gate.ledger.record_pnl(-600.0, NOW - timedelta(hours=1))
    gate.ledger.record_pnl(-600.0, NOW - timedelta(hours=30))

    decision = gate.check(now=NOW)
    assert decision.metrics.daily_loss == 600.0
    assert decision.passed is True


def test_late_settlement_inside_window_counts() -> None:
    gate = _gate()
    gate.ledger.record_pnl(-300.0, NOW - timedelta(hours=1))
    gate.ledger.record_pnl(-800.0, NOW - timedelta(hours=5))

    decision = gate.check(now=NOW)
    assert decision.metrics.daily_loss == 1100.0
    assert decision.reason_code == REASON_MAX_DAILY_LOSS


def test_future_read_does_not_drop_history() -> None:
    gate = _gate()
    gate.ledger.record_pnl(-1200.0, NOW)

    assert gate.ledger.snapshot(NOW + timedelta(days=2)).daily_loss == 0.0
    assert gate.ledger.snapshot(NOW).daily_loss == 1200.0
    assert gate.check(now=NOW).reason_code == REASON_MAX_DAILY_LOSS
