from __future__ import annotations

import bisect
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any

from .config import RiskConfig, load_app_config
from .events import EVENT_RISK, EventChannel, event_channel
from .models import RiskParameters


UTC = timezone.utc
_LOGGER = logging.getLogger("vppx.risk")

REASON_MAX_DAILY_LOSS = "MAX_DAILY_LOSS"
REASON_MAX_POSITION_SIZE = "MAX_POSITION_SIZE"
REASON_MIN_CASH_RESERVE = "MIN_CASH_RESERVE"


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


@dataclass(frozen=True)
class RiskMetrics:
    daily_loss: float
    net_position: float
    cash_reserve: float
    equity: float
    peak_equity: float
    drawdown_ratio: float

    def to_record(self) -> dict[str, float]:
        return {
            "daily_loss": self.daily_loss,
            "net_position": self.net_position,
            "cash_reserve": self.cash_reserve,
            "equity": self.equity,
            "peak_equity": self.peak_equity,
            "drawdown_ratio": self.drawdown_ratio,
        }


@dataclass(frozen=True)
class RiskLimits:
    max_daily_loss: float
    max_position_size: float
    min_cash_reserve: float
    max_drawdown: float

    @classmethod
    def from_config(cls, cfg: RiskConfig, overrides: RiskParameters | None = None) -> "RiskLimits":
        def pick(name: str) -> float:
            if overrides is not None:
                value = getattr(overrides, name)
                if value is not None:
                    return float(value)
            return float(getattr(cfg, name))

        return cls(
            max_daily_loss=pick("max_daily_loss"),
            max_position_size=pick("max_position_size"),
            min_cash_reserve=pick("min_cash_reserve"),
            max_drawdown=pick("max_drawdown"),
        )


@dataclass(frozen=True)
class RiskDecision:
    passed: bool
    reason_code: str | None
    reason: str | None
    metrics: RiskMetrics


@dataclass(frozen=True)
class RiskEvent:
    detected_at: datetime
    risk_type: str
    risk_level: str
    description: str
    current_value: float
    threshold: float
    limit_value: float

    def to_record(self) -> dict[str, Any]:
        return {
            "detected_at": self.detected_at,
            "risk_type": self.risk_type,
            "risk_level": self.risk_level,
            "description": self.description,
            "current_value": self.current_value,
            "threshold": self.threshold,
            "limit_value": self.limit_value,
        }


class RiskLedger:
    """Realized P&L, net position and cash reserve fed by settlement.

    P&L entries are kept sorted by timestamp, so late settlements land in
    the right place. Reads never drop history; entries are pruned on write,
    once they fall a full window behind the newest recorded entry.
    """

    def __init__(self, *, initial_cash_reserve: float, daily_loss_window_hours: int = 24) -> None:
        self._window = timedelta(hours=max(1, int(daily_loss_window_hours)))
        self._initial_cash = float(initial_cash_reserve)
        self._lock = Lock()
        self._pnl: list[tuple[datetime, float]] = []
        self._net_position = 0.0
        self._cash = float(initial_cash_reserve)
        self._cumulative_pnl = 0.0
        self._peak_equity = float(initial_cash_reserve)

    def record_pnl(self, amount: float, at: datetime | None = None) -> None:
        ts = _to_utc(at or datetime.now(UTC))
        with self._lock:
            bisect.insort(self._pnl, (ts, float(amount)))
            cutoff = self._pnl[-1][0] - self._window
            del self._pnl[: bisect.bisect_right(self._pnl, (cutoff, math.inf))]
            self._cumulative_pnl += float(amount)
            self._cash += float(amount)
            self._peak_equity = max(self._peak_equity, self._initial_cash + self._cumulative_pnl)

    def adjust_position(self, delta: float) -> None:
        with self._lock:
            self._net_position += float(delta)

    def adjust_cash(self, delta: float) -> None:
        with self._lock:
            self._cash += float(delta)

    def reset(self) -> None:
        with self._lock:
            self._pnl.clear()
            self._net_position = 0.0
            self._cash = self._initial_cash
            self._cumulative_pnl = 0.0
            self._peak_equity = self._initial_cash

    def window_pnl(self, now: datetime | None = None) -> float:
        """Sum of P&L with ``now - window < ts <= now``."""
        current = _to_utc(now or datetime.now(UTC))
        window_start = current - self._window
        with self._lock:
            lo = bisect.bisect_right(self._pnl, (window_start, math.inf))
            hi = bisect.bisect_right(self._pnl, (current, math.inf))
            return sum(amount for _, amount in self._pnl[lo:hi])

    def snapshot(self, now: datetime | None = None) -> RiskMetrics:
        window_pnl = self.window_pnl(now)
        with self._lock:
            equity = self._initial_cash + self._cumulative_pnl
            peak = self._peak_equity
            drawdown = (peak - equity) / peak if peak > 0 else 0.0
            return RiskMetrics(
                daily_loss=max(0.0, -window_pnl),
                net_position=self._net_position,
                cash_reserve=self._cash,
                equity=equity,
                peak_equity=peak,
                drawdown_ratio=max(0.0, drawdown),
            )


class RiskGate:
    def __init__(
        self,
        *,
        config: RiskConfig,
        ledger: RiskLedger,
        channel: EventChannel | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._channel = channel if channel is not None else event_channel

    @property
    def ledger(self) -> RiskLedger:
        return self._ledger

    def limits(self, overrides: RiskParameters | None = None) -> RiskLimits:
        return RiskLimits.from_config(self._config, overrides)

    def check(
        self,
        *,
        now: datetime | None = None,
        overrides: RiskParameters | None = None,
    ) -> RiskDecision:
        """Blocking admission check; the first failing rule wins."""
        metrics = self._ledger.snapshot(now)
        limits = self.limits(overrides)
        if not metrics.daily_loss < limits.max_daily_loss:
            return RiskDecision(False, REASON_MAX_DAILY_LOSS, "exceeds max daily loss", metrics)
        if not abs(metrics.net_position) < limits.max_position_size:
            return RiskDecision(False, REASON_MAX_POSITION_SIZE, "exceeds max position size", metrics)
        if not metrics.cash_reserve >= limits.min_cash_reserve:
            return RiskDecision(False, REASON_MIN_CASH_RESERVE, "insufficient cash reserve", metrics)
        return RiskDecision(True, None, None, metrics)

    def sweep(self, now: datetime | None = None, *, publish: bool = True) -> list[RiskEvent]:
        """Advisory pass against warning thresholds. Never blocks anything."""
        detected_at = _to_utc(now or datetime.now(UTC))
        metrics = self._ledger.snapshot(detected_at)
        limits = self.limits()
        warn = self._config.warning_ratio
        events: list[RiskEvent] = []

        def upper_bound(risk_type: str, label: str, value: float, limit: float) -> None:
            threshold = limit * warn
            if limit <= 0 or value < threshold:
                return
            level = "high" if value >= limit else "medium"
            events.append(
                RiskEvent(
                    detected_at=detected_at,
                    risk_type=risk_type,
                    risk_level=level,
                    description=f"{label} {value:.4g} reached {value / limit:.0%} of limit {limit:.4g}",
                    current_value=value,
                    threshold=threshold,
                    limit_value=limit,
                )
            )

        upper_bound("daily_loss", "daily loss", metrics.daily_loss, limits.max_daily_loss)
        upper_bound("position_size", "net position", abs(metrics.net_position), limits.max_position_size)
        upper_bound("drawdown", "drawdown ratio", metrics.drawdown_ratio, limits.max_drawdown)

        cash_threshold = limits.min_cash_reserve * self._config.cash_warning_ratio
        if metrics.cash_reserve <= cash_threshold:
            level = "critical" if metrics.cash_reserve < limits.min_cash_reserve else "medium"
            events.append(
                RiskEvent(
                    detected_at=detected_at,
                    risk_type="cash_reserve",
                    risk_level=level,
                    description=(
                        f"cash reserve {metrics.cash_reserve:.4g} near minimum {limits.min_cash_reserve:.4g}"
                    ),
                    current_value=metrics.cash_reserve,
                    threshold=cash_threshold,
                    limit_value=limits.min_cash_reserve,
                )
            )

        for risk_event in events:
            _LOGGER.warning(
                "risk advisory type=%s level=%s value=%s limit=%s",
                risk_event.risk_type,
                risk_event.risk_level,
                risk_event.current_value,
                risk_event.limit_value,
            )
            if publish:
                self._channel.publish(
                    EVENT_RISK,
                    risk_event.description,
                    payload=risk_event.to_record() | {"detected_at": detected_at.isoformat()},
                    timestamp=detected_at,
                )
        return events


def build_risk_gate_from_config(channel: EventChannel | None = None) -> RiskGate:
    cfg = load_app_config().risk
    ledger = RiskLedger(
        initial_cash_reserve=cfg.initial_cash_reserve,
        daily_loss_window_hours=cfg.daily_loss_window_hours,
    )
    return RiskGate(config=cfg, ledger=ledger, channel=channel)
