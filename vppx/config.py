from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any


PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_APP_CONFIG_PATH = PROJECT_ROOT / "conf" / "app.toml"
SUPPORTED_PREDICTION_PROVIDERS: tuple[str, ...] = ("none", "fixture")


@dataclass(frozen=True)
class RuntimeConfig:
    data_dir: str | None
    db_path: str | None
    log_path: str | None
    backtest_log_path: str | None


@dataclass(frozen=True)
class ExecutionConfig:
    enabled: bool
    max_concurrent_executions: int
    queue_maxsize: int
    scheduler_poll_seconds: float
    risk_sweep_interval_seconds: int
    archive_size: int


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int
    backoff_delay_ms: int


@dataclass(frozen=True)
class RiskConfig:
    max_daily_loss: float
    max_position_size: float
    min_cash_reserve: float
    max_drawdown: float
    warning_ratio: float
    cash_warning_ratio: float
    initial_cash_reserve: float
    daily_loss_window_hours: int


@dataclass(frozen=True)
class BacktestConfig:
    clearing_tolerance: float
    unit_cost_constant: float
    progress_step_pct: int
    price_band_low: float
    price_band_high: float
    volatility_reference_price: float
    min_success_rate: float
    min_profit_margin: float
    min_sharpe_ratio: float
    max_drawdown_ratio: float
    annotate_risk: bool


@dataclass(frozen=True)
class StrategyCacheConfig:
    capacity: int
    ttl_seconds: float


@dataclass(frozen=True)
class ProvidersConfig:
    prediction: str
    fixture_price_factor: float
    fixture_capacity_ratio: float
    fixture_confidence: float


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    execution: ExecutionConfig
    retry: RetryConfig
    risk: RiskConfig
    backtest: BacktestConfig
    strategy_cache: StrategyCacheConfig
    providers: ProvidersConfig


def resolve_app_config_path() -> Path:
    env_path = os.getenv("VPPX_APP_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_APP_CONFIG_PATH


def clear_app_config_cache() -> None:
    load_app_config.cache_clear()


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any, default: str) -> str:
    if isinstance(value, str):
        normalized = value.strip()
        if normalized:
            return normalized
    return default


def _as_optional_str(value: Any) -> str | None:
    if isinstance(value, str):
        normalized = value.strip()
        if normalized:
            return normalized
    return None


def _as_int(value: Any, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    if minimum is not None:
        parsed = max(parsed, minimum)
    if maximum is not None:
        parsed = min(parsed, maximum)
    return parsed


def _as_float(
    value: Any,
    default: float,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = default
    if minimum is not None:
        parsed = max(parsed, minimum)
    if maximum is not None:
        parsed = min(parsed, maximum)
    return parsed


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def _normalize_prediction_provider(value: Any, default: str = "none") -> str:
    normalized = str(value or "").strip().lower()
    if normalized in SUPPORTED_PREDICTION_PROVIDERS:
        return normalized
    return default


@lru_cache(maxsize=1)
def load_app_config() -> AppConfig:
    path = resolve_app_config_path()
    raw: dict[str, Any] = {}
    if path.exists():
        try:
            raw = _as_dict(tomllib.loads(path.read_text(encoding="utf-8")))
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"invalid app config TOML: {path}: {exc}") from exc

    runtime_raw = _as_dict(raw.get("runtime"))
    execution_raw = _as_dict(raw.get("execution"))
    retry_raw = _as_dict(raw.get("retry"))
    risk_raw = _as_dict(raw.get("risk"))
    backtest_raw = _as_dict(raw.get("backtest"))
    cache_raw = _as_dict(raw.get("strategy_cache"))
    providers_raw = _as_dict(raw.get("providers"))

    runtime = RuntimeConfig(
        data_dir=_as_optional_str(runtime_raw.get("data_dir")),
        db_path=_as_optional_str(runtime_raw.get("db_path")),
        log_path=_as_optional_str(runtime_raw.get("log_path")),
        backtest_log_path=_as_optional_str(runtime_raw.get("backtest_log_path")),
    )

    execution = ExecutionConfig(
        enabled=_as_bool(execution_raw.get("enabled"), False),
        max_concurrent_executions=_as_int(
            execution_raw.get("max_concurrent_executions"), 10, minimum=1, maximum=64
        ),
        queue_maxsize=_as_int(execution_raw.get("queue_maxsize"), 4096, minimum=16, maximum=100000),
        scheduler_poll_seconds=_as_float(
            execution_raw.get("scheduler_poll_seconds"), 1.0, minimum=0.01, maximum=60.0
        ),
        risk_sweep_interval_seconds=_as_int(
            execution_raw.get("risk_sweep_interval_seconds"), 5, minimum=1, maximum=3600
        ),
        archive_size=_as_int(execution_raw.get("archive_size"), 1000, minimum=10, maximum=100000),
    )

    retry = RetryConfig(
        max_attempts=_as_int(retry_raw.get("max_attempts"), 3, minimum=1, maximum=20),
        backoff_delay_ms=_as_int(retry_raw.get("backoff_delay_ms"), 5000, minimum=0, maximum=600000),
    )

    risk = RiskConfig(
        max_daily_loss=_as_float(risk_raw.get("max_daily_loss"), 100000.0, minimum=0.0),
        max_position_size=_as_float(risk_raw.get("max_position_size"), 1000.0, minimum=0.0),
        min_cash_reserve=_as_float(risk_raw.get("min_cash_reserve"), 10000.0, minimum=0.0),
        max_drawdown=_as_float(risk_raw.get("max_drawdown"), 0.1, minimum=0.0, maximum=1.0),
        warning_ratio=_as_float(risk_raw.get("warning_ratio"), 0.8, minimum=0.0, maximum=1.0),
        cash_warning_ratio=_as_float(risk_raw.get("cash_warning_ratio"), 1.2, minimum=1.0, maximum=10.0),
        initial_cash_reserve=_as_float(risk_raw.get("initial_cash_reserve"), 50000.0, minimum=0.0),
        daily_loss_window_hours=_as_int(
            risk_raw.get("daily_loss_window_hours"), 24, minimum=1, maximum=24 * 7
        ),
    )

    backtest = BacktestConfig(
        clearing_tolerance=_as_float(
            backtest_raw.get("clearing_tolerance"), 0.10, minimum=0.0, maximum=1.0
        ),
        unit_cost_constant=_as_float(backtest_raw.get("unit_cost_constant"), 30.0, minimum=0.0),
        progress_step_pct=_as_int(backtest_raw.get("progress_step_pct"), 5, minimum=1, maximum=50),
        price_band_low=_as_float(backtest_raw.get("price_band_low"), 40.0, minimum=0.0),
        price_band_high=_as_float(backtest_raw.get("price_band_high"), 80.0, minimum=0.0),
        volatility_reference_price=_as_float(
            backtest_raw.get("volatility_reference_price"), 60.0, minimum=0.01
        ),
        min_success_rate=_as_float(backtest_raw.get("min_success_rate"), 0.6, minimum=0.0, maximum=1.0),
        min_profit_margin=_as_float(backtest_raw.get("min_profit_margin"), 0.1, minimum=-1.0, maximum=1.0),
        min_sharpe_ratio=_as_float(backtest_raw.get("min_sharpe_ratio"), 1.0),
        max_drawdown_ratio=_as_float(
            backtest_raw.get("max_drawdown_ratio"), 0.2, minimum=0.0, maximum=1.0
        ),
        annotate_risk=_as_bool(backtest_raw.get("annotate_risk"), True),
    )
    if backtest.price_band_high < backtest.price_band_low:
        raise RuntimeError(
            f"invalid app config: backtest.price_band_high < price_band_low in {path}"
        )

    strategy_cache = StrategyCacheConfig(
        capacity=_as_int(cache_raw.get("capacity"), 256, minimum=1, maximum=100000),
        ttl_seconds=_as_float(cache_raw.get("ttl_seconds"), 60.0, minimum=0.0, maximum=86400.0),
    )

    providers = ProvidersConfig(
        prediction=_normalize_prediction_provider(providers_raw.get("prediction"), "none"),
        fixture_price_factor=_as_float(
            providers_raw.get("fixture_price_factor"), 0.98, minimum=0.0, maximum=10.0
        ),
        fixture_capacity_ratio=_as_float(
            providers_raw.get("fixture_capacity_ratio"), 0.8, minimum=0.0, maximum=1.0
        ),
        fixture_confidence=_as_float(
            providers_raw.get("fixture_confidence"), 0.85, minimum=0.0, maximum=1.0
        ),
    )

    return AppConfig(
        runtime=runtime,
        execution=execution,
        retry=retry,
        risk=risk,
        backtest=backtest,
        strategy_cache=strategy_cache,
        providers=providers,
    )
