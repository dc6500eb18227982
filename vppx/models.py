from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

StrategyType = Literal["rule_based", "ai_driven", "hybrid"]
StrategyStatus = Literal["draft", "testing", "active", "suspended"]
TaskStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
BacktestStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
BacktestDataSource = Literal["inline", "jsonl", "synthetic"]
ConditionOperator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "greater_equal",
    "less_equal",
    "contains",
    "in",
    "between",
]
ActionType = Literal["bid_price", "bid_quantity", "market_participation", "alert", "log"]

MAX_RULES_PER_STRATEGY = 50
MAX_ACTIONS_PER_RULE = 10
FIELD_PATH_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
NUMERIC_ACTION_PARAMETERS: dict[str, set[str]] = {
    "bid_price": {"adjustment", "multiplier"},
    "bid_quantity": {"ratio", "max_quantity"},
    "market_participation": {"min_price", "min_capacity"},
    "alert": set(),
    "log": set(),
}
ALLOWED_STATUS_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"testing"},
    "testing": {"draft", "active"},
    "active": {"suspended"},
    "suspended": {"active", "testing"},
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Context snapshots
# ---------------------------------------------------------------------------


class MarketState(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: float
    volume: float
    status: str = "open"
    market_type: str | None = None
    indicators: dict[str, Any] = Field(default_factory=dict)


class ResourceState(BaseModel):
    model_config = ConfigDict(frozen=True)

    available_capacity: float
    total_capacity: float | None = None
    state_of_charge: float | None = None
    resource_id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("available_capacity")
    @classmethod
    def validate_capacity(cls, value: float) -> float:
        if value < 0:
            raise ValueError("available_capacity cannot be negative")
        return value


class ContextSnapshot(BaseModel):
    """Immutable market + resource state at one instant."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    market: MarketState
    resource: ResourceState
    extras: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return _to_utc(value)


# ---------------------------------------------------------------------------
# Strategy definitions
# ---------------------------------------------------------------------------


class Condition(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    operator: ConditionOperator
    value: Any = None

    @field_validator("field")
    @classmethod
    def validate_field_path(cls, value: str) -> str:
        v = value.strip()
        if not FIELD_PATH_PATTERN.match(v):
            raise ValueError(f"invalid field path: {value!r}")
        return v

    @model_validator(mode="after")
    def validate_operand(self) -> "Condition":
        if self.operator == "between":
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ValueError("between requires a two-element [low, high] value")
            low, high = self.value
            if not (_is_number(low) and _is_number(high)):
                raise ValueError("between bounds must be numeric")
            if low > high:
                raise ValueError("between requires low <= high")
        elif self.operator == "in":
            if not isinstance(self.value, (list, tuple)):
                raise ValueError("in requires a list value")
        elif self.operator in {"greater_than", "less_than", "greater_equal", "less_equal"}:
            if not (_is_number(self.value) or isinstance(self.value, str)):
                raise ValueError(f"{self.operator} requires a number or string value")
        return self


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=20)
    backoff_delay_ms: int = Field(default=5000, ge=0, le=600000)


class RateLimit(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_fires: int = Field(ge=1)
    per_seconds: float = Field(gt=0)


class Action(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ActionType
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    timeout_ms: int = Field(default=30000, gt=0, le=600000)
    retry: RetryPolicy | None = None

    @model_validator(mode="after")
    def validate_parameters(self) -> "Action":
        for key in NUMERIC_ACTION_PARAMETERS[self.type]:
            raw = self.parameters.get(key)
            if raw is not None and not _is_number(raw):
                raise ValueError(f"{self.type}.{key} must be numeric")
        if self.type == "bid_quantity":
            ratio = self.parameters.get("ratio")
            if ratio is not None and ratio < 0:
                raise ValueError("bid_quantity.ratio cannot be negative")
        return self


class Rule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str | None = None
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[Action] = Field(min_length=1, max_length=MAX_ACTIONS_PER_RULE)
    enabled: bool = True
    rate_limit: RateLimit | None = None

    @field_validator("id")
    @classmethod
    def normalize_id(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("rule id cannot be empty")
        return v


class RiskParameters(BaseModel):
    """Per-strategy overrides of the global risk limits."""

    model_config = ConfigDict(frozen=True)

    max_daily_loss: float | None = Field(default=None, ge=0)
    max_position_size: float | None = Field(default=None, ge=0)
    min_cash_reserve: float | None = Field(default=None, ge=0)
    max_drawdown: float | None = Field(default=None, ge=0, le=1)


class StrategyDefinition(BaseModel):
    name: str
    description: str = ""
    type: StrategyType = "rule_based"
    rules: list[Rule] = Field(default_factory=list, max_length=MAX_RULES_PER_STRATEGY)
    risk: RiskParameters = Field(default_factory=RiskParameters)
    prediction_config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("strategy name cannot be empty")
        return v

    @model_validator(mode="after")
    def validate_rules(self) -> "StrategyDefinition":
        seen: set[str] = set()
        for rule in self.rules:
            if rule.id in seen:
                raise ValueError(f"duplicate rule id: {rule.id}")
            seen.add(rule.id)
        if self.type in {"rule_based", "hybrid"} and not self.rules:
            raise ValueError(f"{self.type} strategy requires at least one rule")
        min_confidence = self.prediction_config.get("min_confidence")
        if min_confidence is not None and not (_is_number(min_confidence) and 0 <= min_confidence <= 1):
            raise ValueError("prediction_config.min_confidence must be within [0, 1]")
        return self


class Strategy(StrategyDefinition):
    model_config = ConfigDict(frozen=True)

    id: str
    status: StrategyStatus = "draft"
    version: int = 1
    created_at: datetime
    updated_at: datetime

    def declared_retry_policies(self) -> list[RetryPolicy]:
        return [
            action.retry
            for rule in self.rules
            for action in rule.actions
            if action.retry is not None
        ]


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class StrategyCreateIn(StrategyDefinition):
    id: str | None = None

    @field_validator("id")
    @classmethod
    def normalize_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        v = value.strip().upper()
        if not v:
            raise ValueError("strategy id cannot be empty")
        return v


class StrategyDefinitionPutIn(StrategyDefinition):
    expected_version: int | None = None


class StrategySummaryOut(BaseModel):
    id: str
    name: str
    type: StrategyType
    status: StrategyStatus
    version: int
    rule_count: int
    updated_at: datetime


class ControlResponse(BaseModel):
    strategy_id: str
    status: StrategyStatus
    message: str
    version: int
    updated_at: datetime


class EventLogItem(BaseModel):
    event_id: str
    timestamp: datetime
    event_type: str
    detail: str
    strategy_id: str | None = None
    task_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class ExecutionSubmitIn(BaseModel):
    strategy_id: str
    snapshot: ContextSnapshot
    priority: int = Field(default=0, ge=-1000, le=1000)
    scheduled_at: datetime | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=20)
    backoff_delay_ms: int | None = Field(default=None, ge=0, le=600000)


class ExecutionTaskOut(BaseModel):
    task_id: str
    strategy_id: str
    strategy_version: int | None = None
    status: TaskStatus
    priority: int
    attempts: int
    max_attempts: int
    backoff_delay_ms: int
    reason_code: str | None = None
    error: str | None = None
    error_chain: list[dict[str, Any]] = Field(default_factory=list)
    results: list[dict[str, Any]] = Field(default_factory=list)
    scheduled_at: datetime | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None


class RiskLedgerAdjustIn(BaseModel):
    realized_pnl: float | None = None
    position_delta: float | None = None
    cash_delta: float | None = None
    timestamp: datetime | None = None


class SyntheticSeriesIn(BaseModel):
    start: datetime
    periods: int = Field(default=24 * 7, ge=1, le=24 * 366)
    interval_minutes: int = Field(default=60, ge=1, le=24 * 60)
    seed: int = 7
    base_price: float = Field(default=50.0, gt=0)
    price_amplitude: float = Field(default=20.0, ge=0)
    price_noise: float = Field(default=10.0, ge=0)
    base_volume: float = Field(default=1000.0, gt=0)
    volume_noise: float = Field(default=500.0, ge=0)
    base_capacity: float = Field(default=500.0, ge=0)
    capacity_noise: float = Field(default=200.0, ge=0)


class BacktestRunIn(BaseModel):
    strategy_id: str
    data_source: BacktestDataSource = "inline"
    snapshots: list[dict[str, Any]] | None = None
    dataset_path: str | None = None
    synthetic: SyntheticSeriesIn | None = None
    clearing_tolerance: float | None = Field(default=None, ge=0, le=1)
    unit_cost_constant: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_source(self) -> "BacktestRunIn":
        if self.data_source == "inline" and not self.snapshots:
            raise ValueError("data_source=inline requires snapshots")
        if self.data_source == "jsonl" and not (self.dataset_path or "").strip():
            raise ValueError("data_source=jsonl requires dataset_path")
        if self.data_source == "synthetic" and self.synthetic is None:
            raise ValueError("data_source=synthetic requires synthetic parameters")
        return self


class BacktestRunOut(BaseModel):
    id: str
    strategy_id: str
    strategy_version: int | None = None
    status: BacktestStatus
    progress: int
    data_source: BacktestDataSource
    config: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
