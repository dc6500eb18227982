from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Query

from .backtest import backtest_service
from .errors import TaskNotFoundError
from .events import event_channel
from .models import (
    BacktestRunIn,
    BacktestRunOut,
    BacktestStatus,
    ControlResponse,
    EventLogItem,
    ExecutionSubmitIn,
    ExecutionTaskOut,
    RiskLedgerAdjustIn,
    Strategy,
    StrategyCreateIn,
    StrategyDefinitionPutIn,
    StrategyStatus,
    StrategySummaryOut,
    TaskStatus,
)
from .store import execution_log, strategy_store
from .worker import ExecutionTask, worker_engine

router = APIRouter(prefix="/v1", tags=["vppx"])


def _task_out(record: dict[str, Any]) -> ExecutionTaskOut:
    return ExecutionTaskOut.model_validate(record)


def _summary(strategy: Strategy) -> StrategySummaryOut:
    return StrategySummaryOut(
        id=strategy.id,
        name=strategy.name,
        type=strategy.type,
        status=strategy.status,
        version=strategy.version,
        rule_count=len(strategy.rules),
        updated_at=strategy.updated_at,
    )


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


# -- strategies -------------------------------------------------------------------


@router.post("/strategies", response_model=Strategy)
def create_strategy(payload: StrategyCreateIn) -> Strategy:
    return strategy_store.create(payload)


@router.get("/strategies", response_model=list[StrategySummaryOut])
def list_strategies(
    status: StrategyStatus | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> list[StrategySummaryOut]:
    return [_summary(item) for item in strategy_store.list(status=status, limit=limit, offset=offset)]


@router.get("/strategies/{strategy_id}", response_model=Strategy)
def get_strategy(strategy_id: str) -> Strategy:
    return strategy_store.get(strategy_id)


@router.put("/strategies/{strategy_id}/definition", response_model=Strategy)
def put_strategy_definition(strategy_id: str, payload: StrategyDefinitionPutIn) -> Strategy:
    return strategy_store.update_definition(
        strategy_id,
        payload,
        expected_version=payload.expected_version,
    )


@router.post("/strategies/{strategy_id}/test", response_model=ControlResponse)
def test_strategy(strategy_id: str) -> ControlResponse:
    return strategy_store.transition(strategy_id, "testing")


@router.post("/strategies/{strategy_id}/activate", response_model=ControlResponse)
def activate_strategy(strategy_id: str) -> ControlResponse:
    return strategy_store.transition(strategy_id, "active")


@router.post("/strategies/{strategy_id}/suspend", response_model=ControlResponse)
def suspend_strategy(strategy_id: str) -> ControlResponse:
    return strategy_store.transition(strategy_id, "suspended", detail="intake halted; in-flight tasks drain")


@router.post("/strategies/{strategy_id}/draft", response_model=ControlResponse)
def draft_strategy(strategy_id: str) -> ControlResponse:
    return strategy_store.transition(strategy_id, "draft")


@router.get("/strategies/{strategy_id}/events", response_model=list[EventLogItem])
def strategy_events(
    strategy_id: str,
    limit: int = Query(default=200, ge=1, le=1000),
) -> list[EventLogItem]:
    strategy_store.get(strategy_id)
    return strategy_store.list_events(strategy_id=strategy_id, limit=limit)


@router.get("/events", response_model=list[EventLogItem])
def global_events(
    event_type: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
) -> list[EventLogItem]:
    return strategy_store.list_events(event_type=event_type, limit=limit)


@router.post("/events/drain")
def drain_events(limit: int | None = Query(default=None, ge=1, le=10000)) -> dict[str, Any]:
    events = event_channel.drain(limit)
    return {
        "events": [event.to_record() for event in events],
        "dropped": event_channel.dropped,
    }


# -- executions -------------------------------------------------------------------


@router.post("/executions", response_model=ExecutionTaskOut)
def submit_execution(payload: ExecutionSubmitIn) -> ExecutionTaskOut:
    task = worker_engine.submit(
        payload.strategy_id,
        payload.snapshot,
        priority=payload.priority,
        scheduled_at=payload.scheduled_at,
        max_attempts=payload.max_attempts,
        backoff_delay_ms=payload.backoff_delay_ms,
    )
    return _task_out(task.to_record())


@router.get("/executions", response_model=list[ExecutionTaskOut])
def list_executions(
    status: TaskStatus | None = Query(default=None),
    strategy_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[ExecutionTaskOut]:
    tasks: list[ExecutionTask] = worker_engine.list_tasks(status=status, strategy_id=strategy_id)
    return [_task_out(task.to_record()) for task in tasks[:limit]]


@router.get("/executions/{task_id}", response_model=ExecutionTaskOut)
def get_execution(task_id: str) -> ExecutionTaskOut:
    try:
        return _task_out(worker_engine.get_task(task_id).to_record())
    except TaskNotFoundError:
        # evicted from the in-memory archive; fall back to the log
        return _task_out(execution_log.get(task_id))


@router.post("/executions/{task_id}/cancel", response_model=ExecutionTaskOut)
def cancel_execution(task_id: str) -> ExecutionTaskOut:
    return _task_out(worker_engine.cancel(task_id).to_record())


@router.get("/engine/status")
def engine_status() -> dict[str, Any]:
    return worker_engine.runtime_status()


# -- risk -------------------------------------------------------------------------


@router.get("/risk/metrics")
def risk_metrics() -> dict[str, Any]:
    gate = worker_engine.risk_gate
    return {
        "metrics": gate.ledger.snapshot().to_record(),
        "limits": asdict(gate.limits()),
    }


@router.post("/risk/sweep")
def risk_sweep() -> dict[str, Any]:
    events = worker_engine.sweep_risk()
    return {"events": [event.to_record() for event in events]}


@router.post("/risk/ledger")
def adjust_risk_ledger(payload: RiskLedgerAdjustIn) -> dict[str, Any]:
    ledger = worker_engine.risk_gate.ledger
    if payload.realized_pnl is not None:
        ledger.record_pnl(payload.realized_pnl, payload.timestamp)
    if payload.position_delta is not None:
        ledger.adjust_position(payload.position_delta)
    if payload.cash_delta is not None:
        ledger.adjust_cash(payload.cash_delta)
    return {"metrics": ledger.snapshot(payload.timestamp).to_record()}


@router.get("/risk/events")
def risk_events(limit: int = Query(default=100, ge=1, le=1000)) -> list[dict[str, Any]]:
    return strategy_store.list_risk_events(limit=limit)


# -- backtests --------------------------------------------------------------------


@router.post("/backtests", response_model=BacktestRunOut)
def create_backtest(payload: BacktestRunIn) -> BacktestRunOut:
    return backtest_service.create_run(payload)


@router.get("/backtests", response_model=list[BacktestRunOut])
def list_backtests(
    strategy_id: str | None = Query(default=None),
    status: BacktestStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[BacktestRunOut]:
    return backtest_service.list_runs(strategy_id=strategy_id, status=status, limit=limit, offset=offset)


@router.get("/backtests/{run_id}", response_model=BacktestRunOut)
def get_backtest(run_id: str) -> BacktestRunOut:
    return backtest_service.get_run(run_id)


@router.get("/backtests/{run_id}/report")
def get_backtest_report(run_id: str) -> dict[str, Any]:
    return backtest_service.get_report(run_id)


@router.get("/backtests/{run_id}/trades")
def get_backtest_trades(
    run_id: str,
    cleared: bool | None = Query(default=None),
    limit: int = Query(default=500, ge=1, le=10000),
    offset: int = Query(default=0, ge=0),
) -> list[dict[str, Any]]:
    return backtest_service.get_trades(run_id, cleared=cleared, limit=limit, offset=offset)


@router.post("/backtests/{run_id}/cancel", response_model=BacktestRunOut)
def cancel_backtest(run_id: str) -> BacktestRunOut:
    return backtest_service.cancel(run_id)
