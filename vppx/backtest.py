from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from threading import Event, Lock, Thread
from typing import Any, Protocol, Sequence
from uuid import uuid4

from .analytics import build_report
from .config import BacktestConfig, RiskConfig, load_app_config
from .db import get_connection, init_db, resolve_db_path
from .engine import RuleEngine, build_rule_engine_from_config
from .errors import (
    BacktestCancelled,
    BacktestRunNotFoundError,
    SimulationDataError,
    TaskStateError,
)
from .events import EVENT_BACKTEST_COMPLETED, EVENT_BACKTEST_PROGRESS, EventChannel, event_channel
from .feed import generate_synthetic_snapshots, load_jsonl_records
from .logging_config import configure_backtest_logging
from .models import BacktestRunIn, BacktestRunOut, BacktestStatus, ControlResponse, Strategy, StrategyStatus
from .simulator import BacktestSimulator, SimulationResult
from .store import dumps_json, parse_iso, to_iso, utcnow


_LOGGER = logging.getLogger("vppx.backtest")
TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})


class StrategyLifecycle(Protocol):
    def get_fresh(self, strategy_id: str) -> Strategy:
        ...

    def transition(self, strategy_id: str, target: StrategyStatus, *, detail: str | None = None) -> ControlResponse:
        ...


def _generate_run_id() -> str:
    return f"BT-{utcnow().strftime('%Y%m%d')}-{uuid4().hex[:8].upper()}"


class BacktestService:
    """Backtest run bookkeeping around ``BacktestSimulator``.

    Runs execute on their own thread by default. Progress, trades and the final
    report are written to ``backtest_runs`` / ``backtest_trades``.
    """

    def __init__(
        self,
        *,
        strategies: StrategyLifecycle,
        rule_engine: RuleEngine | None = None,
        config: BacktestConfig | None = None,
        risk_config: RiskConfig | None = None,
        channel: EventChannel | None = None,
        db_path: str | Path | None = None,
    ) -> None:
        app_cfg = load_app_config() if config is None or risk_config is None else None
        self._strategies = strategies
        self._rule_engine = rule_engine or RuleEngine()
        self._config = config or app_cfg.backtest
        self._risk_config = risk_config or app_cfg.risk
        self._channel = channel if channel is not None else event_channel
        self._db_path = resolve_db_path(db_path) if db_path is not None else None
        self._lock = Lock()
        self._cancel_events: dict[str, Event] = {}
        self._threads: dict[str, Thread] = {}
        init_db(self._db_path)

    def _conn(self) -> sqlite3.Connection:
        return get_connection(self._db_path)

    # -- data sources -------------------------------------------------------------

    def _load_records(self, payload: BacktestRunIn) -> list[Any]:
        if payload.data_source == "inline":
            return list(payload.snapshots or [])
        if payload.data_source == "jsonl":
            try:
                return load_jsonl_records(str(payload.dataset_path).strip())
            except (FileNotFoundError, OSError) as exc:
                raise SimulationDataError(f"cannot read dataset: {exc}") from exc
        assert payload.synthetic is not None
        return list(generate_synthetic_snapshots(**payload.synthetic.model_dump()))

    def _run_config(self, payload: BacktestRunIn, tick_count: int) -> dict[str, Any]:
        tolerance = (
            self._config.clearing_tolerance
            if payload.clearing_tolerance is None
            else float(payload.clearing_tolerance)
        )
        unit_cost = (
            self._config.unit_cost_constant
            if payload.unit_cost_constant is None
            else float(payload.unit_cost_constant)
        )
        config: dict[str, Any] = {
            "clearing_tolerance": tolerance,
            "unit_cost_constant": unit_cost,
            "tick_count": tick_count,
        }
        if payload.data_source == "jsonl":
            config["dataset_path"] = payload.dataset_path
        if payload.synthetic is not None and payload.data_source == "synthetic":
            config["synthetic"] = payload.synthetic.model_dump(mode="json")
        return config

    # -- run lifecycle ------------------------------------------------------------

    def create_run(self, payload: BacktestRunIn, *, background: bool = True) -> BacktestRunOut:
        """Record a run and start it.

        A draft strategy is moved to testing first. Data source errors are
        raised here, before any run row exists.
        """
        strategy = self._strategies.get_fresh(payload.strategy_id)
        records = self._load_records(payload)
        if strategy.status == "draft":
            self._strategies.transition(strategy.id, "testing", detail="backtest started")
            strategy = self._strategies.get_fresh(strategy.id)

        run_id = _generate_run_id()
        config = self._run_config(payload, len(records))
        now = utcnow()
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO backtest_runs (
                    id, strategy_id, strategy_version, status, progress, data_source,
                    config_json, created_at, updated_at
                ) VALUES (?, ?, ?, 'pending', 0, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    strategy.id,
                    strategy.version,
                    payload.data_source,
                    dumps_json(config),
                    to_iso(now),
                    to_iso(now),
                ),
            )
            conn.commit()
        cancel_event = Event()
        with self._lock:
            self._cancel_events[run_id] = cancel_event
        _LOGGER.info(
            "backtest created run_id=%s strategy_id=%s source=%s ticks=%s",
            run_id,
            strategy.id,
            payload.data_source,
            len(records),
        )

        if background:
            thread = Thread(
                target=self._execute,
                args=(run_id, strategy, records, config),
                name=f"vppx-backtest-{run_id}",
                daemon=True,
            )
            with self._lock:
                self._threads[run_id] = thread
            thread.start()
        else:
            self._execute(run_id, strategy, records, config)
        return self.get_run(run_id)

    def run_sync(self, payload: BacktestRunIn) -> BacktestRunOut:
        return self.create_run(payload, background=False)

    def _execute(
        self,
        run_id: str,
        strategy: Strategy,
        records: Sequence[Any],
        config: dict[str, Any],
    ) -> None:
        configure_backtest_logging()
        cancel_event = self._cancel_events.get(run_id) or Event()
        started = utcnow()
        self._update_run(run_id, status="running", started_at=to_iso(started))
        simulator = BacktestSimulator(
            rule_engine=self._rule_engine,
            config=self._config,
            risk_config=self._risk_config,
            clearing_tolerance=config["clearing_tolerance"],
            unit_cost_constant=config["unit_cost_constant"],
        )

        def on_progress(pct: int, processed: int, total: int) -> None:
            self._update_run(run_id, progress=min(100, max(0, pct)))
            self._channel.publish(
                EVENT_BACKTEST_PROGRESS,
                f"backtest {run_id} {pct}%",
                strategy_id=strategy.id,
                payload={"run_id": run_id, "progress": pct, "processed": processed, "total": total},
            )

        try:
            result = simulator.run(
                strategy,
                records,
                progress=on_progress,
                should_cancel=cancel_event.is_set,
            )
            report = build_report(
                strategy,
                result,
                config=self._config,
                clearing_tolerance=simulator.clearing_tolerance,
                unit_cost_constant=simulator.unit_cost_constant,
            )
            self._save_results(run_id, result, report)
        except BacktestCancelled as exc:
            _LOGGER.info("backtest cancelled run_id=%s detail=%s", run_id, exc)
            self._finish(run_id, strategy.id, "cancelled", error=str(exc))
        except Exception as exc:
            _LOGGER.exception("backtest failed run_id=%s strategy_id=%s", run_id, strategy.id)
            self._finish(run_id, strategy.id, "failed", error=str(exc) or exc.__class__.__name__)
        else:
            self._finish(
                run_id,
                strategy.id,
                "completed",
                summary={
                    "net_profit": report["performance_metrics"]["net_profit"],
                    "success_rate": report["performance_metrics"]["success_rate"],
                    "cleared_trades": report["performance_metrics"]["cleared_trades"],
                    "skipped_ticks": result.skipped_ticks,
                },
            )
        finally:
            with self._lock:
                self._cancel_events.pop(run_id, None)
                self._threads.pop(run_id, None)

    def _save_results(self, run_id: str, result: SimulationResult, report: dict[str, Any]) -> None:
        rows = [
            (
                run_id,
                trade.trade_id,
                to_iso(trade.timestamp),
                1 if trade.cleared else 0,
                trade.bid_price,
                trade.bid_quantity,
                trade.cleared_price,
                trade.cleared_quantity,
                trade.revenue,
                trade.cost,
                trade.profit,
                trade.reason,
            )
            for trade in result.trades
        ]
        with self._conn() as conn:
            conn.executemany(
                """
                INSERT INTO backtest_trades (
                    run_id, trade_id, timestamp, cleared, bid_price, bid_quantity,
                    cleared_price, cleared_quantity, revenue, cost, profit, reason
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            conn.execute(
                "UPDATE backtest_runs SET report_json = ? WHERE id = ?",
                (dumps_json(report), run_id),
            )
            conn.commit()

    def _finish(
        self,
        run_id: str,
        strategy_id: str,
        status: BacktestStatus,
        *,
        error: str | None = None,
        summary: dict[str, Any] | None = None,
    ) -> None:
        fields: dict[str, Any] = {"status": status, "error": error, "completed_at": to_iso(utcnow())}
        if status == "completed":
            fields["progress"] = 100
        self._update_run(run_id, **fields)
        payload: dict[str, Any] = {"run_id": run_id, "status": status}
        if summary:
            payload.update(summary)
        if error:
            payload["error"] = error
        self._channel.publish(
            EVENT_BACKTEST_COMPLETED,
            f"backtest {run_id} {status}",
            strategy_id=strategy_id,
            payload=payload,
        )
        _LOGGER.info("backtest finished run_id=%s status=%s", run_id, status)

    def _update_run(self, run_id: str, **fields: Any) -> None:
        fields["updated_at"] = to_iso(utcnow())
        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self._conn() as conn:
            conn.execute(
                f"UPDATE backtest_runs SET {assignments} WHERE id = ?",
                (*fields.values(), run_id),
            )
            conn.commit()

    def cancel(self, run_id: str) -> BacktestRunOut:
        run = self.get_run(run_id)
        if run.status in TERMINAL_RUN_STATUSES:
            raise TaskStateError(f"backtest {run_id} is {run.status}; only pending or running runs can be cancelled")
        with self._lock:
            cancel_event = self._cancel_events.get(run_id)
        if cancel_event is None:
            # Orphaned by a restart: nothing is replaying it any more.
            self._update_run(run_id, status="cancelled", error="cancelled", completed_at=to_iso(utcnow()))
        else:
            cancel_event.set()
        _LOGGER.info("backtest cancel requested run_id=%s", run_id)
        return self.get_run(run_id)

    def wait(self, run_id: str, timeout: float | None = None) -> BacktestRunOut:
        with self._lock:
            thread = self._threads.get(run_id)
        if thread is not None:
            thread.join(timeout=timeout)
        return self.get_run(run_id)

    # -- queries ------------------------------------------------------------------

    def _row_to_run(self, row: sqlite3.Row) -> BacktestRunOut:
        return BacktestRunOut(
            id=row["id"],
            strategy_id=row["strategy_id"],
            strategy_version=row["strategy_version"],
            status=row["status"],
            progress=int(row["progress"]),
            data_source=row["data_source"],
            config=json.loads(row["config_json"] or "{}"),
            error=row["error"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
            started_at=parse_iso(row["started_at"]),
            completed_at=parse_iso(row["completed_at"]),
        )

    def _get_row(self, conn: sqlite3.Connection, run_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM backtest_runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            raise BacktestRunNotFoundError(f"backtest {run_id} not found")
        return row

    def get_run(self, run_id: str) -> BacktestRunOut:
        with self._conn() as conn:
            row = self._get_row(conn, run_id)
        return self._row_to_run(row)

    def list_runs(
        self,
        *,
        strategy_id: str | None = None,
        status: BacktestStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[BacktestRunOut]:
        clauses: list[str] = []
        params: list[Any] = []
        if strategy_id is not None:
            clauses.append("strategy_id = ?")
            params.append(strategy_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([max(1, int(limit)), max(0, int(offset))])
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM backtest_runs {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def get_report(self, run_id: str) -> dict[str, Any]:
        with self._conn() as conn:
            row = self._get_row(conn, run_id)
        if row["status"] != "completed" or not row["report_json"]:
            raise TaskStateError(f"backtest {run_id} is {row['status']}; report not available")
        return json.loads(row["report_json"])

    def get_trades(
        self,
        run_id: str,
        *,
        cleared: bool | None = None,
        limit: int = 500,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM backtest_trades WHERE run_id = ?"
        params: list[Any] = [run_id]
        if cleared is not None:
            sql += " AND cleared = ?"
            params.append(1 if cleared else 0)
        sql += " ORDER BY trade_id ASC LIMIT ? OFFSET ?"
        params.extend([max(1, int(limit)), max(0, int(offset))])
        with self._conn() as conn:
            self._get_row(conn, run_id)
            rows = conn.execute(sql, params).fetchall()
        return [
            {
                "trade_id": row["trade_id"],
                "timestamp": row["timestamp"],
                "cleared": bool(row["cleared"]),
                "bid_price": row["bid_price"],
                "bid_quantity": row["bid_quantity"],
                "cleared_price": row["cleared_price"],
                "cleared_quantity": row["cleared_quantity"],
                "revenue": row["revenue"],
                "cost": row["cost"],
                "profit": row["profit"],
                "reason": row["reason"],
            }
            for row in rows
        ]


def build_backtest_service_from_config() -> BacktestService:
    from .store import strategy_store

    return BacktestService(strategies=strategy_store, rule_engine=build_rule_engine_from_config())


backtest_service = build_backtest_service_from_config()
