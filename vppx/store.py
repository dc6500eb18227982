from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Iterable
from uuid import uuid4

from pydantic import ValidationError

from .cache import TTLCache
from .config import load_app_config
from .db import get_connection, init_db, resolve_db_path
from .errors import (
    StrategyConflictError,
    StrategyNotFoundError,
    StrategyValidationError,
    TaskNotFoundError,
)
from .events import OutboundEvent
from .models import (
    ALLOWED_STATUS_TRANSITIONS,
    ControlResponse,
    EventLogItem,
    Strategy,
    StrategyCreateIn,
    StrategyDefinition,
    StrategyStatus,
)
from .risk import RiskEvent

_LOGGER = logging.getLogger("vppx.store")

TRANSITION_EVENT_TYPES: dict[str, str] = {
    "draft": "STRATEGY_DRAFTED",
    "testing": "STRATEGY_TESTING",
    "active": "STRATEGY_ACTIVATED",
    "suspended": "STRATEGY_SUSPENDED",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


def dumps_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def _validation_message(exc: ValidationError) -> str:
    parts: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or str(exc)


def parse_strategy_definition(raw: dict[str, Any]) -> StrategyCreateIn:
    """Validate a plain dict into a create payload, raising the domain error."""
    try:
        return StrategyCreateIn.model_validate(raw)
    except ValidationError as exc:
        raise StrategyValidationError(_validation_message(exc)) from exc


def _generate_strategy_id(conn: sqlite3.Connection) -> str:
    for _ in range(64):
        candidate = f"VPP-{uuid4().hex[:6].upper()}"
        hit = conn.execute("SELECT 1 FROM strategies WHERE id = ?", (candidate,)).fetchone()
        if hit is None:
            return candidate
    raise StrategyConflictError("failed to allocate strategy id")


def _definition_columns(definition: StrategyDefinition) -> tuple[str, str, str, str, str, str]:
    return (
        definition.name,
        definition.description,
        definition.type,
        dumps_json([rule.model_dump(mode="json") for rule in definition.rules]),
        dumps_json(definition.risk.model_dump(mode="json")),
        dumps_json(definition.prediction_config),
    )


class SQLiteStrategyStore:
    """Strategy persistence plus the read-through cache the executors use."""

    def __init__(
        self,
        *,
        db_path: str | Path | None = None,
        cache: TTLCache[str, Strategy] | None = None,
    ) -> None:
        self._db_path = resolve_db_path(db_path) if db_path is not None else None
        self._lock = Lock()
        if cache is None:
            cache_cfg = load_app_config().strategy_cache
            cache = TTLCache(capacity=cache_cfg.capacity, ttl_seconds=cache_cfg.ttl_seconds)
        self._cache = cache
        init_db(self._db_path)

    @property
    def cache(self) -> TTLCache[str, Strategy]:
        return self._cache

    def _conn(self) -> sqlite3.Connection:
        return get_connection(self._db_path)

    def _row_to_strategy(self, row: sqlite3.Row) -> Strategy:
        try:
            return Strategy.model_validate(
                {
                    "id": row["id"],
                    "name": row["name"],
                    "description": row["description"],
                    "type": row["strategy_type"],
                    "status": row["status"],
                    "rules": json.loads(row["rules_json"] or "[]"),
                    "risk": json.loads(row["risk_json"] or "{}"),
                    "prediction_config": json.loads(row["prediction_config_json"] or "{}"),
                    "version": int(row["version"]),
                    "created_at": parse_iso(row["created_at"]),
                    "updated_at": parse_iso(row["updated_at"]),
                }
            )
        except ValidationError as exc:
            raise StrategyValidationError(
                f"stored strategy {row['id']} is invalid: {_validation_message(exc)}"
            ) from exc

    def _get_row(self, conn: sqlite3.Connection, strategy_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM strategies WHERE id = ?", (strategy_id,)).fetchone()
        if row is None:
            raise StrategyNotFoundError(f"strategy {strategy_id} not found")
        return row

    def _insert_event(
        self,
        conn: sqlite3.Connection,
        *,
        event_type: str,
        detail: str,
        timestamp: datetime,
        strategy_id: str | None = None,
        task_id: str | None = None,
        payload: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        conn.execute(
            """
            INSERT OR IGNORE INTO strategy_events (
                event_id, strategy_id, task_id, timestamp, event_type, detail, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event_id or uuid4().hex,
                strategy_id,
                task_id,
                to_iso(timestamp),
                event_type,
                detail,
                dumps_json(payload or {}),
            ),
        )

    # -- Strategy Store operations ------------------------------------------------

    def create(self, payload: StrategyCreateIn) -> Strategy:
        now = utcnow()
        with self._lock, self._conn() as conn:
            strategy_id = payload.id or _generate_strategy_id(conn)
            exists = conn.execute("SELECT 1 FROM strategies WHERE id = ?", (strategy_id,)).fetchone()
            if exists is not None:
                raise StrategyConflictError(f"strategy {strategy_id} already exists")
            name, description, strategy_type, rules_json, risk_json, prediction_json = (
                _definition_columns(payload)
            )
            conn.execute(
                """
                INSERT INTO strategies (
                    id, name, description, strategy_type, status, rules_json, risk_json,
                    prediction_config_json, version, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 'draft', ?, ?, ?, 1, ?, ?)
                """,
                (
                    strategy_id,
                    name,
                    description,
                    strategy_type,
                    rules_json,
                    risk_json,
                    prediction_json,
                    to_iso(now),
                    to_iso(now),
                ),
            )
            self._insert_event(
                conn,
                event_type="STRATEGY_CREATED",
                detail=f"strategy created with {len(payload.rules)} rules",
                timestamp=now,
                strategy_id=strategy_id,
            )
            conn.commit()
            row = self._get_row(conn, strategy_id)
        _LOGGER.info("strategy created strategy_id=%s type=%s", strategy_id, payload.type)
        return self._row_to_strategy(row)

    def get(self, strategy_id: str) -> Strategy:
        cached = self._cache.get(strategy_id)
        if cached is not None:
            return cached
        generation = self._cache.generation(strategy_id)
        with self._conn() as conn:
            row = self._get_row(conn, strategy_id)
        strategy = self._row_to_strategy(row)
        # dropped if a write invalidated the key while we were reading
        self._cache.put(strategy_id, strategy, generation=generation)
        return strategy

    def list(
        self,
        *,
        status: StrategyStatus | None = None,
        limit: int = 200,
        offset: int = 0,
    ) -> list[Strategy]:
        sql = "SELECT * FROM strategies"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY updated_at DESC, id ASC LIMIT ? OFFSET ?"
        params.extend([max(1, int(limit)), max(0, int(offset))])
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_strategy(row) for row in rows]

    def update(self, strategy: Strategy) -> Strategy:
        """Persist ``strategy`` if its version still matches; bumps the version.

        Status is not editable here; lifecycle moves go through ``transition``.
        """
        now = utcnow()
        with self._lock, self._conn() as conn:
            current = self._get_row(conn, strategy.id)
            if int(current["version"]) != strategy.version:
                raise StrategyConflictError(
                    f"strategy {strategy.id} version mismatch: "
                    f"expected {strategy.version}, found {current['version']}"
                )
            if strategy.status != current["status"]:
                raise StrategyConflictError(
                    f"strategy {strategy.id} is {current['status']}; "
                    f"use a lifecycle transition to move it to {strategy.status}"
                )
            name, description, strategy_type, rules_json, risk_json, prediction_json = (
                _definition_columns(strategy)
            )
            conn.execute(
                """
                UPDATE strategies
                SET name = ?, description = ?, strategy_type = ?, status = ?, rules_json = ?,
                    risk_json = ?, prediction_config_json = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (
                    name,
                    description,
                    strategy_type,
                    strategy.status,
                    rules_json,
                    risk_json,
                    prediction_json,
                    to_iso(now),
                    strategy.id,
                    strategy.version,
                ),
            )
            self._insert_event(
                conn,
                event_type="STRATEGY_UPDATED",
                detail=f"strategy updated to version {strategy.version + 1}",
                timestamp=now,
                strategy_id=strategy.id,
            )
            conn.commit()
            row = self._get_row(conn, strategy.id)
        self._cache.invalidate(strategy.id)
        return self._row_to_strategy(row)

    def update_definition(
        self,
        strategy_id: str,
        definition: StrategyDefinition,
        *,
        expected_version: int | None = None,
    ) -> Strategy:
        current = self.get_fresh(strategy_id)
        if current.status == "active":
            raise StrategyConflictError("active strategy cannot be edited; suspend it first")
        if expected_version is not None and expected_version != current.version:
            raise StrategyConflictError(
                f"strategy {strategy_id} version mismatch: "
                f"expected {expected_version}, found {current.version}"
            )
        merged = current.model_copy(
            update={
                "name": definition.name,
                "description": definition.description,
                "type": definition.type,
                "rules": definition.rules,
                "risk": definition.risk,
                "prediction_config": definition.prediction_config,
            }
        )
        return self.update(merged)

    def get_fresh(self, strategy_id: str) -> Strategy:
        self._cache.invalidate(strategy_id)
        return self.get(strategy_id)

    def transition(
        self,
        strategy_id: str,
        target: StrategyStatus,
        *,
        detail: str | None = None,
    ) -> ControlResponse:
        now = utcnow()
        with self._lock, self._conn() as conn:
            row = self._get_row(conn, strategy_id)
            source = str(row["status"])
            if target not in ALLOWED_STATUS_TRANSITIONS.get(source, set()):
                raise StrategyConflictError(f"cannot move strategy from {source} to {target}")
            cursor = conn.execute(
                """
                UPDATE strategies
                SET status = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND status = ? AND version = ?
                """,
                (target, to_iso(now), strategy_id, source, int(row["version"])),
            )
            if cursor.rowcount <= 0:
                raise StrategyConflictError(f"strategy {strategy_id} changed concurrently")
            self._insert_event(
                conn,
                event_type=TRANSITION_EVENT_TYPES[target],
                detail=detail or f"{source} -> {target}",
                timestamp=now,
                strategy_id=strategy_id,
                payload={"from": source, "to": target},
            )
            conn.commit()
            version = int(row["version"]) + 1
        self._cache.invalidate(strategy_id)
        _LOGGER.info("strategy transition strategy_id=%s from=%s to=%s", strategy_id, source, target)
        return ControlResponse(
            strategy_id=strategy_id,
            status=target,
            message=f"{source} -> {target}",
            version=version,
            updated_at=now,
        )

    # -- Event / risk persistence -------------------------------------------------

    def append_event(self, event: OutboundEvent) -> None:
        with self._conn() as conn:
            self._insert_event(
                conn,
                event_type=event.event_type,
                detail=event.detail,
                timestamp=event.timestamp,
                strategy_id=event.strategy_id,
                task_id=event.task_id,
                payload=event.payload,
                event_id=event.event_id,
            )
            conn.commit()

    def list_events(
        self,
        *,
        strategy_id: str | None = None,
        event_type: str | None = None,
        limit: int = 200,
    ) -> list[EventLogItem]:
        clauses: list[str] = []
        params: list[Any] = []
        if strategy_id is not None:
            clauses.append("strategy_id = ?")
            params.append(strategy_id)
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(event_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, int(limit)))
        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT event_id, strategy_id, task_id, timestamp, event_type, detail, payload_json
                FROM strategy_events
                {where}
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [
            EventLogItem(
                event_id=row["event_id"],
                strategy_id=row["strategy_id"],
                task_id=row["task_id"],
                timestamp=parse_iso(row["timestamp"]),
                event_type=row["event_type"],
                detail=row["detail"],
                payload=json.loads(row["payload_json"] or "{}"),
            )
            for row in rows
        ]

    def record_risk_events(self, events: Iterable[RiskEvent]) -> int:
        rows = [
            (
                to_iso(item.detected_at),
                item.risk_type,
                item.risk_level,
                item.description,
                item.current_value,
                item.threshold,
                item.limit_value,
            )
            for item in events
        ]
        if not rows:
            return 0
        with self._conn() as conn:
            conn.executemany(
                """
                INSERT INTO risk_events (
                    detected_at, risk_type, risk_level, description, current_value, threshold, limit_value
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            conn.commit()
        return len(rows)

    def list_risk_events(self, *, limit: int = 100) -> list[dict[str, Any]]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM risk_events ORDER BY detected_at DESC, id DESC LIMIT ?",
                (max(1, int(limit)),),
            ).fetchall()
        return [
            {
                "detected_at": row["detected_at"],
                "risk_type": row["risk_type"],
                "risk_level": row["risk_level"],
                "description": row["description"],
                "current_value": row["current_value"],
                "threshold": row["threshold"],
                "limit_value": row["limit_value"],
            }
            for row in rows
        ]


class SQLiteExecutionLog:
    """Append-only record of terminal execution tasks."""

    def __init__(self, *, db_path: str | Path | None = None) -> None:
        self._db_path = resolve_db_path(db_path) if db_path is not None else None
        init_db(self._db_path)

    def _conn(self) -> sqlite3.Connection:
        return get_connection(self._db_path)

    def append(self, record: dict[str, Any]) -> None:
        with self._conn() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO execution_log (
                        task_id, strategy_id, strategy_version, status, priority, attempts,
                        max_attempts, reason_code, error, error_chain_json, results_json,
                        snapshot_json, scheduled_at, created_at, started_at, finished_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record["task_id"],
                        record["strategy_id"],
                        record.get("strategy_version"),
                        record["status"],
                        int(record["priority"]),
                        int(record["attempts"]),
                        int(record["max_attempts"]),
                        record.get("reason_code"),
                        record.get("error"),
                        dumps_json(record.get("error_chain") or []),
                        dumps_json(record.get("results") or []),
                        dumps_json(record.get("snapshot") or {}),
                        record.get("scheduled_at"),
                        record["created_at"],
                        record.get("started_at"),
                        record["finished_at"],
                    ),
                )
            except sqlite3.IntegrityError:
                _LOGGER.warning("execution log already has task_id=%s", record["task_id"])
                raise
            conn.commit()

    def _row_to_record(self, row: sqlite3.Row) -> dict[str, Any]:
        return {
            "task_id": row["task_id"],
            "strategy_id": row["strategy_id"],
            "strategy_version": row["strategy_version"],
            "status": row["status"],
            "priority": row["priority"],
            "attempts": row["attempts"],
            "max_attempts": row["max_attempts"],
            "reason_code": row["reason_code"],
            "error": row["error"],
            "error_chain": json.loads(row["error_chain_json"] or "[]"),
            "results": json.loads(row["results_json"] or "[]"),
            "snapshot": json.loads(row["snapshot_json"] or "{}"),
            "scheduled_at": row["scheduled_at"],
            "created_at": row["created_at"],
            "started_at": row["started_at"],
            "finished_at": row["finished_at"],
        }

    def get(self, task_id: str) -> dict[str, Any]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM execution_log WHERE task_id = ?", (task_id,)).fetchone()
        if row is None:
            raise TaskNotFoundError(f"task {task_id} not found")
        return self._row_to_record(row)

    def list(
        self,
        *,
        strategy_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if strategy_id is not None:
            clauses.append("strategy_id = ?")
            params.append(strategy_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, int(limit)))
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM execution_log {where} ORDER BY finished_at DESC, task_id ASC LIMIT ?",
                params,
            ).fetchall()
        return [self._row_to_record(row) for row in rows]


def build_strategy_store_from_config() -> SQLiteStrategyStore:
    return SQLiteStrategyStore()


strategy_store = build_strategy_store_from_config()
execution_log = SQLiteExecutionLog()
