from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vppx.db import get_connection, init_db
from vppx.feed import generate_synthetic_snapshots, write_jsonl_snapshots
from vppx.models import StrategyCreateIn
from vppx.runtime_paths import resolve_data_dir


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def dumps_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


SAMPLE_STRATEGIES: list[dict] = [
    {
        "id": "SMP-PEAK",
        "name": "Evening peak discharge",
        "description": "Bid 80% of free capacity slightly under market when evening prices run hot.",
        "type": "rule_based",
        "status": "active",
        "rules": [
            {
                "id": "peak-hours",
                "name": "Evening peak",
                "conditions": [
                    {"field": "timestamp.hour", "operator": "between", "value": [17, 21]},
                    {"field": "market.price", "operator": "greater_than", "value": 55},
                ],
                "actions": [
                    {"type": "bid_price", "parameters": {"adjustment": -1.0, "multiplier": 1.0}, "priority": 10},
                    {"type": "bid_quantity", "parameters": {"ratio": 0.8}, "priority": 5},
                    {"type": "log", "parameters": {"message": "peak bid placed"}},
                ],
                "rate_limit": {"max_fires": 4, "per_seconds": 3600},
            }
        ],
        "risk": {"max_position_size": 800},
    },
    {
        "id": "SMP-VALLEY",
        "name": "Off-peak charge guard",
        "description": "Stay out of the market when prices are low; alert on deep dips.",
        "type": "rule_based",
        "status": "testing",
        "rules": [
            {
                "id": "low-price-skip",
                "conditions": [{"field": "market.price", "operator": "less_than", "value": 40}],
                "actions": [
                    {"type": "market_participation", "parameters": {"min_price": 40}},
                    {"type": "alert", "parameters": {"message": "price below 40, skipping"}},
                ],
            },
            {
                "id": "normal-bid",
                "conditions": [{"field": "market.price", "operator": "greater_equal", "value": 40}],
                "actions": [
                    {"type": "bid_price", "parameters": {"multiplier": 1.02}},
                    {"type": "bid_quantity", "parameters": {"ratio": 0.5, "max_quantity": 200}},
                ],
            },
        ],
    },
    {
        "id": "SMP-HYBRID",
        "name": "Forecast-assisted bidding",
        "description": "Rule bids refined by the prediction provider when it is configured.",
        "type": "hybrid",
        "status": "draft",
        "rules": [
            {
                "id": "open-market",
                "conditions": [{"field": "market.status", "operator": "equals", "value": "open"}],
                "actions": [{"type": "bid_quantity", "parameters": {"ratio": 0.6}}],
            }
        ],
        "prediction_config": {"min_confidence": 0.7},
    },
]


def seed(
    db_path: str | None = None,
    *,
    clean_all: bool = True,
    history_path: str | None = None,
    periods: int = 24 * 14,
    seed_value: int = 7,
) -> None:
    path = init_db(db_path=db_path)
    now = datetime.now(timezone.utc)

    with get_connection(path) as conn:
        cur = conn.cursor()

        if clean_all:
            # Reset all runtime rows first, then insert a clean sample dataset.
            cur.execute("DELETE FROM backtest_trades")
            cur.execute("DELETE FROM backtest_runs")
            cur.execute("DELETE FROM execution_log")
            cur.execute("DELETE FROM risk_events")
            cur.execute("DELETE FROM strategy_events")
            cur.execute("DELETE FROM strategies")
        else:
            # Compatibility mode: only refresh SMP-* sample rows.
            cur.execute("DELETE FROM backtest_runs WHERE strategy_id LIKE 'SMP-%'")
            cur.execute("DELETE FROM execution_log WHERE strategy_id LIKE 'SMP-%'")
            cur.execute("DELETE FROM strategy_events WHERE strategy_id LIKE 'SMP-%'")
            cur.execute("DELETE FROM strategies WHERE id LIKE 'SMP-%'")

        for index, raw in enumerate(SAMPLE_STRATEGIES):
            definition = StrategyCreateIn.model_validate({k: v for k, v in raw.items() if k != "status"})
            created_at = to_iso(now - timedelta(hours=6 - index))
            cur.execute(
                """
                INSERT INTO strategies (
                    id, name, description, strategy_type, status, rules_json, risk_json,
                    prediction_config_json, version, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    definition.id,
                    definition.name,
                    definition.description,
                    definition.type,
                    raw["status"],
                    dumps_json([rule.model_dump(mode="json") for rule in definition.rules]),
                    dumps_json(definition.risk.model_dump(mode="json")),
                    dumps_json(definition.prediction_config),
                    created_at,
                    created_at,
                ),
            )
            cur.execute(
                """
                INSERT INTO strategy_events (event_id, strategy_id, timestamp, event_type, detail, payload_json)
                VALUES (?, ?, ?, 'STRATEGY_CREATED', ?, '{}')
                """,
                (f"seed-{definition.id}", definition.id, created_at, "seeded sample strategy"),
            )

        conn.commit()

    history = Path(history_path) if history_path else resolve_data_dir() / "history" / "sample_history.jsonl"
    start = (now - timedelta(days=max(1, periods // 24))).replace(minute=0, second=0, microsecond=0)
    snapshots = generate_synthetic_snapshots(start=start, periods=periods, seed=seed_value)
    write_jsonl_snapshots(history, snapshots)

    print(f"[OK] Seeded sample data into: {path}")
    print(f"[OK] Sample strategies: {', '.join(item['id'] for item in SAMPLE_STRATEGIES)}")
    print(f"[OK] Wrote {len(snapshots)} synthetic snapshots to: {history}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed sample data for VPPX")
    parser.add_argument(
        "--db-path",
        default=None,
        help="SQLite file path (defaults to VPPX_DB_PATH or data/vppx.sqlite3)",
    )
    parser.add_argument(
        "--keep-non-sample",
        action="store_true",
        help="Only refresh SMP-* rows and keep non-sample runtime data",
    )
    parser.add_argument("--history-path", default=None, help="JSONL output path for synthetic history")
    parser.add_argument("--periods", type=int, default=24 * 14, help="Number of hourly snapshots to write")
    parser.add_argument("--seed", type=int, default=7, help="Random seed for the synthetic series")
    args = parser.parse_args()
    seed(
        db_path=args.db_path,
        clean_all=not args.keep_non_sample,
        history_path=args.history_path,
        periods=args.periods,
        seed_value=args.seed,
    )


if __name__ == "__main__":
    main()
