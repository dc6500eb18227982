from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vppx.backtest import BacktestService
from vppx.engine import build_rule_engine_from_config
from vppx.errors import VppxError
from vppx.models import BacktestRunIn
from vppx.store import SQLiteStrategyStore


def _parse_start(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def main() -> int:
    parser = argparse.ArgumentParser(description="Replay a stored strategy over historical or synthetic data")
    parser.add_argument("strategy_id", help="Strategy id, e.g. SMP-PEAK")
    parser.add_argument("--db-path", default=None, help="SQLite file path (defaults to VPPX_DB_PATH)")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--dataset", default=None, help="JSONL file with one snapshot per line")
    source.add_argument("--synthetic-start", default=None, help="ISO start time for a synthetic series")
    parser.add_argument("--periods", type=int, default=24 * 7, help="Synthetic series length")
    parser.add_argument("--seed", type=int, default=7, help="Synthetic series seed")
    parser.add_argument("--tolerance", type=float, default=None, help="Clearing price tolerance (default 0.10)")
    parser.add_argument("--unit-cost", type=float, default=None, help="Per-unit cost constant")
    parser.add_argument("--output", default=None, help="Write the full report JSON here")
    args = parser.parse_args()

    store = SQLiteStrategyStore(db_path=args.db_path)
    service = BacktestService(
        strategies=store,
        rule_engine=build_rule_engine_from_config(),
        db_path=args.db_path,
    )
    payload: dict = {
        "strategy_id": args.strategy_id.strip().upper(),
        "clearing_tolerance": args.tolerance,
        "unit_cost_constant": args.unit_cost,
    }
    if args.dataset:
        payload.update(data_source="jsonl", dataset_path=args.dataset)
    else:
        payload.update(
            data_source="synthetic",
            synthetic={"start": _parse_start(args.synthetic_start), "periods": args.periods, "seed": args.seed},
        )

    try:
        run = service.run_sync(BacktestRunIn.model_validate(payload))
    except VppxError as exc:
        print(f"[ERR] {exc}")
        return 1

    print(f"[OK] Backtest {run.id} finished with status={run.status}")
    if run.status != "completed":
        print(f"[ERR] {run.error}")
        return 1

    report = service.get_report(run.id)
    perf = report["performance_metrics"]
    risk = report["risk_metrics"]
    print(f"  bids={perf['total_bids']} cleared={perf['cleared_trades']} success_rate={perf['success_rate']:.2%}")
    print(f"  revenue={perf['total_revenue']:.2f} cost={perf['total_cost']:.2f} net={perf['net_profit']:.2f}")
    print(f"  sharpe={risk['sharpe_ratio']:.3f} max_drawdown={risk['max_drawdown']:.2f}")
    print(f"  skipped_ticks={report['data_quality']['skipped_ticks']}")
    for line in report["recommendations"]:
        print(f"  - {line}")

    if args.output:
        target = Path(args.output)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(report, ensure_ascii=False, indent=2), encoding="utf-8")
        print(f"[OK] Report written to: {target}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
