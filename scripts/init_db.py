from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vppx.db import get_connection, init_db

EXPECTED_TABLES = (
    "strategies",
    "strategy_events",
    "execution_log",
    "risk_events",
    "backtest_runs",
    "backtest_trades",
)


def main() -> int:
    parser = argparse.ArgumentParser(description="Create or upgrade the VPPX strategy/backtest database")
    parser.add_argument("--db-path", default=None, help="override VPPX_DB_PATH / [runtime].db_path")
    args = parser.parse_args()

    db_path = init_db(db_path=args.db_path)
    with get_connection(db_path) as conn:
        present = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        }
    missing = [name for name in EXPECTED_TABLES if name not in present]
    if missing:
        print(f"[ERR] schema incomplete at {db_path}: missing {', '.join(missing)}")
        return 1
    print(f"[OK] vppx schema ready at {db_path} ({len(EXPECTED_TABLES)} tables)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
