from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Module-level singletons (store, worker engine, backtest service) open the
# database on import, so runtime paths must point at a scratch dir first.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="vppx-tests-"))
os.environ["VPPX_DATA_DIR"] = str(_TEST_ROOT)
os.environ["VPPX_DB_PATH"] = str(_TEST_ROOT / "vppx-test.sqlite3")
os.environ["VPPX_APP_CONFIG"] = str(_TEST_ROOT / "app.toml")

from vppx.config import clear_app_config_cache  # noqa: E402

clear_app_config_cache()
