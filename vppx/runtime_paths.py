from __future__ import annotations

import os
from pathlib import Path

from .config import load_app_config

PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_DATA_DIR = PROJECT_ROOT / "data"


def _resolve_optional_path(value: str | None) -> Path | None:
    if not value:
        return None
    path = Path(value)
    if path.is_absolute():
        return path
    return PROJECT_ROOT / path


def resolve_data_dir() -> Path:
    env_path = os.getenv("VPPX_DATA_DIR")
    if env_path:
        return Path(env_path)
    configured = _resolve_optional_path(load_app_config().runtime.data_dir)
    if configured is not None:
        return configured
    return DEFAULT_DATA_DIR


def resolve_log_path() -> Path:
    env_path = os.getenv("VPPX_LOG_PATH")
    if env_path:
        return Path(env_path)
    configured = _resolve_optional_path(load_app_config().runtime.log_path)
    if configured is not None:
        return configured
    return resolve_data_dir() / "logs" / "vppx.log"


def resolve_backtest_log_path() -> Path:
    env_path = os.getenv("VPPX_BACKTEST_LOG_PATH")
    if env_path:
        return Path(env_path)
    configured = _resolve_optional_path(load_app_config().runtime.backtest_log_path)
    if configured is not None:
        return configured
    return resolve_data_dir() / "logs" / "backtest.log"


def resolve_db_file_path() -> Path:
    env_path = os.getenv("VPPX_DB_PATH")
    if env_path:
        return Path(env_path)
    configured = _resolve_optional_path(load_app_config().runtime.db_path)
    if configured is not None:
        return configured
    return resolve_data_dir() / "vppx.sqlite3"


def ensure_runtime_dirs() -> None:
    resolve_data_dir().mkdir(parents=True, exist_ok=True)
    resolve_log_path().parent.mkdir(parents=True, exist_ok=True)
    resolve_backtest_log_path().parent.mkdir(parents=True, exist_ok=True)
