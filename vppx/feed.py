from __future__ import annotations

import json
import logging
import math
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping

from pydantic import ValidationError

from .errors import SimulationDataError
from .models import ContextSnapshot


UTC = timezone.utc
_LOGGER = logging.getLogger("vppx.feed")

# Flat upstream keys accepted in place of the nested snapshot layout.
_PRICE_KEYS: tuple[str, ...] = ("price", "market_price")
_VOLUME_KEYS: tuple[str, ...] = ("volume", "market_volume")
_CAPACITY_KEYS: tuple[str, ...] = ("available_capacity", "capacity")
_FLAT_MARKET_KEYS: frozenset[str] = frozenset({*_PRICE_KEYS, *_VOLUME_KEYS, "status", "market_type"})
_FLAT_RESOURCE_KEYS: frozenset[str] = frozenset(
    {*_CAPACITY_KEYS, "total_capacity", "state_of_charge", "resource_id"}
)


def _first_present(raw: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _nest_flat_record(raw: Mapping[str, Any]) -> dict[str, Any]:
    market: dict[str, Any] = {
        "price": _first_present(raw, _PRICE_KEYS),
        "volume": _first_present(raw, _VOLUME_KEYS),
    }
    for key in ("status", "market_type"):
        if raw.get(key) is not None:
            market[key] = raw[key]
    resource: dict[str, Any] = {"available_capacity": _first_present(raw, _CAPACITY_KEYS)}
    for key in ("total_capacity", "state_of_charge", "resource_id"):
        if raw.get(key) is not None:
            resource[key] = raw[key]
    extras = {
        key: value
        for key, value in raw.items()
        if key != "timestamp" and key not in _FLAT_MARKET_KEYS and key not in _FLAT_RESOURCE_KEYS
    }
    return {"timestamp": raw.get("timestamp"), "market": market, "resource": resource, "extras": extras}


def coerce_snapshot(raw: Any) -> ContextSnapshot:
    """Turn an upstream record into a snapshot or raise ``SimulationDataError``.

    Accepts the nested ``{timestamp, market, resource, extras}`` layout or a
    flat record (``price``/``volume``/``available_capacity`` at top level).
    """
    if isinstance(raw, ContextSnapshot):
        snapshot = raw
    else:
        if not isinstance(raw, Mapping):
            raise SimulationDataError(f"snapshot must be an object, got {type(raw).__name__}")
        payload = dict(raw) if "market" in raw or "resource" in raw else _nest_flat_record(raw)
        missing = [
            name
            for name, value in (
                ("timestamp", payload.get("timestamp")),
                ("market.price", (payload.get("market") or {}).get("price")),
                ("market.volume", (payload.get("market") or {}).get("volume")),
                ("resource.available_capacity", (payload.get("resource") or {}).get("available_capacity")),
            )
            if value is None
        ]
        if missing:
            raise SimulationDataError(f"snapshot missing required fields: {', '.join(missing)}")
        try:
            snapshot = ContextSnapshot.model_validate(payload)
        except ValidationError as exc:
            raise SimulationDataError(f"invalid snapshot: {exc.errors()[0].get('msg')}") from exc
    if not math.isfinite(snapshot.market.price) or snapshot.market.price <= 0:
        raise SimulationDataError(f"market price must be positive, got {snapshot.market.price}")
    if not math.isfinite(snapshot.market.volume) or snapshot.market.volume < 0:
        raise SimulationDataError(f"market volume must be non-negative, got {snapshot.market.volume}")
    return snapshot


def iter_jsonl_records(path: str | Path) -> Iterator[Any]:
    """Yield one decoded value per non-blank line.

    Undecodable lines are yielded as their raw text so the caller can count
    them as skipped ticks.
    """
    source = Path(path)
    if not source.exists():
        raise FileNotFoundError(f"dataset not found: {source}")
    with source.open("r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            text = line.strip()
            if not text:
                continue
            try:
                yield json.loads(text)
            except json.JSONDecodeError:
                _LOGGER.warning("undecodable dataset line path=%s line=%s", source, line_no)
                yield text


def load_jsonl_records(path: str | Path) -> list[Any]:
    return list(iter_jsonl_records(path))


def write_jsonl_snapshots(path: str | Path, snapshots: list[ContextSnapshot]) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        for snapshot in snapshots:
            handle.write(json.dumps(snapshot.model_dump(mode="json"), ensure_ascii=False, separators=(",", ":")))
            handle.write("\n")
    return target


def generate_synthetic_snapshots(
    *,
    start: datetime,
    periods: int,
    interval_minutes: int = 60,
    seed: int = 7,
    base_price: float = 50.0,
    price_amplitude: float = 20.0,
    price_noise: float = 10.0,
    base_volume: float = 1000.0,
    volume_noise: float = 500.0,
    base_capacity: float = 500.0,
    capacity_noise: float = 200.0,
) -> list[ContextSnapshot]:
    """Deterministic daily-cycle price series; the same seed yields the same list."""
    rng = random.Random(seed)
    origin = start if start.tzinfo is not None else start.replace(tzinfo=UTC)
    snapshots: list[ContextSnapshot] = []
    for index in range(max(0, int(periods))):
        ts = origin + timedelta(minutes=interval_minutes * index)
        phase = (ts.hour + ts.minute / 60.0) / 24.0 * 2 * math.pi
        price = base_price + math.sin(phase) * price_amplitude + rng.random() * price_noise
        demand = 800 + math.sin(phase) * 200 + rng.random() * 100
        snapshots.append(
            ContextSnapshot(
                timestamp=ts,
                market={
                    "price": round(max(price, 0.01), 4),
                    "volume": round(base_volume + rng.random() * volume_noise, 4),
                    "status": "open",
                },
                resource={
                    "available_capacity": round(base_capacity + rng.random() * capacity_noise, 4),
                    "state_of_charge": round(0.5 + rng.random() * 0.4, 4),
                },
                extras={
                    "demand": round(demand, 4),
                    "generation": round(300 + rng.random() * 150, 4),
                    "load": round(200 + rng.random() * 100, 4),
                },
            )
        )
    return snapshots
