import time
from typing import Any
from uuid import uuid4

from fastapi.testclient import TestClient

from vppx.main import app


client = TestClient(app)


def _strategy_payload(strategy_id: str, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": strategy_id,
        "name": "api smoke",
        "type": "rule_based",
        "rules": [
            {
                "id": "r1",
                "conditions": [{"field": "market.price", "operator": "greater_than", "value": 45}],
                "actions": [
                    {"type": "bid_price", "parameters": {"multiplier": 0.98}},
                    {"type": "bid_quantity", "parameters": {"ratio": 0.5}},
                ],
            }
        ],
    }
    payload.update(overrides)
    return payload


def _snapshot(price: float = 60.0, hour: int = 12) -> dict[str, Any]:
    return {
        "timestamp": f"2026-03-02T{hour:02d}:00:00Z",
        "market": {"price": price, "volume": 1000.0},
        "resource": {"available_capacity": 100.0},
    }


def _create(**overrides: Any) -> str:
    strategy_id = f"S-UT-{uuid4().hex[:8].upper()}"
    resp = client.post("/v1/strategies", json=_strategy_payload(strategy_id, **overrides))
    assert resp.status_code == 200
    return strategy_id


def test_healthz() -> None:
    resp = client.get("/v1/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_create_and_get_strategy() -> None:
    strategy_id = _create()
    resp = client.get(f"/v1/strategies/{strategy_id}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["id"] == strategy_id
    assert body["status"] == "draft"
    assert body["version"] == 1
    assert body["rules"][0]["actions"][0]["type"] == "bid_price"

    listed = client.get("/v1/strategies", params={"status": "draft"})
    assert listed.status_code == 200
    assert strategy_id in {item["id"] for item in listed.json()}
    summary = next(item for item in listed.json() if item["id"] == strategy_id)
    assert summary["rule_count"] == 1


def test_invalid_strategy_is_rejected() -> None:
    bad = _strategy_payload(f"S-UT-{uuid4().hex[:8].upper()}")
    bad["rules"][0]["conditions"][0]["operator"] = "roughly"
    assert client.post("/v1/strategies", json=bad).status_code == 422

    no_rules = _strategy_payload(f"S-UT-{uuid4().hex[:8].upper()}", rules=[])
    assert client.post("/v1/strategies", json=no_rules).status_code == 422

    assert client.get("/v1/strategies/S-UT-DOES-NOT-EXIST").status_code == 404


def test_lifecycle_transitions_and_conflicts() -> None:
    strategy_id = _create()

    resp = client.post(f"/v1/strategies/{strategy_id}/activate")
    assert resp.status_code == 409
    assert "draft" in resp.json()["detail"]

    assert client.post(f"/v1/strategies/{strategy_id}/test").json()["status"] == "testing"
    activated = client.post(f"/v1/strategies/{strategy_id}/activate")
    assert activated.status_code == 200
    assert activated.json()["status"] == "active"

    edit = _strategy_payload(strategy_id, name="renamed")
    edit.pop("id")
    assert client.put(f"/v1/strategies/{strategy_id}/definition", json=edit).status_code == 409

    suspended = client.post(f"/v1/strategies/{strategy_id}/suspend").json()
    edit["expected_version"] = suspended["version"]
    updated = client.put(f"/v1/strategies/{strategy_id}/definition", json=edit)
    assert updated.status_code == 200
    assert updated.json()["name"] == "renamed"

    stale = client.put(f"/v1/strategies/{strategy_id}/definition", json=edit)
    assert stale.status_code == 409

    events = client.get(f"/v1/strategies/{strategy_id}/events")
    assert events.status_code == 200
    assert "STRATEGY_ACTIVATED" in {item["event_type"] for item in events.json()}


def test_execution_submit_get_cancel() -> None:
    strategy_id = _create()
    refused = client.post("/v1/executions", json={"strategy_id": strategy_id, "snapshot": _snapshot()})
    assert refused.status_code == 409

    client.post(f"/v1/strategies/{strategy_id}/test")
    client.post(f"/v1/strategies/{strategy_id}/activate")

    submitted = client.post(
        "/v1/executions",
        json={"strategy_id": strategy_id, "snapshot": _snapshot(), "priority": 7},
    )
    assert submitted.status_code == 200
    task = submitted.json()
    assert task["status"] == "pending"
    assert task["priority"] == 7

    fetched = client.get(f"/v1/executions/{task['task_id']}")
    assert fetched.status_code == 200
    assert fetched.json()["strategy_id"] == strategy_id

    listed = client.get("/v1/executions", params={"strategy_id": strategy_id})
    assert [item["task_id"] for item in listed.json()] == [task["task_id"]]

    cancelled = client.post(f"/v1/executions/{task['task_id']}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.post(f"/v1/executions/{task['task_id']}/cancel").status_code == 409
    assert client.get("/v1/executions/missing-task").status_code == 404


def test_engine_status_and_risk_endpoints() -> None:
    status = client.get("/v1/engine/status")
    assert status.status_code == 200
    body = status.json()
    assert body["enabled"] is False
    assert body["configured_slots"] >= 1
    assert "counters" in body

    metrics = client.get("/v1/risk/metrics")
    assert metrics.status_code == 200
    assert set(metrics.json()["limits"]) == {"max_daily_loss", "max_position_size", "min_cash_reserve", "max_drawdown"}

    adjusted = client.post("/v1/risk/ledger", json={"realized_pnl": 125.0})
    assert adjusted.status_code == 200
    assert adjusted.json()["metrics"]["daily_loss"] == 0.0

    sweep = client.post("/v1/risk/sweep")
    assert sweep.status_code == 200
    assert isinstance(sweep.json()["events"], list)
    assert client.get("/v1/risk/events").status_code == 200


def test_events_drain() -> None:
    resp = client.post("/v1/events/drain", params={"limit": 50})
    assert resp.status_code == 200
    body = resp.json()
    assert isinstance(body["events"], list)
    assert body["dropped"] >= 0


def test_backtest_roundtrip() -> None:
    strategy_id = _create()
    created = client.post(
        "/v1/backtests",
        json={
            "strategy_id": strategy_id,
            "data_source": "inline",
            "snapshots": [_snapshot(50.0, 9), _snapshot(40.0, 10), _snapshot(60.0, 11)],
        },
    )
    assert created.status_code == 200
    run_id = created.json()["id"]

    deadline = time.time() + 10
    run: dict[str, Any] = created.json()
    while run["status"] not in {"completed", "failed", "cancelled"} and time.time() < deadline:
        time.sleep(0.05)
        run = client.get(f"/v1/backtests/{run_id}").json()
    assert run["status"] == "completed"
    assert run["progress"] == 100

    report = client.get(f"/v1/backtests/{run_id}/report")
    assert report.status_code == 200
    assert report.json()["performance_metrics"]["total_bids"] == 2

    trades = client.get(f"/v1/backtests/{run_id}/trades")
    assert trades.status_code == 200
    assert len(trades.json()) == 3
    assert len(client.get(f"/v1/backtests/{run_id}/trades", params={"cleared": "true"}).json()) == 2

    listed = client.get("/v1/backtests", params={"strategy_id": strategy_id})
    assert [item["id"] for item in listed.json()] == [run_id]
    assert client.get(f"/v1/strategies/{strategy_id}").json()["status"] == "testing"
    assert client.post(f"/v1/backtests/{run_id}/cancel").status_code == 409


def test_backtest_errors() -> None:
    strategy_id = _create()
    missing_file = client.post(
        "/v1/backtests",
        json={"strategy_id": strategy_id, "data_source": "jsonl", "dataset_path": "/nonexistent/history.jsonl"},
    )
    assert missing_file.status_code == 422

    no_snapshots = client.post("/v1/backtests", json={"strategy_id": strategy_id, "data_source": "inline"})
    assert no_snapshots.status_code == 422

    assert client.get("/v1/backtests/BT-20260302-MISSING").status_code == 404
    assert client.get("/v1/backtests/BT-20260302-MISSING/report").status_code == 404
