from datetime import timedelta

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import maintenance as maintenance_api
from db.models import utc_now
from runtime_state import MaintenanceCoordinator, runtime_state

_KEY = "maintenance-secret"
_HEADERS = {"X-MCP-API-Key": _KEY}


def _build_client(monkeypatch, service, *, client=("testclient", 50000)) -> TestClient:
    monkeypatch.setattr(maintenance_api, "get_memory_service", lambda: service)
    monkeypatch.setattr(runtime_state, "maintenance", MaintenanceCoordinator())

    app = FastAPI()
    app.include_router(maintenance_api.router)
    return TestClient(app, client=client)


def test_maintenance_auth_rejects_when_api_key_not_configured_by_default(monkeypatch, service) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.delenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", raising=False)
    with _build_client(monkeypatch, service) as client:
        response = client.post("/maintenance/decay", json={})
    assert response.status_code == 401
    detail = response.json().get("detail") or {}
    assert detail.get("error") == "maintenance_auth_failed"
    assert detail.get("reason") == "api_key_not_configured"


def test_maintenance_auth_allows_insecure_local_override_for_loopback(monkeypatch, service) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.setenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(monkeypatch, service, client=("127.0.0.1", 50000)) as client:
        response = client.post("/maintenance/decay", json={})
    assert response.status_code == 200
    assert response.json().get("ok") is True


def test_maintenance_auth_rejects_insecure_local_override_for_non_loopback_client(monkeypatch, service) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.setenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(monkeypatch, service, client=("203.0.113.10", 50000)) as client:
        response = client.post("/maintenance/decay", json={})
    assert response.status_code == 401
    detail = response.json().get("detail") or {}
    assert detail.get("reason") == "insecure_local_override_requires_loopback"


def test_maintenance_auth_rejects_wrong_or_missing_key(monkeypatch, service) -> None:
    monkeypatch.setenv("MCP_API_KEY", _KEY)
    with _build_client(monkeypatch, service) as client:
        missing = client.get("/maintenance/status")
        wrong = client.get("/maintenance/status", headers={"X-MCP-API-Key": "nope"})
    for response in (missing, wrong):
        assert response.status_code == 401
        assert response.json()["detail"]["reason"] == "invalid_or_missing_api_key"


def test_maintenance_auth_accepts_bearer_token(monkeypatch, service) -> None:
    monkeypatch.setenv("MCP_API_KEY", _KEY)
    with _build_client(monkeypatch, service) as client:
        response = client.get("/maintenance/status", headers={"Authorization": f"Bearer {_KEY}"})
    assert response.status_code == 200
    assert response.json()["lexical"]["total_docs"] == 0


def test_decay_endpoint_applies_once_per_day(monkeypatch, service) -> None:
    monkeypatch.setenv("MCP_API_KEY", _KEY)
    with _build_client(monkeypatch, service) as client:
        first = client.post("/maintenance/decay", json={}, headers=_HEADERS).json()
        second = client.post("/maintenance/decay", json={}, headers=_HEADERS).json()
        forced = client.post("/maintenance/decay", json={"force": True, "rate": 0.05}, headers=_HEADERS).json()
        status = client.get("/maintenance/status", headers=_HEADERS).json()

    assert first["applied"] is True
    assert second["applied"] is False
    assert second["reason"] == "already_applied_today"
    assert forced["applied"] is True
    assert forced["rate"] == 0.05
    assert status["maintenance"]["runs"] == {"decay": 2}


def test_consolidate_dry_run_then_apply(monkeypatch, service) -> None:
    monkeypatch.setenv("MCP_API_KEY", _KEY)
    with _build_client(monkeypatch, service) as client:
        for content in ("Weekly sync is on Tuesday", "weekly sync is on tuesday!"):
            client.portal.call(service.create, {"type": "fact", "content": content})

        plan = client.post("/maintenance/consolidate", json={"dry_run": True, "threshold": 0.95}, headers=_HEADERS)
        applied = client.post("/maintenance/consolidate", json={"threshold": 0.95}, headers=_HEADERS)
        invalid = client.post("/maintenance/consolidate", json={"threshold": 0.2}, headers=_HEADERS)

    assert plan.status_code == 200
    assert plan.json()["dry_run"] is True
    assert plan.json()["memories_affected"] == 2
    assert applied.json()["ok"] is True
    assert applied.json()["merged"] == 1
    assert invalid.status_code == 422


def test_expired_reconcile_rebuild_and_cache_routes(monkeypatch, service) -> None:
    monkeypatch.setenv("MCP_API_KEY", _KEY)
    with _build_client(monkeypatch, service) as client:
        past = (utc_now() - timedelta(minutes=5)).isoformat()
        client.portal.call(service.create, {"type": "context", "content": "Old sprint notes", "expires_at": past})
        client.portal.call(service.create, {"type": "fact", "content": "Keeps going"})

        expired = client.post("/maintenance/expired", headers=_HEADERS).json()
        rebuilt = client.post("/maintenance/index/rebuild", headers=_HEADERS).json()
        reconciled = client.post("/maintenance/reconcile", headers=_HEADERS).json()
        invalidated = client.post("/maintenance/cache/invalidate", headers=_HEADERS).json()
        embedding = client.get("/maintenance/embedding", headers=_HEADERS).json()

    assert expired["ok"] is True
    assert expired["cleared"] == 1
    assert rebuilt["ok"] is True
    assert rebuilt["rebuilt"] is True
    assert rebuilt["total_docs"] == 2
    assert reconciled["records"] == 2
    assert reconciled["restored_entries"] == 0
    assert invalidated == {"invalidated": True}
    assert embedding["available"] is True
    assert embedding["backend"] == "hash"


def test_failed_pass_returns_server_error(monkeypatch, service) -> None:
    monkeypatch.setenv("MCP_API_KEY", _KEY)

    async def _broken(*_args, **_kwargs):
        raise RuntimeError("store offline")

    monkeypatch.setattr(service, "clear_expired", _broken)
    with _build_client(monkeypatch, service) as client:
        response = client.post("/maintenance/expired", headers=_HEADERS)
        status = client.get("/maintenance/status", headers=_HEADERS).json()

    assert response.status_code == 500
    assert response.json()["detail"]["ok"] is False
    assert "store offline" in status["maintenance"]["last_errors"]["expired"]["error"]
