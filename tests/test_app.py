from fastapi.testclient import TestClient

from brewbean import app as app_module
from brewbean.service.runtime import get_runtime


def test_security_headers_and_health():
    client = TestClient(app_module.app)
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}

    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-XSS-Protection"] == "1; mode=block"
    assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"


def test_auth_responses_are_not_cacheable():
    client = TestClient(app_module.app)
    response = client.get("/auth/me")
    assert response.status_code == 401
    assert response.headers["Cache-Control"].startswith("no-store")


def test_request_id_is_echoed_or_generated():
    client = TestClient(app_module.app)
    echoed = client.get("/healthz", headers={"X-Request-ID": "order-1234"})
    assert echoed.headers["X-Request-ID"] == "order-1234"
    generated = client.get("/healthz")
    assert generated.headers["X-Request-ID"]


def test_allowed_origins_default(monkeypatch):
    monkeypatch.setattr(app_module._settings, "cors_allow_origins", [])
    origins = app_module._allowed_origins()
    assert "http://localhost:3000" in origins
    assert "*" not in origins


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setattr(
        app_module._settings, "cors_allow_origins", ["https://shop.brewbean.com"]
    )
    assert app_module._allowed_origins() == ["https://shop.brewbean.com"]


def test_lifespan_runs_cleanup_sweep(monkeypatch):
    calls = []
    runtime = get_runtime()
    monkeypatch.setattr(runtime.auth, "purge_expired_state", lambda: calls.append(1) or 0)

    with TestClient(app_module.app) as client:
        assert client.get("/healthz").status_code == 200

    assert calls
    assert app_module._cleanup_task is None
