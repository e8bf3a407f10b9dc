"""Tests for the health check endpoint"""


def test_health_check(client, core):
    response = client.get("/api-health")
    assert response.status_code == 200
    assert response.json["status"] == "ok"
    assert response.json["database"] == "healthy"
    assert response.json["counter_store"] == "healthy"


def test_health_check_degraded_without_counter_store(client, core, monkeypatch):
    monkeypatch.setattr(core.store, "ping", lambda: False)
    response = client.get("/api-health")
    assert response.status_code == 200
    assert response.json["status"] == "degraded"
    assert response.json["counter_store"] == "unhealthy"


def test_security_headers(client, core):
    response = client.get("/api-health")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Cache-Control"] == "no-store"
