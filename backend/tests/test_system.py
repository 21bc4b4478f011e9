"""
Health endpoint and CORS hook tests.
"""

from sqlalchemy.exc import OperationalError

from storefront.routes import system


def test_health_reports_database(client, db_session):
    resp = client.get("/api/health")

    assert resp.status_code == 200
    assert resp.json["status"] == "healthy"
    assert resp.json["environment"] == "test"
    assert resp.json["checks"]["database"]["latency_ms"] >= 0


def test_health_unhealthy_database(client, db_session, monkeypatch):
    def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(system.db.session, "execute", broken)
    resp = client.get("/api/health")

    assert resp.status_code == 503
    assert resp.json["checks"]["database"]["error"] == "Database error"


def test_cors_allows_configured_origin(client, db_session):
    resp = client.get("/api/health", headers={"Origin": "http://localhost:3000"})
    assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"


def test_cors_ignores_other_origins(client, db_session):
    resp = client.get("/api/health", headers={"Origin": "https://evil.example"})
    assert "Access-Control-Allow-Origin" not in resp.headers
