from fastapi.testclient import TestClient

from hoodops.config import settings
from hoodops.main import app
from hoodops.observability import masking_processor


def test_health_ready_ok_without_redis():
    previous_redis = settings.REDIS_URL
    try:
        settings.REDIS_URL = ""
        client = TestClient(app)
        response = client.get("/health/ready")
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "ready"
        assert payload["checks"]["db"] == "ok"
        assert payload["checks"]["redis"] == "skipped"
    finally:
        settings.REDIS_URL = previous_redis


def test_security_headers_are_present():
    previous_security_headers = bool(settings.SECURITY_HEADERS_ENABLED)
    try:
        settings.SECURITY_HEADERS_ENABLED = True
        client = TestClient(app)
        response = client.get("/health")
        assert response.status_code == 200
        assert response.headers.get("X-Content-Type-Options") == "nosniff"
        assert response.headers.get("X-Frame-Options") == "DENY"
        assert response.headers.get("Referrer-Policy") == "no-referrer"
        assert response.headers.get("Cache-Control") == "no-store"
    finally:
        settings.SECURITY_HEADERS_ENABLED = previous_security_headers


def test_security_headers_can_be_disabled():
    previous_security_headers = bool(settings.SECURITY_HEADERS_ENABLED)
    try:
        settings.SECURITY_HEADERS_ENABLED = False
        client = TestClient(app)
        response = client.get("/ping")
        assert response.json() == {"ok": True}
        assert response.headers.get("X-Frame-Options") is None
    finally:
        settings.SECURITY_HEADERS_ENABLED = previous_security_headers


def test_request_id_is_echoed_or_generated():
    client = TestClient(app)
    echoed = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert echoed.headers.get("X-Request-ID") == "req-123"

    generated = client.get("/health")
    assert len(generated.headers.get("X-Request-ID", "")) == 36


def test_calendar_month_is_mounted_on_app():
    client = TestClient(app)
    response = client.get("/api/calendar/month", params={"year": 2025, "month": 2})
    assert response.status_code == 200
    assert response.json()["weeks"][0][0] == "2025-01-26"


def test_contact_details_are_masked_in_logs():
    event = masking_processor(None, "info", {"event": "x", "phone": "555-123-4567", "email": "abc"})
    assert event["phone"] == "555***67"
    assert event["email"] == "***"
    assert event["event"] == "x"
