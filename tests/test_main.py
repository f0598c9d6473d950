from fastapi.testclient import TestClient

from app.main import app


def test_health():
    resp = TestClient(app).get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_all_resources_mounted():
    paths = {route.path for route in app.routes}
    for path in (
        "/bookings/",
        "/payments/create",
        "/payment-webhook",
        "/vouchers/validate",
        "/notifications/",
        "/conversations/",
    ):
        assert path in paths
