from fastapi.testclient import TestClient

from listing_relay.main import app


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_root() -> None:
    client = TestClient(app)
    assert client.get("/").json() == {"status": "ok"}
