from fastapi.testclient import TestClient

from inference_manager import __version__
from inference_manager.main import app


def test_root_and_health():
    client = TestClient(app)

    assert "Welcome" in client.get("/").json()["message"]

    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["version"] == __version__
    assert isinstance(body["sessions"], dict)


def test_routes_are_versioned():
    paths = {route.path for route in app.routes}

    assert "/api/v1/sessions/" in paths
    assert "/api/v1/sessions/{session_id}/query" in paths
    assert "/api/v1/job-kinds/" in paths
