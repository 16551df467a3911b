"""Tests for the HTTP endpoints. The service runs against the test database and fake gateway."""
import pytest
from fastapi.testclient import TestClient

import main
from services.analyzer.packages import get_package, validate_package
from services.analyzer.service import AnalyzerService


@pytest.fixture
def client(monkeypatch, gateway, store, repository, context, registry):
    story = get_package("advanced").task("vision_context_story_accents").model_dump()
    registry["story"] = validate_package({"id": "story", "tasks": [story]})
    service = AnalyzerService(gateway=gateway, store=store, repository=repository)
    service.new_context = lambda: context
    monkeypatch.setattr(main, "analyzer_service", service)
    # No context manager: the lifespan would create the default database
    return TestClient(main.app)


def test_create_and_read_process(client, add_photos, gateway):
    ids = add_photos(2)
    gateway.on_direct = lambda prompt, photo_ids: [
        {"context": "c", "story": "s", "visual_accents": "a"} for _ in photo_ids
    ]

    resp = client.post(
        "/analyzer/processes", json={"user_id": 1, "package_id": "story", "sync": True}
    )
    assert resp.status_code == 200
    process_id = resp.json()["process_id"]

    resp = client.get(f"/analyzer/processes/{process_id}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["stage"] == "finished"
    assert body["complete"] is True
    assert body["sheet"] == {"vision_context_story_accents": {"pending": 0, "completed": len(ids)}}


def test_unknown_package_is_a_bad_request(client):
    resp = client.post("/analyzer/processes", json={"user_id": 1, "package_id": "nope"})
    assert resp.status_code == 400
    assert "Unknown package" in resp.json()["detail"]


def test_unknown_process(client):
    assert client.get("/analyzer/processes/999").status_code == 404
    assert client.post("/analyzer/processes/999/retry").status_code == 404
    assert client.post("/analyzer/processes/999/reconcile").status_code == 404


def test_photo_health(client, add_photos):
    (photo_id,) = add_photos(1, descriptions={"context": "c"})
    body = client.get(f"/analyzer/photos/{photo_id}/health").json()
    assert body["ok"] is False
    assert {"label": "descriptions.context", "ok": True} in body["checks"]
    assert "descriptions.story" in body["missing"]

    missing = client.get("/analyzer/photos/999/health").json()
    assert missing["missing"] == ["photo"]
