import json
from pathlib import Path

from fastapi.testclient import TestClient

from media_server.config import Settings
from media_server.main import create_app


def _client(tmp_path: Path) -> TestClient:
    config = Settings(
        _env_file=None,
        storage_root=str(tmp_path / "data"),
        database_url=f"sqlite:///{tmp_path / 'media.db'}",
    )
    return TestClient(create_app(config))


def _events_from_caplog(caplog) -> list[dict]:
    events: list[dict] = []
    for record in caplog.records:
        if record.name != "media.request":
            continue
        try:
            events.append(json.loads(record.message))
        except json.JSONDecodeError:
            continue
    return events


def test_request_completed_log_contains_request_id(caplog, tmp_path: Path) -> None:
    caplog.set_level("INFO", logger="media.request")
    with _client(tmp_path) as client:
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.status_code == 200
        assert response.headers.get("X-Request-ID") == "req-123"
        assert response.headers.get("X-Media-App-Version") == "dev"

    events = _events_from_caplog(caplog)
    completed = [e for e in events if e.get("event") == "request_completed" and e.get("path") == "/health"]
    assert completed
    assert completed[-1]["request_id"] == "req-123"
    assert completed[-1]["status_code"] == 200
    assert "trace_id" in completed[-1]


def test_request_error_log_contains_upload_and_error_class(caplog, tmp_path: Path) -> None:
    caplog.set_level("INFO", logger="media.request")
    with _client(tmp_path) as client:
        response = client.post("/v1/uploads/not-found/assemble", json={"total_chunks": 2})
        assert response.status_code == 409

    events = _events_from_caplog(caplog)
    errors = [e for e in events if e.get("event") == "request_error" and e.get("path").endswith("/assemble")]
    assert errors
    assert errors[-1]["upload_id"] == "not-found"
    assert errors[-1]["error_class"] == "client_error"
    assert errors[-1]["error_code"] == "incomplete_upload"
    assert errors[-1]["retryable"] is True
    assert "trace_id" in errors[-1]
