from pathlib import Path

from fastapi.testclient import TestClient

from media_server.config import Settings
from media_server.main import create_app


def test_openapi_includes_standard_error_schema(tmp_path: Path) -> None:
    config = Settings(
        _env_file=None,
        storage_root=str(tmp_path / "data"),
        database_url=f"sqlite:///{tmp_path / 'media.db'}",
    )
    with TestClient(create_app(config)) as client:
        spec = client.get("/openapi.json").json()

    components = spec.get("components", {}).get("schemas", {})
    assert "ErrorResponse" in components
    assert {"trace_id", "missing_chunk_index", "retryable"} <= set(components["ErrorResponse"]["properties"])

    init_responses = spec["paths"]["/v1/uploads/init"]["post"]["responses"]
    assert "400" in init_responses
    assert init_responses["400"]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")

    stream_responses = spec["paths"]["/v1/media/{object_id}/stream"]["get"]["responses"]
    assert "416" in stream_responses
    assert "404" in stream_responses
