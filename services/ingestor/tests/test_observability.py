from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from ingestor.main import app, create_app
from ingestor.settings import IngestorSettings
from ingestor.store import InMemoryProjectStore

pytestmark = pytest.mark.integration


@pytest.fixture
def client():
    settings = IngestorSettings(ingest_token="token-1", autostart=False)
    with TestClient(create_app(settings=settings, store=InMemoryProjectStore())) as test_client:
        yield test_client


def test_health() -> None:
    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "ingestor"}


def test_request_id_header_and_metrics_snapshot(client: TestClient) -> None:
    first = client.get("/health")
    second = client.get("/health")
    rejected = client.post("/webhooks/ingest", json={"webhookId": "wh-1", "items": []})
    metrics = client.get("/metrics")

    assert first.status_code == 200
    assert rejected.status_code == 401
    assert metrics.status_code == 200

    first_request_id = first.headers.get("x-request-id")
    second_request_id = second.headers.get("x-request-id")
    assert first_request_id
    assert second_request_id
    assert first_request_id != second_request_id
    assert rejected.headers.get("x-request-id")

    body = metrics.json()
    assert body["totals"]["requests"] >= 3
    assert body["totals"]["errors"] >= 1
    assert body["totals"]["rejected"] >= 1
    assert body["endpoints"]["GET /health"]["count"] >= 2
    assert body["endpoints"]["POST /webhooks/ingest"]["errors"] == 1


def test_incoming_request_id_is_preserved(client: TestClient) -> None:
    response = client.get("/health", headers={"x-request-id": "manual-request-id"})

    assert response.status_code == 200
    assert response.headers.get("x-request-id") == "manual-request-id"
