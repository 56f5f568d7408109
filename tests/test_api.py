import asyncio
import types

import pytest
from fastapi.testclient import TestClient

from delivery_queue.api import API_TOKEN_HEADER_NAME, create_app
from delivery_queue.core import DeliveryQueue
from delivery_queue.prometheus import QueueMetrics
from delivery_queue.queue_db import QueueDb
from delivery_queue.transport import TransportResult

API_TOKEN = "secret-token"


class DummyTransport:
    def __init__(self):
        self.sent = []

    async def send(self, entry):
        self.sent.append(entry)
        return TransportResult.success()


class DummyService:
    """Stands in for the queue when only the HTTP mapping matters."""

    def __init__(self, response):
        self.response = response
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        return self.response


SILENT = types.SimpleNamespace(
    warning=lambda *a, **k: None,
    error=lambda *a, **k: None,
    exception=lambda *a, **k: None,
    info=lambda *a, **k: None,
    debug=lambda *a, **k: None,
)


@pytest.fixture
def queue(tmp_path):
    q = DeliveryQueue(
        QueueDb(str(tmp_path / "api.db")),
        transport=DummyTransport(),
        send_pause_seconds=0,
        metrics=QueueMetrics(),
        logger=SILENT,
    )
    asyncio.run(q.init())
    return q


@pytest.fixture
def client(queue):
    client = TestClient(create_app(queue, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client


def enqueue(client, **extra):
    payload = {"recipient": "visitor@example.org", "subject": "Pass", "text": "Your pass"}
    payload.update(extra)
    return client.post("/queue", json=payload)


def test_health_needs_no_token(queue):
    client = TestClient(create_app(queue, api_token=API_TOKEN))
    assert client.get("/health").json() == {"status": "ok"}


def test_rejects_missing_or_wrong_token(queue):
    client = TestClient(create_app(queue, api_token=API_TOKEN))

    response = client.get("/queue")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"

    response = client.get("/queue/stats", headers={API_TOKEN_HEADER_NAME: "wrong"})
    assert response.status_code == 401


def test_no_token_configured_allows_requests(queue):
    client = TestClient(create_app(queue))
    assert client.get("/queue/stats").status_code == 200


def test_enqueue_process_and_inspect(client, queue):
    response = enqueue(client, priority="urgent")
    assert response.status_code == 201
    entry = response.json()["entry"]
    assert entry["status"] == "pending"
    assert entry["priority"] == "urgent"

    processed = client.post("/queue/process").json()
    assert processed["ok"] is True
    assert processed["sent"] == 1
    assert processed["skipped"] is False

    detail = client.get(f"/queue/{entry['id']}").json()
    assert detail["entry"]["status"] == "sent"
    assert detail["log"][0]["outcome"] == "sent"

    stats = client.get("/queue/stats").json()
    assert stats["sent"] == 1
    assert stats["total"] == 1
    assert [e.recipient for e in queue.transport.sent] == ["visitor@example.org"]


def test_enqueue_validation_errors_are_400(client):
    response = enqueue(client, recipient="not-an-address")
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "validation_error"

    response = client.post("/queue", json={"recipient": "a@example.org", "template_id": 99})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "template_resolution_error"

    assert client.get("/queue/stats").json()["total"] == 0


def test_cancel_and_retry_status_codes(client):
    entry_id = enqueue(client).json()["entry"]["id"]

    response = client.delete(f"/queue/{entry_id}")
    assert response.status_code == 200
    assert response.json()["entry"]["status"] == "cancelled"

    response = client.delete(f"/queue/{entry_id}")
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "invalid_state"

    response = client.post(f"/queue/{entry_id}/retry")
    assert response.status_code == 409

    response = client.delete("/queue/9999")
    assert response.status_code == 404
    assert response.json()["detail"] == {"error": "queue entry 9999 not found", "code": "not_found"}

    assert client.get("/queue/9999").status_code == 404


def test_list_entries_with_filters(client):
    first = enqueue(client, recipient="a@example.org").json()["entry"]["id"]
    second = enqueue(client, recipient="b@example.org", priority="high").json()["entry"]["id"]
    client.delete(f"/queue/{first}")

    listed = client.get("/queue").json()["entries"]
    assert {e["id"] for e in listed} == {first, second}

    pending = client.get("/queue", params={"status": "pending"}).json()["entries"]
    assert [e["id"] for e in pending] == [second]

    high = client.get("/queue", params={"priority": "high", "limit": 1}).json()["entries"]
    assert [e["id"] for e in high] == [second]

    response = client.get("/queue", params={"status": "lost"})
    assert response.status_code == 400

    assert client.get("/queue", params={"limit": 0}).status_code == 400
    assert client.get("/queue", params={"offset": -1}).status_code == 400


def test_bulk_enqueue(client):
    response = client.post(
        "/queue/bulk",
        json={
            "messages": [
                {"to": "a@example.org", "subject": "One", "text": "1"},
                {"to": "b@example.org", "subject": "Two", "html": "<b>2</b>"},
            ]
        },
    )
    assert response.status_code == 201
    assert response.json()["queued"] == 2

    response = client.post("/queue/bulk", json={"messages": [{"to": "broken"}]})
    assert response.status_code == 400


def test_pause_resume(client):
    enqueue(client)

    assert client.post("/queue/pause").json() == {"ok": True, "paused": True}
    assert client.post("/queue/process").json()["skipped"] is True

    assert client.post("/queue/resume").json() == {"ok": True, "paused": False}
    assert client.post("/queue/process").json()["sent"] == 1


def test_prune_logs(client):
    enqueue(client)
    client.post("/queue/process")

    assert client.post("/logs/prune", json={"older_than": "2000-01-01T00:00:00Z"}).json()["removed"] == 0
    assert client.post("/logs/prune", json={"older_than": "2999-01-01T00:00:00Z"}).json()["removed"] == 1
    assert client.post("/logs/prune").json()["removed"] == 0


def test_templates_endpoints(client):
    response = client.post(
        "/templates",
        json={"name": "welcome", "subject": "Welcome {{name}}", "html": "<p>{{name}}</p>"},
    )
    assert response.status_code == 201
    template_id = response.json()["template"]["id"]

    templates = client.get("/templates").json()["templates"]
    assert [t["name"] for t in templates] == ["welcome"]

    preview = client.post(f"/templates/{template_id}/preview", json={"variables": {"name": "<Ada>"}})
    assert preview.json() == {"ok": True, "subject": "Welcome <Ada>", "html": "<p>&lt;Ada&gt;</p>"}

    queued = client.post(
        "/queue",
        json={"to": "ada@example.org", "template_id": template_id, "template_variables": {"name": "Ada"}},
    )
    assert queued.json()["entry"]["subject"] == "Welcome Ada"

    missing = client.post(f"/templates/{template_id}/preview", json={"variables": {}})
    assert missing.status_code == 400


def test_template_update_delete_and_validate_endpoints(client):
    template_id = client.post(
        "/templates", json={"name": "welcome", "subject": "Welcome {{name}}", "text": "Hello"}
    ).json()["template"]["id"]

    updated = client.put(f"/templates/{template_id}", json={"category": "visitors"})
    assert updated.status_code == 200
    assert updated.json()["template"]["category"] == "visitors"
    assert client.put("/templates/999", json={"name": "x"}).status_code == 404
    assert client.put(f"/templates/{template_id}", json={"text": None}).status_code == 400

    valid = client.post("/templates/validate", json={"subject": "Hi {{name}}", "variables": {"name": "Ada"}})
    assert valid.json() == {"ok": True, "valid": True, "placeholders": ["name"], "missing": [], "errors": []}

    unchecked = client.post("/templates/validate", json={"text": "{{name}} }}"}).json()
    assert unchecked["valid"] is False
    assert unchecked["missing"] == []
    assert unchecked["errors"] == ["text: malformed placeholder"]

    assert client.delete(f"/templates/{template_id}").json() == {"ok": True}
    assert client.delete(f"/templates/{template_id}").status_code == 404
    assert client.get("/templates").json()["templates"] == []


def test_metrics_endpoint(client):
    enqueue(client)
    client.post("/queue/process")

    response = client.get("/metrics")
    assert response.status_code == 200
    assert "dq_sent_total" in response.text


def test_store_unavailable_maps_to_503():
    svc = DummyService({"ok": False, "error": "database gone", "code": "store_unavailable"})
    client = TestClient(create_app(svc))

    response = client.post("/queue/process")

    assert response.status_code == 503
    assert response.json()["detail"] == {"error": "database gone", "code": "store_unavailable"}
    assert svc.calls == [("processNow", {})]
