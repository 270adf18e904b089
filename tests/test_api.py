"""Tests for the HTTP API."""

import pytest
from datetime import datetime, timedelta, timezone

pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from offsync.api import create_app
from offsync.config import Config, NodeConfig, RecordsConfig, StoreConfig
from offsync.service import SyncService


@pytest.fixture
def config():
    """Create a test configuration."""
    return Config(
        node=NodeConfig(name="test-sync-node"),
        store=StoreConfig(db_path=":memory:"),
        records=RecordsConfig(db_path=":memory:"),
    )


@pytest.fixture
def service(config):
    service = SyncService.from_config(config)
    yield service
    service.close()


@pytest.fixture
def client(config, service):
    """Create a test client."""
    return TestClient(create_app(config, service))


def _enqueue(client, user="u1", **body):
    body.setdefault("resource_type", "earnings")
    body.setdefault("action", "create")
    body.setdefault("payload", {"amount": 10})
    body.setdefault("client_id", "phone")
    return client.post(f"/api/sync/{user}/changes", json=body)


class TestEnqueueEndpoints:
    """Tests for queueing and listing changes."""

    def test_enqueue(self, client):
        response = _enqueue(client)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert isinstance(data["id"], int)

    def test_enqueue_invalid_action(self, client):
        response = _enqueue(client, action="upsert")

        assert response.status_code == 400

    def test_enqueue_missing_fields(self, client):
        response = client.post("/api/sync/u1/changes", json={"action": "create"})

        assert response.status_code == 422

    def test_list_changes(self, client):
        _enqueue(client)
        _enqueue(client, payload={"amount": 20})

        response = client.get("/api/sync/u1/changes")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert data["changes"][1]["payload"] == {"amount": 20}

    def test_list_changes_bad_status(self, client):
        response = client.get("/api/sync/u1/changes", params={"status": "stuck"})

        assert response.status_code == 400


class TestDrainEndpoints:
    """Tests for drain and retry."""

    def test_drain_with_remap(self, client):
        _enqueue(client, payload={"temp_id": "tmp-1", "amount": 10})

        response = client.post("/api/sync/u1/drain", params={"strategy": "client-wins"})

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["succeeded"] == 1
        result = data["results"][0]
        assert result["success"] is True
        assert result["remap"] == {"tmp-1": result["record_id"]}

    def test_drain_reports_conflicts(self, client, service):
        record = service.registry.resolve("earnings").create("u1", {"amount": 100})
        base = datetime.now(timezone.utc) - timedelta(hours=1)
        _enqueue(
            client,
            action="update",
            payload={"id": record.id, "amount": 150},
            enqueued_at=base.isoformat(),
        )

        response = client.post("/api/sync/u1/drain", params={"strategy": "manual"})

        result = response.json()["results"][0]
        assert result["success"] is True
        assert result["unresolved"] is True
        assert result["conflicts"] == [
            {
                "field": "amount",
                "client_value": 150,
                "server_value": 100,
                "resolution": "server",
            }
        ]

    def test_drain_requires_strategy(self, client):
        response = client.post("/api/sync/u1/drain")

        assert response.status_code == 422

    def test_drain_invalid_strategy(self, client):
        response = client.post("/api/sync/u1/drain", params={"strategy": "newest"})

        assert response.status_code == 400

    def test_retry(self, client, service):
        _enqueue(client, resource_type="notes")
        first = client.post("/api/sync/u1/drain", params={"strategy": "client-wins"})
        assert first.json()["results"][0]["error_code"] == "UnknownResource"

        response = client.post("/api/sync/u1/retry", params={"strategy": "client-wins"})

        assert response.status_code == 200
        assert response.json()["count"] == 1
        assert response.json()["succeeded"] == 0


class TestStatusEndpoints:
    """Tests for status and housekeeping."""

    def test_status(self, client):
        _enqueue(client)
        _enqueue(client, resource_type="notes")
        client.post("/api/sync/u1/drain", params={"strategy": "client-wins"})
        _enqueue(client)

        response = client.get("/api/sync/u1/status")

        assert response.json() == {
            "user_id": "u1",
            "pending": 1,
            "completed": 1,
            "failed": 1,
            "total": 3,
            "unresolved": 0,
        }

    def test_purge_completed(self, client):
        _enqueue(client)
        _enqueue(client, resource_type="notes")
        client.post("/api/sync/u1/drain", params={"strategy": "client-wins"})

        response = client.delete("/api/sync/u1/completed")

        assert response.json() == {"deleted": 1}
        assert client.get("/api/sync/u1/status").json()["failed"] == 1

    def test_purge_older_than(self, client):
        _enqueue(client)
        client.post("/api/sync/u1/drain", params={"strategy": "client-wins"})
        cutoff = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()

        response = client.delete("/api/sync/u1/completed", params={"older_than": cutoff})

        assert response.json() == {"deleted": 0}

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["node_name"] == "test-sync-node"
        assert "earnings" in data["resource_types"]


class TestConflictEndpoints:
    """Tests for listing and resolving conflicts kept by manual drains."""

    @pytest.fixture
    def conflicted(self, client, service):
        record = service.registry.resolve("earnings").create("u1", {"amount": 100})
        base = datetime.now(timezone.utc) - timedelta(hours=1)
        change_id = _enqueue(
            client,
            action="update",
            payload={"id": record.id, "amount": 150},
            enqueued_at=base.isoformat(),
        ).json()["id"]
        client.post("/api/sync/u1/drain", params={"strategy": "manual"})
        return record.id, change_id

    def test_list_conflicts(self, client, conflicted):
        _, change_id = conflicted

        response = client.get("/api/sync/u1/conflicts")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        change = data["changes"][0]
        assert change["id"] == change_id
        assert change["review_status"] == "unresolved"
        assert change["conflicts"][0]["field"] == "amount"
        assert client.get("/api/sync/u1/status").json()["unresolved"] == 1

    def test_resolve_with_values(self, client, service, conflicted):
        record_id, change_id = conflicted

        response = client.post(
            f"/api/sync/u1/conflicts/{change_id}/resolve",
            json={"values": {"amount": 150}, "note": "client was right"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["review_status"] == "resolved"
        assert data["review_resolution"] == {
            "values": {"amount": 150},
            "note": "client was right",
        }
        assert service.registry.resolve("earnings").fetch(record_id).get("amount") == 150
        assert client.get("/api/sync/u1/conflicts").json()["count"] == 0

    def test_resolve_unknown_field(self, client, conflicted):
        _, change_id = conflicted

        response = client.post(
            f"/api/sync/u1/conflicts/{change_id}/resolve", json={"values": {"total": 1}}
        )

        assert response.status_code == 400

    def test_resolve_twice_is_not_found(self, client, conflicted):
        _, change_id = conflicted
        url = f"/api/sync/u1/conflicts/{change_id}/resolve"

        assert client.post(url, json={}).status_code == 200
        assert client.post(url, json={}).status_code == 404

    def test_resolve_other_users_change(self, client, conflicted):
        _, change_id = conflicted

        response = client.post(f"/api/sync/u2/conflicts/{change_id}/resolve", json={})

        assert response.status_code == 404

    def test_purge_keeps_unresolved(self, client, conflicted):
        response = client.delete("/api/sync/u1/completed")

        assert response.json() == {"deleted": 0}
