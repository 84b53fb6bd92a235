"""Tests for the HTTP API (services overridden per test; lifespan started only where noted)."""
import asyncio
import logging
from concurrent.futures import Future

import httpx
import pytest
from fastapi.testclient import TestClient

from herdsync.core.dependencies import (
    get_conflict_detector,
    get_connectivity,
    get_processor,
    get_queue,
)
from herdsync import main
from herdsync.main import _log_background_failure, app
from herdsync.models.base import now_ms, reset_engine

BULK_MILK = {
    "type": "bulk_milk",
    "payload": {
        "farm_id": "farm-1",
        "milk_records": [
            {"animal_id": "a1", "liters": 11.0, "record_date": "2026-10-01", "session": "PM"},
        ],
    },
}


@pytest.fixture()
def client(queue, processor, detector, connectivity):
    app.dependency_overrides[get_queue] = lambda: queue
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_conflict_detector] = lambda: detector
    app.dependency_overrides[get_connectivity] = lambda: connectivity
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health_check(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


class TestQueueEndpoints:
    def test_enqueue_and_count(self, client):
        resp = client.post("/api/v1/queue/", json={**BULK_MILK, "optimistic_id": "opt-1"})
        assert resp.status_code == 201
        assert resp.json() == {"optimistic_id": "opt-1"}

        counts = client.get("/api/v1/queue/count").json()
        assert counts == {"pending": 1, "total": 1}

        [item] = client.get("/api/v1/queue/pending").json()
        assert item["optimistic_id"] == "opt-1"
        assert item["status"] == "pending"
        assert item["retries"] == 0

    def test_enqueue_runs_off_the_event_loop(self, client, queue):
        seen = []

        def requester():
            try:
                asyncio.get_running_loop()
                seen.append("event loop")
            except RuntimeError:
                seen.append("worker thread")

        queue.is_online = lambda: True
        queue.sync_requester = requester
        assert client.post("/api/v1/queue/", json=BULK_MILK).status_code == 201
        assert seen == ["worker thread"]

    def test_enqueue_rejects_unknown_type(self, client):
        resp = client.post("/api/v1/queue/", json={"type": "teleport", "payload": {}})
        assert resp.status_code == 400

    def test_enqueue_requires_payload(self, client):
        resp = client.post("/api/v1/queue/", json={"type": "bulk_milk"})
        assert resp.status_code == 422

    def test_manual_sync(self, client, queue):
        client.post("/api/v1/queue/", json={**BULK_MILK, "id": "m1"})

        resp = client.post("/api/v1/queue/sync")

        assert resp.status_code == 200
        body = resp.json()
        assert body["succeeded"] == 1
        assert body["stopped_offline"] is False
        assert queue.get("m1").status == "completed"

        assert client.delete("/api/v1/queue/completed").json() == {"removed": 1}
        assert client.get("/api/v1/queue/").json() == []

    def test_retry_and_failed_listing(self, client, queue):
        client.post("/api/v1/queue/", json={**BULK_MILK, "id": "m1"})
        queue.increment_retries("m1")
        queue.set_status("m1", "failed", "Server unavailable")

        [failed] = client.get("/api/v1/queue/failed").json()
        assert failed["error"] == "Server unavailable"

        assert client.post("/api/v1/queue/m1/retry").status_code == 200
        item = queue.get("m1")
        assert (item.status, item.retries, item.error) == ("pending", 0, None)

    def test_retry_all_failed(self, client, queue):
        for item_id in ("a", "b"):
            client.post("/api/v1/queue/", json={**BULK_MILK, "id": item_id})
            queue.set_status(item_id, "failed", "boom")
        assert client.post("/api/v1/queue/retry-failed").json() == {"reset_count": 2}

    def test_confirm_transcription(self, client, queue):
        client.post("/api/v1/queue/", json={
            "id": "v1",
            "type": "voice_activity",
            "payload": {"farm_id": "farm-1", "audio_base64": "UklGR"},
        })
        queue.set_awaiting_confirmation("v1", "milked bessy")

        resp = client.post("/api/v1/queue/v1/confirm-transcription", json={"transcription": "milked Bessie"})

        assert resp.status_code == 200
        item = queue.get("v1")
        assert item.status == "pending"
        assert item.payload["transcription"] == "milked Bessie"
        assert item.payload["transcription_confirmed"] is True

    def test_remove_item(self, client, queue):
        client.post("/api/v1/queue/", json={**BULK_MILK, "id": "m1"})
        assert client.delete("/api/v1/queue/m1").status_code == 204
        assert queue.get("m1") is None


class TestConflictEndpoints:
    def test_list_and_resolve(self, client, detector, backend):
        conflict_id = detector.record_conflict(
            "farm-1", "animals", "animal-1", {"name": "Client"}, {"name": "Server"}
        )

        [conflict] = client.get("/api/v1/conflicts/farm/farm-1").json()
        assert conflict["id"] == conflict_id
        assert conflict["resolution"] == "pending"
        assert client.get("/api/v1/conflicts/farm/farm-1/count").json() == {"count": 1}

        resp = client.post(f"/api/v1/conflicts/{conflict_id}/resolve", json={"strategy": "client_wins"})

        assert resp.status_code == 200
        assert resp.json()["resolution"] == "client_wins"
        assert backend.calls("PATCH", "/rest/v1/animals") == [{"name": "Client"}]
        assert client.get("/api/v1/conflicts/farm/farm-1").json() == []

    def test_invalid_strategy(self, client, detector):
        conflict_id = detector.record_conflict("farm-1", "animals", "a1", {}, {})
        resp = client.post(f"/api/v1/conflicts/{conflict_id}/resolve", json={"strategy": "coin_flip"})
        assert resp.status_code == 400

    def test_unknown_conflict(self, client):
        resp = client.post("/api/v1/conflicts/missing/resolve", json={"strategy": "server_wins"})
        assert resp.status_code == 404

    def test_backend_failure(self, client, detector, backend):
        backend.on("PATCH", "/rest/v1/animals", httpx.Response(503, json={"message": "down"}))
        conflict_id = detector.record_conflict("farm-1", "animals", "a1", {"name": "C"}, {"name": "S"})
        resp = client.post(f"/api/v1/conflicts/{conflict_id}/resolve", json={"strategy": "client_wins"})
        assert resp.status_code == 502


class TestSyncAlertEndpoints:
    def _stuck_item(self, client, item_id="old", farm_id="farm-1"):
        client.post("/api/v1/queue/", json={
            **BULK_MILK,
            "id": item_id,
            "created_at": now_ms() - 61 * 60 * 1000,
            "payload": {**BULK_MILK["payload"], "farm_id": farm_id},
        })

    def test_alerts_with_colors(self, client):
        self._stuck_item(client)
        [alert] = client.get("/api/v1/sync-alerts/", params={"farm_id": "farm-1"}).json()
        assert alert["type"] == "stuck_items"
        assert alert["severity"] == "warning"
        assert alert["count"] == 1
        assert alert["details"] == ["old"]
        assert alert["colors"]["text"] == "text-yellow-700"

    def test_stuck_items(self, client):
        self._stuck_item(client)
        self._stuck_item(client, "other", farm_id="farm-2")
        stuck = client.get("/api/v1/sync-alerts/stuck", params={"farm_id": "farm-2"}).json()
        assert [s["id"] for s in stuck] == ["other"]
        assert stuck[0]["age_minutes"] >= 61

    def test_health_with_diagnostics(self, client, connectivity):
        self._stuck_item(client)
        client.post("/api/v1/connectivity", params={"online": "false"})

        body = client.get("/api/v1/sync-alerts/health", params={"farm_id": "farm-1"}).json()

        assert body["overall"] == "warning"
        assert body["online"] is False
        assert body["queue"]["stuck_count"] == 1
        assert body["has_unresolved_conflicts"] is False
        severities = {d["severity"] for d in body["diagnostics"]}
        assert severities == {"info", "warning"}


def test_reconnect_reported_by_client(client, connectivity):
    reconnects = []
    connectivity.on_reconnect(lambda: reconnects.append(True))

    assert client.post("/api/v1/connectivity", params={"online": "false"}).json() == {"online": False}
    assert client.post("/api/v1/connectivity", params={"online": "true"}).json() == {"online": True}
    assert reconnects == [True]


def test_background_sync_failure_is_logged(caplog):
    failed = Future()
    failed.set_exception(RuntimeError("backend went away"))
    cancelled = Future()
    cancelled.cancel()

    with caplog.at_level(logging.WARNING, logger="herdsync.main"):
        _log_background_failure(failed)
        _log_background_failure(cancelled)

    [record] = caplog.records
    assert "backend went away" in record.getMessage()


def test_lifespan_removes_reconnect_listener_on_shutdown(monkeypatch):
    monkeypatch.setattr(main.settings, "SYNC_INTERVAL_SECONDS", 0)
    monkeypatch.setattr(main.connectivity_monitor, "remote", None)
    monkeypatch.setattr(main.offline_queue, "is_online", main.offline_queue.is_online)
    before = len(main.connectivity_monitor._on_reconnect)
    reset_engine("sqlite:///:memory:")
    try:
        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            assert len(main.connectivity_monitor._on_reconnect) == before + 1
            assert main.offline_queue.sync_requester is not None
        assert len(main.connectivity_monitor._on_reconnect) == before
        assert main.offline_queue.sync_requester is None
    finally:
        reset_engine()
