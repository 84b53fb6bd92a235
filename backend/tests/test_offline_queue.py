"""Tests for the durable offline queue."""
import pytest

from herdsync.models.queue_item import QueueStatus
from herdsync.services.offline_queue import OfflineQueue


def _milk(farm_id="farm-1"):
    return {
        "type": "bulk_milk",
        "payload": {
            "farm_id": farm_id,
            "milk_records": [
                {"animal_id": "a1", "liters": 12.5, "record_date": "2026-10-01", "session": "AM"},
            ],
        },
    }


def test_enqueue_defaults(queue):
    """New items start pending with zero retries and a generated optimistic id."""
    optimistic_id = queue.enqueue(_milk())
    items = queue.list_all()
    assert len(items) == 1
    item = items[0]
    assert item.optimistic_id == optimistic_id
    assert item.status == QueueStatus.PENDING.value
    assert item.retries == 0
    assert item.error is None
    assert item.created_at > 0
    assert item.payload["farm_id"] == "farm-1"


def test_enqueue_keeps_given_optimistic_id(queue):
    optimistic_id = queue.enqueue({**_milk(), "optimistic_id": "opt-123", "id": "item-1"})
    assert optimistic_id == "opt-123"
    assert queue.get("item-1").optimistic_id == "opt-123"


def test_pending_count_increases_on_enqueue(queue):
    before = queue.get_pending_count()
    queue.enqueue(_milk())
    assert queue.get_pending_count() == before + 1
    assert queue.get_queue_count() == 1


def test_list_pending_ordered_by_creation(queue):
    queue.enqueue({**_milk(), "id": "late", "created_at": 3000})
    queue.enqueue({**_milk(), "id": "early", "created_at": 1000})
    queue.enqueue({**_milk(), "id": "middle", "created_at": 2000})
    assert [i.id for i in queue.list_pending()] == ["early", "middle", "late"]


def test_eviction_removes_exactly_the_oldest_item(session_factory):
    """At capacity one item, the oldest by created_at, is evicted whatever its status."""
    queue = OfflineQueue(session_factory=session_factory, max_size=3)
    queue.enqueue({**_milk(), "id": "oldest", "created_at": 1000})
    queue.enqueue({**_milk(), "id": "second", "created_at": 2000})
    queue.enqueue({**_milk(), "id": "third", "created_at": 3000})
    queue.set_status("oldest", "processing")

    queue.enqueue({**_milk(), "id": "newest", "created_at": 4000})

    ids = [i.id for i in queue.list_all()]
    assert ids == ["second", "third", "newest"]
    assert queue.get_queue_count() == 3


def test_set_status_stamps_processed_at_on_terminal_states(queue):
    queue.enqueue({**_milk(), "id": "i1"})
    queue.set_status("i1", "processing")
    assert queue.get("i1").processed_at is None

    queue.set_status("i1", QueueStatus.FAILED, "Network timeout")
    item = queue.get("i1")
    assert item.status == "failed"
    assert item.error == "Network timeout"
    assert item.processed_at is not None


def test_set_status_rejects_unknown_status(queue):
    queue.enqueue({**_milk(), "id": "i1"})
    with pytest.raises(ValueError):
        queue.set_status("i1", "archived")


def test_missing_ids_are_noops(queue):
    queue.set_status("missing", "completed")
    queue.remove("missing")
    queue.reset_for_retry("missing")
    queue.update_payload("missing", {"x": 1})
    queue.confirm_transcription("missing", "text")
    assert queue.increment_retries("missing") == 0
    assert queue.get("missing") is None


def test_increment_retries_is_monotonic(queue):
    queue.enqueue({**_milk(), "id": "i1"})
    assert queue.increment_retries("i1") == 1
    assert queue.increment_retries("i1") == 2
    assert queue.get("i1").retries == 2


def test_clear_completed_only_removes_completed(queue):
    queue.enqueue({**_milk(), "id": "done", "created_at": 1})
    queue.enqueue({**_milk(), "id": "open", "created_at": 2})
    queue.set_status("done", "completed")
    assert queue.clear_completed() == 1
    assert [i.id for i in queue.list_all()] == ["open"]


def test_reset_all_failed(queue):
    """Two failed and one pending item: two resets, all three pending and clean."""
    for item_id in ("f1", "f2", "p1"):
        queue.enqueue({**_milk(), "id": item_id})
    for item_id in ("f1", "f2"):
        queue.increment_retries(item_id)
        queue.increment_retries(item_id)
        queue.increment_retries(item_id)
        queue.set_status(item_id, "failed", "Server unavailable")

    assert queue.reset_all_failed() == 2
    for item in queue.list_all():
        assert item.status == "pending"
        assert item.retries == 0
        assert item.error is None
    assert queue.list_failed() == []


def test_reset_for_retry_single_item(queue):
    queue.enqueue({**_milk(), "id": "i1"})
    queue.increment_retries("i1")
    queue.set_status("i1", "failed", "boom")
    queue.reset_for_retry("i1")
    item = queue.get("i1")
    assert (item.status, item.retries, item.error) == ("pending", 0, None)


def test_update_payload_merges_shallowly(queue):
    queue.enqueue({**_milk(), "id": "i1"})
    queue.update_payload("i1", {"transcription": "fed the calves"})
    payload = queue.get("i1").payload
    assert payload["transcription"] == "fed the calves"
    assert payload["farm_id"] == "farm-1"
    assert len(payload["milk_records"]) == 1


def test_update_item_rejects_unknown_field(queue):
    queue.enqueue({**_milk(), "id": "i1"})
    queue.update_item("i1", server_response={"id": "srv-1"})
    assert queue.get("i1").server_response == {"id": "srv-1"}
    with pytest.raises(AttributeError):
        queue.update_item("i1", not_a_column=True)


def test_transcription_confirmation_flow(queue):
    queue.enqueue({"type": "voice_activity", "id": "v1", "payload": {"farm_id": "farm-1", "audio_base64": "UklGR"}})
    queue.increment_retries("v1")

    queue.set_awaiting_confirmation("v1", "milked bessie 12 liters")
    item = queue.get("v1")
    assert item.status == "awaiting_confirmation"
    assert item.payload["transcription"] == "milked bessie 12 liters"
    assert item.retries == 0
    assert queue.list_pending() == []

    queue.confirm_transcription("v1", "milked Bessie 12 liters")
    item = queue.get("v1")
    assert item.status == "pending"
    assert item.payload["transcription"] == "milked Bessie 12 liters"
    assert item.payload["transcription_confirmed"] is True


class TestBackgroundSyncRequest:
    def setup_method(self):
        self.requests = 0

    def _request(self):
        self.requests += 1

    def test_requested_when_online(self, session_factory):
        queue = OfflineQueue(session_factory, is_online=lambda: True, sync_requester=self._request)
        queue.enqueue(_milk())
        assert self.requests == 1

    def test_not_requested_when_offline(self, session_factory):
        queue = OfflineQueue(session_factory, is_online=lambda: False, sync_requester=self._request)
        queue.enqueue(_milk())
        assert self.requests == 0

    def test_requester_failure_does_not_affect_enqueue(self, session_factory):
        def broken():
            raise RuntimeError("worker unavailable")

        queue = OfflineQueue(session_factory, is_online=lambda: True, sync_requester=broken)
        optimistic_id = queue.enqueue(_milk())
        assert optimistic_id
        assert queue.get_pending_count() == 1


def test_default_store_uses_memoized_engine():
    """Without an injected session factory the queue uses the module engine."""
    from herdsync.models.base import get_engine, init_db, reset_engine

    reset_engine("sqlite:///:memory:")
    try:
        init_db()
        assert get_engine() is get_engine()
        queue = OfflineQueue(max_size=5)
        queue.enqueue(_milk())
        assert queue.get_pending_count() == 1
    finally:
        reset_engine()


def test_enqueue_always_starts_pending(queue):
    queue.enqueue({**_milk(), "id": "i1", "status": "completed"})
    assert queue.get("i1").status == "pending"
    assert queue.get_pending_count() == 1


def test_enqueue_keeps_zero_created_at(queue):
    queue.enqueue({**_milk(), "id": "i1", "created_at": 0})
    assert queue.get("i1").created_at == 0
