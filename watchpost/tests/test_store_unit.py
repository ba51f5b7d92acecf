from datetime import datetime, timedelta, timezone

import pytest

from watchpost.internal_core.audit import log_event
from watchpost.internal_core.contracts import CrisisResolutionRecord, CrisisSessionRecord, LongitudinalStateRecord
from watchpost.internal_core.errors import PersistenceFailure
from watchpost.internal_core.store import (
    InMemoryCheckInStore,
    JsonFileCheckInStore,
    PersistenceRetryQueue,
    persist_or_queue,
)
from watchpost.longitudinal.compressor import LongitudinalState
from watchpost.risk.models import RiskTier

NOW = datetime(2026, 4, 2, 8, 30, tzinfo=timezone.utc)


def test_json_store_round_trips_state_and_crisis(tmp_path) -> None:
    store = JsonFileCheckInStore(tmp_path / "records")
    state = LongitudinalState(
        trajectory="worsening",
        primary_driver="sleep",
        check_in_count=2,
        narrative="Sleep poor.",
        last_updated=NOW,
        last_tier=RiskTier.MODERATE,
    )
    store.save_state("vet-1", LongitudinalStateRecord.from_state(state))
    store.save_crisis("vet-1", CrisisSessionRecord(started_at=NOW, status="active"))

    reopened = JsonFileCheckInStore(tmp_path / "records")
    assert reopened.load_state("vet-1").to_state() == state
    assert reopened.load_crisis("vet-1").started_at == NOW
    assert (tmp_path / "records" / "vet-1.json").exists()
    assert not (tmp_path / "records" / "vet-1.json.tmp").exists()


def test_resolution_sets_and_completes_follow_up() -> None:
    store = InMemoryCheckInStore()
    store.save_crisis("vet-1", CrisisSessionRecord(started_at=NOW))
    due = NOW + timedelta(hours=4)
    store.resolve_crisis(
        "vet-1",
        CrisisResolutionRecord(started_at=NOW, resolved_at=NOW + timedelta(minutes=10), follow_up_due_at=due),
    )

    assert store.load_crisis("vet-1") is None
    assert store.follow_up_due_at("vet-1") == due
    store.complete_follow_up("vet-1")
    assert store.follow_up_due_at("vet-1") is None


def test_invalid_user_id_is_rejected() -> None:
    store = InMemoryCheckInStore()
    with pytest.raises(ValueError):
        store.load_state("../etc/passwd")
    with pytest.raises(ValueError):
        store.list_check_ins("")


def test_audit_detail_is_flattened_and_capped() -> None:
    store = InMemoryCheckInStore()
    log_event(store, "vet-1", "state", "state_reset_user", "line one\nline two " + "x" * 300)
    event = store.list_audit_events("vet-1")[0]
    assert "\n" not in event.detail
    assert len(event.detail) == 203
    assert event.code == "state_reset_user"


def test_failed_write_is_queued_until_retry_succeeds() -> None:
    queue = PersistenceRetryQueue()
    attempts: list[int] = []

    def _write() -> None:
        attempts.append(1)
        if len(attempts) < 3:
            raise PersistenceFailure("disk unavailable")

    assert persist_or_queue(queue, "state:vet-1", _write) is False
    assert queue.descriptions() == ["state:vet-1"]
    assert queue.retry_pending() == 0
    assert len(queue) == 1
    assert queue.retry_pending() == 1
    assert len(queue) == 0
    assert len(attempts) == 3


def test_unwritable_root_raises_persistence_failure(tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = JsonFileCheckInStore(blocker)
    with pytest.raises(PersistenceFailure):
        store.save_crisis("vet-1", CrisisSessionRecord(started_at=NOW))


def test_corrupt_record_raises_persistence_failure(tmp_path) -> None:
    store = JsonFileCheckInStore(tmp_path)
    (tmp_path / "vet-1.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(PersistenceFailure):
        store.load_state("vet-1")
    with pytest.raises(PersistenceFailure):
        store.save_crisis("vet-1", CrisisSessionRecord(started_at=NOW))


def test_newer_write_supersedes_queued_snapshot() -> None:
    queue = PersistenceRetryQueue()
    written: list[str] = []

    def _failing() -> None:
        raise PersistenceFailure("disk unavailable")

    assert persist_or_queue(queue, "state:vet-1", _failing) is False
    assert persist_or_queue(queue, "state:vet-1", lambda: written.append("newer")) is True
    assert len(queue) == 0
    assert queue.retry_pending() == 0
    assert written == ["newer"]


def test_requeue_keeps_only_latest_snapshot_per_key() -> None:
    queue = PersistenceRetryQueue()
    written: list[str] = []
    queue.add("state:vet-1", lambda: written.append("old"))
    queue.add("crisis:vet-1", lambda: written.append("crisis"))
    queue.add("state:vet-1", lambda: written.append("new"))

    assert queue.descriptions() == ["crisis:vet-1", "state:vet-1"]
    assert queue.retry_pending() == 2
    assert written == ["crisis", "new"]


def test_pending_writes_are_replayed_ahead_of_the_next_write() -> None:
    queue = PersistenceRetryQueue()
    written: list[str] = []
    queue.add("check_in:vet-1:a", lambda: written.append("a"))

    assert persist_or_queue(queue, "check_in:vet-1:b", lambda: written.append("b")) is True
    assert written == ["a", "b"]
    assert len(queue) == 0
