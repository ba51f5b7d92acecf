import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from watchpost.crisis.state_machine import CrisisStateMachine, remaining_seconds
from watchpost.internal_core.store import InMemoryCheckInStore

START = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list = []

    def notify_missed_follow_up(self, user_id, due_at) -> None:
        self.calls.append((user_id, due_at))


def _codes(store, user_id: str = "vet-1") -> list[str]:
    return [event.code for event in store.list_audit_events(user_id)]


def test_remaining_seconds_is_derived_and_never_negative() -> None:
    assert remaining_seconds(600, START, START + timedelta(seconds=180)) == 420
    assert remaining_seconds(600, START, START + timedelta(seconds=900)) == 0
    assert remaining_seconds(600, None, START) == 600


def test_enter_crisis_persists_start_and_counts_down() -> None:
    store = InMemoryCheckInStore()
    clock = FakeClock()
    machine = CrisisStateMachine(store, "vet-1", clock=clock)

    view = machine.enter_crisis()
    assert view.status == "active"
    assert view.remaining_sec == 600
    assert store.load_crisis("vet-1").started_at == START

    clock.advance(180)
    assert machine.remaining() == 420
    assert machine.status == "active"
    assert _codes(store) == ["crisis_entered"]


def test_restart_resumes_window_from_persisted_start() -> None:
    store = InMemoryCheckInStore()
    clock = FakeClock()
    CrisisStateMachine(store, "vet-1", clock=clock).enter_crisis()
    clock.advance(180)

    restarted = CrisisStateMachine(store, "vet-1", clock=clock)
    assert restarted.in_crisis is True
    assert restarted.remaining() == 420

    view = restarted.enter_crisis()
    assert view.started_at == START
    assert view.remaining_sec == 420
    assert _codes(store).count("crisis_entered") == 1


def test_expired_window_reads_as_recheck() -> None:
    store = InMemoryCheckInStore()
    clock = FakeClock()
    machine = CrisisStateMachine(store, "vet-1", clock=clock)
    machine.enter_crisis()
    clock.advance(601)
    assert machine.status == "recheck"
    assert machine.view().remaining_sec == 0


def test_about_the_same_reenters_active_with_fresh_window() -> None:
    store = InMemoryCheckInStore()
    clock = FakeClock()
    machine = CrisisStateMachine(store, "vet-1", clock=clock)
    machine.enter_crisis()
    clock.advance(600)

    view = machine.recheck("about_the_same")
    assert view.status == "active"
    assert view.loop_count == 1
    assert view.remaining_sec == 600
    persisted = store.load_crisis("vet-1")
    assert persisted.started_at == clock.now
    assert persisted.status == "active"
    assert "crisis_stabilizing" in _codes(store)

    clock.advance(600)
    assert machine.status == "recheck"


def test_worse_escalates_with_crisis_line_prompt() -> None:
    store = InMemoryCheckInStore()
    clock = FakeClock()
    machine = CrisisStateMachine(store, "vet-1", clock=clock)
    machine.enter_crisis()
    clock.advance(600)

    view = machine.recheck("worse")
    assert view.status == "escalated"
    assert view.escalation is not None
    assert view.escalation.call_number == "988"
    assert view.escalation.text_number == "838255"
    assert store.load_crisis("vet-1").escalated_at == clock.now

    reloaded = CrisisStateMachine(store, "vet-1", clock=clock)
    assert reloaded.status == "escalated"
    assert reloaded.view().escalation is not None


def test_more_stable_resolves_and_schedules_follow_up() -> None:
    store = InMemoryCheckInStore()
    clock = FakeClock()
    machine = CrisisStateMachine(store, "vet-1", clock=clock)
    machine.enter_crisis()
    clock.advance(600)

    view = machine.recheck("more_stable")
    assert view.status == "resolved"
    assert machine.in_crisis is False
    assert store.load_crisis("vet-1") is None
    resolutions = store.list_resolutions("vet-1")
    assert len(resolutions) == 1
    assert resolutions[0].started_at == START
    assert resolutions[0].resolved_at == clock.now
    assert view.follow_up_due_at == clock.now + timedelta(hours=4)
    assert "crisis_resolved" in _codes(store)


def test_recheck_without_session_is_rejected() -> None:
    machine = CrisisStateMachine(InMemoryCheckInStore(), "vet-1", clock=FakeClock())
    with pytest.raises(ValueError):
        machine.recheck("worse")


def test_missed_follow_up_reenters_crisis_and_notifies() -> None:
    store = InMemoryCheckInStore()
    clock = FakeClock()
    notifier = RecordingNotifier()
    machine = CrisisStateMachine(store, "vet-1", clock=clock, notifier=notifier)
    machine.enter_crisis()
    machine.resolve_crisis()
    due = START + timedelta(hours=4)

    clock.advance(3600)
    assert machine.check_follow_up() is False

    clock.advance(3 * 3600 + 1)
    assert machine.check_follow_up() is True
    assert notifier.calls == [("vet-1", due)]
    assert machine.status == "active"
    assert machine.view().remaining_sec == 600
    assert store.follow_up_due_at("vet-1") is None
    assert "follow_up_missed" in _codes(store)


def test_completed_follow_up_is_not_treated_as_missed() -> None:
    store = InMemoryCheckInStore()
    clock = FakeClock()
    notifier = RecordingNotifier()
    machine = CrisisStateMachine(store, "vet-1", clock=clock, notifier=notifier)
    machine.enter_crisis()
    machine.resolve_crisis()

    machine.complete_follow_up()
    clock.advance(5 * 3600)
    assert machine.check_follow_up() is False
    assert notifier.calls == []
    assert "follow_up_completed" in _codes(store)


def test_resolve_records_explicit_times() -> None:
    store = InMemoryCheckInStore()
    clock = FakeClock()
    machine = CrisisStateMachine(store, "vet-1", clock=clock, follow_up_hours=2)
    machine.enter_crisis()
    end = START + timedelta(minutes=15)

    machine.resolve_crisis(START, end)
    assert store.list_resolutions("vet-1")[0].follow_up_due_at == end + timedelta(hours=2)
    assert store.list_audit_events("vet-1")[-1].detail == "duration_sec=900"


def test_recheck_timer_fires_after_window_and_can_be_cancelled() -> None:
    store = InMemoryCheckInStore()
    clock = FakeClock()
    seen: list[str] = []

    async def _on_recheck(view) -> None:
        seen.append(view.status)

    async def _run() -> bool:
        machine = CrisisStateMachine(store, "vet-1", clock=clock)
        machine.enter_crisis()
        pending = machine.schedule_recheck(_on_recheck)
        await asyncio.sleep(0)
        machine.cancel_timer()
        try:
            await pending
        except asyncio.CancelledError:
            cancelled = True
        else:
            cancelled = False

        clock.advance(600)
        await machine.schedule_recheck(_on_recheck)
        return cancelled

    assert asyncio.run(_run()) is True
    assert seen == ["recheck"]


def test_timer_not_scheduled_without_session() -> None:
    async def _run():
        machine = CrisisStateMachine(InMemoryCheckInStore(), "vet-1", clock=FakeClock())
        return machine.schedule_recheck(lambda view: asyncio.sleep(0))

    assert asyncio.run(_run()) is None
