from __future__ import annotations

"""
Crisis holding pattern.

Design intent:
- The only timer state is the persisted start timestamp. Remaining time is derived
  from wall-clock deltas on every read, so a restart cannot reset the window.
- Transitions are explicit; every one is persisted and audited before returning.
- The re-check timer is an asyncio task owned by the machine and always cancellable.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Literal, Optional, Protocol

from watchpost.internal_core.audit import log_event
from watchpost.internal_core.contracts import CrisisResolutionRecord, CrisisSessionRecord, CrisisStatus
from watchpost.internal_core.errors import PersistenceFailure
from watchpost.internal_core.store import CheckInStore, PersistenceRetryQueue, persist_or_queue

logger = logging.getLogger(__name__)

RecheckResponse = Literal["more_stable", "about_the_same", "worse"]

DEFAULT_WINDOW_SEC = 600
DEFAULT_FOLLOW_UP_HOURS = 4

ESCALATION_TITLE = "You don't have to face this alone."
ESCALATION_MESSAGE = (
    "Call 988 and press 1 for the Veterans Crisis Line, or text 838255. "
    "Trained counselors are available 24/7."
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def remaining_seconds(window_sec: float, started_at: Optional[datetime], now: datetime) -> float:
    """Seconds left in the holding window; never negative."""
    if started_at is None:
        return float(window_sec)
    elapsed = (now - started_at).total_seconds()
    return max(0.0, float(window_sec) - elapsed)


@dataclass(frozen=True)
class EscalationPrompt:
    title: str = ESCALATION_TITLE
    message: str = ESCALATION_MESSAGE
    call_number: str = "988"
    text_number: str = "838255"


@dataclass(frozen=True)
class CrisisView:
    status: CrisisStatus
    started_at: Optional[datetime]
    remaining_sec: float
    loop_count: int
    escalation: Optional[EscalationPrompt] = None
    follow_up_due_at: Optional[datetime] = None


class ContactNotifier(Protocol):
    def notify_missed_follow_up(self, user_id: str, due_at: Optional[datetime]) -> None: ...


class LoggingNotifier:
    """Default notifier; delivery to the trusted contact lives outside this process."""

    def notify_missed_follow_up(self, user_id: str, due_at: Optional[datetime]) -> None:
        logger.warning("Missed mandatory follow-up for user=%s (due %s); contact notified", user_id, due_at)


class CrisisStateMachine:
    def __init__(
        self,
        store: CheckInStore,
        user_id: str,
        *,
        window_sec: int = DEFAULT_WINDOW_SEC,
        follow_up_hours: int = DEFAULT_FOLLOW_UP_HOURS,
        clock: Callable[[], datetime] = utc_now,
        notifier: Optional[ContactNotifier] = None,
        retry_queue: Optional[PersistenceRetryQueue] = None,
    ):
        self._store = store
        self._user_id = user_id
        self._window_sec = int(window_sec)
        self._follow_up = timedelta(hours=follow_up_hours)
        self._clock = clock
        self._notifier: ContactNotifier = notifier or LoggingNotifier()
        self._retry_queue = retry_queue or PersistenceRetryQueue()
        self._timer: Optional[asyncio.Task] = None
        self._session: Optional[CrisisSessionRecord] = self._load_session()
        self._escalation: Optional[EscalationPrompt] = None
        if self._session is not None and self._session.status == "escalated":
            self._escalation = EscalationPrompt()

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def window_sec(self) -> int:
        return self._window_sec

    @property
    def in_crisis(self) -> bool:
        return self._session is not None

    def remaining(self) -> float:
        started = self._session.started_at if self._session is not None else None
        return remaining_seconds(self._window_sec, started, self._clock())

    @property
    def status(self) -> CrisisStatus:
        if self._session is None:
            return "resolved"
        if self._session.status in {"active", "stabilizing"} and self.remaining() <= 0:
            return "recheck"
        return self._session.status

    def view(self) -> CrisisView:
        return CrisisView(
            status=self.status,
            started_at=self._session.started_at if self._session is not None else None,
            remaining_sec=self.remaining(),
            loop_count=self._session.loop_count if self._session is not None else 0,
            escalation=self._escalation,
            follow_up_due_at=self._follow_up_due(),
        )

    def _load_session(self) -> Optional[CrisisSessionRecord]:
        try:
            return self._store.load_crisis(self._user_id)
        except PersistenceFailure as exc:
            logger.error("Crisis session unreadable for user=%s: %s %s", self._user_id, exc.message, exc.detail)
            return None

    def _follow_up_due(self) -> Optional[datetime]:
        try:
            return self._store.follow_up_due_at(self._user_id)
        except PersistenceFailure as exc:
            logger.error("Follow-up record unreadable for user=%s: %s %s", self._user_id, exc.message, exc.detail)
            return None

    def _persist(self, session: CrisisSessionRecord) -> None:
        self._session = session
        persist_or_queue(
            self._retry_queue,
            f"crisis:{self._user_id}",
            lambda: self._store.save_crisis(self._user_id, session),
        )

    def _audit(self, code: str, detail: str = "") -> None:
        log_event(self._store, self._user_id, "crisis", code, detail, retry_queue=self._retry_queue)

    def enter_crisis(self) -> CrisisView:
        """Start the holding window, or resume it from the persisted start."""
        persisted = self._load_session()
        if persisted is not None:
            self._session = persisted
            logger.info("Crisis resumed for user=%s (remaining %.0fs)", self._user_id, self.remaining())
        else:
            self._escalation = None
            self._persist(CrisisSessionRecord(started_at=self._clock(), status="active"))
            self._audit("crisis_entered", f"window_sec={self._window_sec}")
            logger.info("Crisis entered for user=%s (window %ds)", self._user_id, self._window_sec)
        return self.view()

    def recheck(self, response: RecheckResponse) -> CrisisView:
        if self._session is None:
            raise ValueError("No active crisis session to re-check.")

        if response == "more_stable":
            logger.info("Crisis recheck for user=%s: more stable", self._user_id)
            return self.resolve_crisis(self._session.started_at, self._clock())

        if response == "about_the_same":
            # stabilizing is a pass-through step: the fresh window is active again.
            logger.info("Crisis recheck for user=%s: about the same, fresh window", self._user_id)
            self.cancel_timer()
            self._persist(
                CrisisSessionRecord(
                    started_at=self._clock(),
                    status="active",
                    loop_count=self._session.loop_count + 1,
                )
            )
            self._audit("crisis_stabilizing", f"loop={self._session.loop_count} status=active")
            return self.view()

        if response == "worse":
            logger.warning("Crisis recheck for user=%s: worse, escalating", self._user_id)
            self.cancel_timer()
            now = self._clock()
            self._persist(
                CrisisSessionRecord(
                    started_at=self._session.started_at,
                    status="escalated",
                    loop_count=self._session.loop_count,
                    escalated_at=now,
                )
            )
            self._escalation = EscalationPrompt()
            self._audit("crisis_escalated")
            return self.view()

        raise ValueError(f"Unknown recheck response: {response!r}")

    def resolve_crisis(self, started_at: Optional[datetime] = None, ended_at: Optional[datetime] = None) -> CrisisView:
        """Record start/end, clear the crisis timestamp and schedule the mandatory follow-up."""
        self.cancel_timer()
        now = self._clock()
        start = started_at or (self._session.started_at if self._session is not None else now)
        end = ended_at or now
        resolution = CrisisResolutionRecord(
            started_at=start,
            resolved_at=end,
            follow_up_due_at=end + self._follow_up,
        )
        persist_or_queue(
            self._retry_queue,
            f"crisis:{self._user_id}",
            lambda: self._store.resolve_crisis(self._user_id, resolution),
        )
        self._session = None
        self._escalation = None
        self._audit("crisis_resolved", f"duration_sec={int((end - start).total_seconds())}")
        logger.info("Crisis resolved for user=%s", self._user_id)
        return self.view()

    def check_follow_up(self) -> bool:
        """True when a mandatory follow-up is past due and was handled as missed."""
        due = self._follow_up_due()
        if due is None or self._clock() < due:
            return False
        self.handle_missed_follow_up()
        return True

    def complete_follow_up(self) -> None:
        persist_or_queue(
            self._retry_queue,
            f"follow-up:{self._user_id}",
            lambda: self._store.complete_follow_up(self._user_id),
        )
        self._audit("follow_up_completed")

    def handle_missed_follow_up(self) -> CrisisView:
        """Re-enter the holding window with a fresh start and notify the contact."""
        due = self._follow_up_due()
        self.cancel_timer()
        loop_count = self._session.loop_count if self._session is not None else 0
        self._persist(CrisisSessionRecord(started_at=self._clock(), status="active", loop_count=loop_count))
        persist_or_queue(
            self._retry_queue,
            f"follow-up:{self._user_id}",
            lambda: self._store.complete_follow_up(self._user_id),
        )
        self._notifier.notify_missed_follow_up(self._user_id, due)
        self._audit("follow_up_missed")
        return self.view()

    def schedule_recheck(self, on_recheck: Callable[[CrisisView], Awaitable[None]]) -> Optional[asyncio.Task]:
        """Sleep for the derived remaining time, then call `on_recheck`. Needs a running loop."""
        self.cancel_timer()
        if self._session is None:
            return None

        async def _wait() -> None:
            delay = self.remaining()
            if delay > 0:
                await asyncio.sleep(delay)
            await on_recheck(self.view())

        self._timer = asyncio.get_running_loop().create_task(_wait())
        return self._timer

    def cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
