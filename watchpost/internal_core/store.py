from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Callable, Dict, List, Optional

from .contracts import (
    AuditEvent,
    CheckInRecord,
    CrisisResolutionRecord,
    CrisisSessionRecord,
    LongitudinalStateRecord,
    UserDocument,
)
from .errors import PersistenceFailure

logger = logging.getLogger(__name__)

_USER_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


class CheckInStore(ABC):
    """Per-user record of longitudinal state, check-ins and crisis timestamps."""

    def __init__(self) -> None:
        self._lock = RLock()

    @abstractmethod
    def _read(self, user_id: str) -> Optional[UserDocument]: ...

    @abstractmethod
    def _write(self, document: UserDocument) -> None: ...

    def _load(self, user_id: str) -> UserDocument:
        if not _USER_ID_RE.match(user_id or ""):
            raise ValueError(f"Invalid user_id: {user_id!r}")
        return self._read(user_id) or UserDocument(user_id=user_id)

    def _mutate(self, user_id: str, change: Callable[[UserDocument], None]) -> None:
        with self._lock:
            document = self._load(user_id)
            change(document)
            self._write(document)

    def load_state(self, user_id: str) -> Optional[LongitudinalStateRecord]:
        with self._lock:
            return self._load(user_id).longitudinal_state

    def save_state(self, user_id: str, record: LongitudinalStateRecord) -> None:
        self._mutate(user_id, lambda doc: setattr(doc, "longitudinal_state", record))

    def clear_state(self, user_id: str) -> None:
        self._mutate(user_id, lambda doc: setattr(doc, "longitudinal_state", None))

    def append_check_in(self, record: CheckInRecord) -> None:
        self._mutate(record.user_id, lambda doc: doc.check_ins.append(record))

    def list_check_ins(self, user_id: str) -> List[CheckInRecord]:
        with self._lock:
            return list(self._load(user_id).check_ins)

    def load_crisis(self, user_id: str) -> Optional[CrisisSessionRecord]:
        with self._lock:
            return self._load(user_id).crisis_session

    def save_crisis(self, user_id: str, record: CrisisSessionRecord) -> None:
        self._mutate(user_id, lambda doc: setattr(doc, "crisis_session", record))

    def resolve_crisis(self, user_id: str, resolution: CrisisResolutionRecord) -> None:
        def _apply(doc: UserDocument) -> None:
            doc.crisis_session = None
            doc.resolutions.append(resolution)
            doc.follow_up_due_at = resolution.follow_up_due_at
            doc.follow_up_completed = resolution.follow_up_due_at is None

        self._mutate(user_id, _apply)

    def list_resolutions(self, user_id: str) -> List[CrisisResolutionRecord]:
        with self._lock:
            return list(self._load(user_id).resolutions)

    def follow_up_due_at(self, user_id: str) -> Optional[datetime]:
        with self._lock:
            document = self._load(user_id)
            return None if document.follow_up_completed else document.follow_up_due_at

    def complete_follow_up(self, user_id: str) -> None:
        self._mutate(user_id, lambda doc: setattr(doc, "follow_up_completed", True))

    def append_audit_event(self, user_id: str, event: AuditEvent) -> None:
        self._mutate(user_id, lambda doc: doc.audit_events.append(event))

    def list_audit_events(self, user_id: str) -> List[AuditEvent]:
        with self._lock:
            return list(self._load(user_id).audit_events)


class InMemoryCheckInStore(CheckInStore):
    def __init__(self) -> None:
        super().__init__()
        self._documents: Dict[str, str] = {}

    def _read(self, user_id: str) -> Optional[UserDocument]:
        raw = self._documents.get(user_id)
        if raw is None:
            return None
        try:
            return UserDocument.model_validate_json(raw)
        except ValueError as exc:
            raise PersistenceFailure(f"Stored record for {user_id} is invalid.", detail=str(exc)) from exc

    def _write(self, document: UserDocument) -> None:
        self._documents[document.user_id] = document.model_dump_json()


class JsonFileCheckInStore(CheckInStore):
    """One JSON document per user, replaced atomically on each write."""

    def __init__(self, root: Path):
        super().__init__()
        self._root = Path(root)

    def _path(self, user_id: str) -> Path:
        return self._root / f"{user_id}.json"

    def _read(self, user_id: str) -> Optional[UserDocument]:
        path = self._path(user_id)
        if not path.exists():
            return None
        try:
            return UserDocument.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise PersistenceFailure(f"Could not read record for {user_id}.", detail=str(exc)) from exc
        except ValueError as exc:
            # pydantic ValidationError is a ValueError.
            raise PersistenceFailure(f"Record for {user_id} is corrupt.", detail=str(exc)) from exc

    def _write(self, document: UserDocument) -> None:
        path = self._path(document.user_id)
        tmp = path.with_suffix(".json.tmp")
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            tmp.write_text(document.model_dump_json(indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            raise PersistenceFailure(f"Could not write record for {document.user_id}.", detail=str(exc)) from exc


class PersistenceRetryQueue:
    """
    Writes that failed once, keyed by description.

    A key holds only its latest write: re-queueing replaces the older snapshot, and a
    newer write under the same key drops it. `persist_or_queue` replays the rest before
    each new write, so replayed records land ahead of it and never overwrite it.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._pending: Dict[str, Callable[[], None]] = {}

    def add(self, description: str, write: Callable[[], None]) -> None:
        with self._lock:
            self._pending.pop(description, None)
            self._pending[description] = write

    def discard(self, description: str) -> bool:
        with self._lock:
            return self._pending.pop(description, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def descriptions(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def retry_pending(self) -> int:
        with self._lock:
            pending = list(self._pending.items())
        recovered = 0
        for description, write in pending:
            try:
                write()
            except PersistenceFailure as exc:
                logger.warning("Persistence retry failed (%s): %s", description, exc.message)
                continue
            recovered += 1
            with self._lock:
                # a newer write may have been queued under this key while replaying
                if self._pending.get(description) is write:
                    del self._pending[description]
        if recovered:
            logger.info("Persistence retry recovered %d write(s); %d still pending", recovered, len(self))
        return recovered


def persist_or_queue(
    retry_queue: PersistenceRetryQueue,
    description: str,
    write: Callable[[], None],
) -> bool:
    if retry_queue.discard(description):
        logger.info("Dropped queued write superseded by a newer one (%s)", description)
    if len(retry_queue):
        retry_queue.retry_pending()
    try:
        write()
    except PersistenceFailure as exc:
        logger.error("PersistenceFailure (%s): %s %s", description, exc.message, exc.detail)
        retry_queue.add(description, write)
        return False
    return True
