from __future__ import annotations

import datetime as _dt
from typing import Optional

from .contracts import AuditEvent, AuditEventType
from .store import CheckInStore, PersistenceRetryQueue, persist_or_queue


def _ts_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _sanitize_detail(detail: str) -> str:
    # IMPORTANT: Never include transcripts or narrative text in detail.
    detail = (detail or "").replace("\n", " ").strip()
    if len(detail) > 200:
        detail = detail[:200] + "..."
    return detail


def log_event(
    store: CheckInStore,
    user_id: str,
    event_type: AuditEventType,
    code: str,
    detail: str = "",
    retry_queue: Optional[PersistenceRetryQueue] = None,
) -> None:
    event = AuditEvent(
        ts_iso=_ts_iso(),
        user_id=user_id,
        type=event_type,
        code=code,
        detail=_sanitize_detail(detail),
    )
    queue = retry_queue if retry_queue is not None else PersistenceRetryQueue()
    persist_or_queue(queue, f"audit:{user_id}:{code}:{event.ts_iso}", lambda: store.append_audit_event(user_id, event))
