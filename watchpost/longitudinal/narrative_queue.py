from __future__ import annotations

"""
Background narrative updates with per-user serialization.

Design intent:
- Check-in completion never waits on narrative generation.
- At most one narrative writer runs per user; later jobs queue behind earlier ones in order.
- Failures are logged and dropped; the previous narrative stays in place.
- Every longitudinal-state read-modify-write for a user, from a job or from check-in
  submission, runs under that user's state lock. The lock is held only for the write,
  never across a generation.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

NarrativeJob = Callable[[], Awaitable[None]]


class NarrativeUpdateQueue:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._state_locks: dict[str, asyncio.Lock] = {}
        self._pending: dict[str, int] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def submit(self, user_id: str, job: NarrativeJob) -> asyncio.Task[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        self._pending[user_id] = self._pending.get(user_id, 0) + 1
        task = asyncio.get_running_loop().create_task(self._run(user_id, lock, job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def state_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._state_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._state_locks[user_id] = lock
        return lock

    def pending(self, user_id: str) -> int:
        return self._pending.get(user_id, 0)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    async def _run(self, user_id: str, lock: asyncio.Lock, job: NarrativeJob) -> None:
        try:
            async with lock:
                await job()
        except asyncio.CancelledError:
            logger.info("Narrative update cancelled for user=%s", user_id)
            raise
        except Exception:
            logger.warning("Narrative update failed for user=%s", user_id, exc_info=True)
        finally:
            remaining = self._pending.get(user_id, 1) - 1
            if remaining <= 0:
                self._pending.pop(user_id, None)
            else:
                self._pending[user_id] = remaining
