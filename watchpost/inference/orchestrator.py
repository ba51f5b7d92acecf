from __future__ import annotations

"""
Exclusive, cancellable, timeout-racing access to one generation resource.

Design intent:
- One orchestrator owns the backend handle; exactly one generation is in flight.
- A new request cancels the previous one outright.
- The first fragment races a fixed timeout; silence means timed-out plus deterministic fallback.
- Stop conditions are evaluated per fragment and the earliest cut point wins.
- Every failure returns fallback text; callers never see an empty result.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal
from uuid import uuid4

from watchpost.internal_core.errors import (
    GenerationCancelled,
    GenerationFailed,
    GenerationTimeout,
    ModelUnavailable,
    WatchpostError,
)

from .engine import GenerationBackend, GenerationConfig

RequestState = Literal["idle", "loading_resource", "streaming", "completed", "cancelled", "timed_out", "failed"]
StopReason = Literal["", "max_chars", "end_sentinel", "section_grace", "max_lines", "exhausted", "deadline"]
Fallback = Callable[[], str] | str

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StopPolicy:
    max_chars: int = 3000
    end_sentinel: str | None = None
    section_marker: str | None = None
    grace_chars: int = 150
    max_lines: int | None = None


@dataclass(frozen=True)
class GenerationOutcome:
    request_id: str
    state: RequestState
    text: str
    used_fallback: bool
    stop_reason: StopReason = ""
    error_code: str = ""
    fragments: int = 0
    first_fragment_ms: float | None = None
    elapsed_ms: float = 0.0
    transitions: tuple[RequestState, ...] = field(default_factory=tuple)


class StreamAccumulator:
    """Accumulates fragments and reports the first stop condition to trigger."""

    def __init__(self, policy: StopPolicy) -> None:
        self.policy = policy
        self.text = ""
        self.stop_reason: StopReason = ""
        self._marker_end: int | None = None

    def feed(self, fragment: str) -> bool:
        if self.stop_reason:
            return True
        previous_len = len(self.text)
        text = self.text + fragment
        policy = self.policy
        cuts: list[tuple[int, StopReason]] = []

        if policy.end_sentinel:
            search_from = max(0, previous_len - len(policy.end_sentinel) + 1)
            idx = text.find(policy.end_sentinel, search_from)
            if idx >= 0:
                cuts.append((idx, "end_sentinel"))

        if policy.max_chars > 0 and len(text) > policy.max_chars:
            cuts.append((policy.max_chars, "max_chars"))

        if policy.section_marker:
            if self._marker_end is None:
                idx = text.lower().find(policy.section_marker.lower())
                if idx >= 0:
                    self._marker_end = idx + len(policy.section_marker)
            if self._marker_end is not None and len(text) - self._marker_end > policy.grace_chars:
                cuts.append((self._marker_end + policy.grace_chars, "section_grace"))

        if policy.max_lines:
            cut = _line_cut(text, policy.max_lines)
            if cut is not None:
                cuts.append((cut, "max_lines"))

        if not cuts:
            self.text = text
            return False
        position, reason = min(cuts, key=lambda item: item[0])
        self.text = text[:position]
        self.stop_reason = reason
        return True


def _line_cut(text: str, max_lines: int) -> int | None:
    start = len(text) - len(text.lstrip())
    count = 0
    idx = text.find("\n", start)
    while idx >= 0:
        count += 1
        if count >= max_lines:
            return idx
        idx = text.find("\n", idx + 1)
    return None


class FragmentStream:
    """
    Finite async sequence of text fragments for one prompt.

    The backend iterator runs on a worker thread; fragments cross into the event loop
    through a queue. `cancel()` is safe to call from any thread. `restart()` cancels this
    stream and returns a fresh one for the same prompt.
    """

    def __init__(
        self,
        owner: "InferenceOrchestrator",
        prompt: str,
        config: GenerationConfig,
        request_id: str,
    ) -> None:
        self._owner = owner
        self._prompt = prompt
        self._config = config
        self.request_id = request_id
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self._cancel_event = threading.Event()
        self._finished = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._started = False
        self._exhausted = False
        self._holds_slot = False
        self.cancel_reason = ""

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def __aiter__(self) -> "FragmentStream":
        return self

    async def __anext__(self) -> str:
        fragment = await self.next_fragment()
        if fragment is None:
            raise StopAsyncIteration
        return fragment

    async def next_fragment(self) -> str | None:
        if not self._started:
            await self._start()
        if self._exhausted:
            return None
        if self._cancel_event.is_set():
            await self._finish()
            raise GenerationCancelled(f"Generation cancelled ({self.cancel_reason}).")

        kind, payload = await self._queue.get()
        if kind == "fragment":
            return str(payload)
        await self._finish()
        if kind == "done":
            return None
        if kind == "cancelled":
            raise GenerationCancelled(f"Generation cancelled ({payload}).")
        if isinstance(payload, WatchpostError):
            raise payload
        raise GenerationFailed(f"Generation failed: {payload}") from payload

    def cancel(self, reason: str = "external") -> None:
        if self._cancel_event.is_set() or self._exhausted:
            return
        self.cancel_reason = reason
        self._cancel_event.set()
        self._emit("cancelled", reason)

    def restart(self) -> "FragmentStream":
        self.cancel("restarted")
        return self._owner.stream(self._prompt, self._config)

    async def aclose(self) -> None:
        if not self._exhausted:
            self.cancel("closed")
        await self._finish()

    async def _start(self) -> None:
        self._started = True
        await self._owner._slot_lock.acquire()
        self._holds_slot = True
        if self._cancel_event.is_set():
            return
        self._loop = asyncio.get_running_loop()
        backend = self._owner.backend
        if backend is None:
            self._queue.put_nowait(("error", ModelUnavailable("No generation backend configured.")))
            self._finished.set()
            return
        self._thread = threading.Thread(
            target=self._pump,
            args=(backend,),
            name=f"watchpost-generation-{self.request_id}",
            daemon=True,
        )
        self._thread.start()

    def _pump(self, backend: GenerationBackend) -> None:
        iterator = None
        try:
            iterator = backend.stream(self._prompt, self._config)
            for fragment in iterator:
                if self._cancel_event.is_set():
                    break
                self._emit("fragment", fragment)
            self._emit("done", None)
        except Exception as exc:
            self._emit("error", exc)
        finally:
            close = getattr(iterator, "close", None)
            if callable(close):
                try:
                    close()
                except Exception:
                    logger.debug("Backend iterator close failed", exc_info=True)
            self._finished.set()

    def _emit(self, kind: str, payload: Any) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self._queue.put_nowait, (kind, payload))
        except RuntimeError:
            # Event loop already closed; nobody is listening.
            return

    async def _finish(self) -> None:
        self._exhausted = True
        if self._thread is not None and not self._finished.is_set():
            await asyncio.to_thread(self._finished.wait, self._owner.release_wait_sec)
        if self._holds_slot:
            self._holds_slot = False
            self._owner._slot_lock.release()
        self._owner._forget(self)


class InferenceOrchestrator:
    def __init__(
        self,
        backend: GenerationBackend | None,
        *,
        generation_config: GenerationConfig | None = None,
        first_fragment_timeout_sec: float = 10.0,
        total_timeout_sec: float = 60.0,
        load_timeout_sec: float = 120.0,
        release_wait_sec: float = 2.0,
    ) -> None:
        self._backend = backend
        self.generation_config = generation_config or GenerationConfig()
        self.first_fragment_timeout_sec = float(first_fragment_timeout_sec)
        self.total_timeout_sec = float(total_timeout_sec)
        self.load_timeout_sec = float(load_timeout_sec)
        self.release_wait_sec = float(release_wait_sec)
        self._load_lock = asyncio.Lock()
        self._slot_lock = asyncio.Lock()
        self._active: FragmentStream | None = None
        self._load_error: ModelUnavailable | None = None
        self.state: RequestState = "idle"

    @property
    def backend(self) -> GenerationBackend | None:
        return self._backend

    @property
    def is_loaded(self) -> bool:
        return self._backend is not None and self._backend.is_loaded

    @property
    def busy(self) -> bool:
        return self._active is not None

    async def ensure_loaded(self) -> None:
        """Load the backend once; a failed load is remembered until `reset()`."""

        backend = self._backend
        if backend is None:
            raise ModelUnavailable("No generation backend configured.")
        if backend.is_loaded:
            return
        if self._load_error is not None:
            raise self._load_error
        async with self._load_lock:
            if backend.is_loaded:
                return
            if self._load_error is not None:
                raise self._load_error
            try:
                await asyncio.wait_for(asyncio.to_thread(backend.load), timeout=self.load_timeout_sec)
            except asyncio.TimeoutError as exc:
                self._load_error = ModelUnavailable(f"Model load exceeded {self.load_timeout_sec:.0f}s.")
                raise self._load_error from exc
            except ModelUnavailable as exc:
                self._load_error = exc
                raise
            except Exception as exc:
                self._load_error = ModelUnavailable(f"Model load failed: {exc}")
                raise self._load_error from exc

    def stream(self, prompt: str, config: GenerationConfig | None = None) -> FragmentStream:
        """Return a lazy fragment stream; any stream already in flight is cancelled."""

        self.cancel(reason="superseded")
        created = FragmentStream(self, prompt, config or self.generation_config, uuid4().hex[:12])
        self._active = created
        return created

    def cancel(self, reason: str = "external") -> bool:
        active = self._active
        if active is None:
            return False
        active.cancel(reason)
        return True

    async def reset(self) -> None:
        """Cancel in-flight work and release the model handle; safe to call repeatedly."""

        self.cancel(reason="reset")
        self._load_error = None
        backend = self._backend
        if backend is not None and backend.is_loaded:
            await asyncio.to_thread(backend.release)
        self.state = "idle"

    async def suspend(self) -> None:
        await self.reset()

    async def generate(
        self,
        prompt: str,
        *,
        fallback: Fallback,
        stop_policy: StopPolicy | None = None,
        config: GenerationConfig | None = None,
        label: str = "generation",
        first_fragment_timeout_sec: float | None = None,
        total_timeout_sec: float | None = None,
    ) -> GenerationOutcome:
        request_id = uuid4().hex[:12]
        started = time.perf_counter()
        transitions: list[RequestState] = []

        def _enter(state: RequestState) -> None:
            self.state = state
            transitions.append(state)

        self.cancel(reason="superseded")
        _enter("loading_resource")
        try:
            await self.ensure_loaded()
        except ModelUnavailable as exc:
            _log_failure(exc, label=label, request_id=request_id)
            _enter("failed")
            return _fallback_outcome(request_id, "failed", fallback, exc.code, started, transitions)

        first_timeout = self.first_fragment_timeout_sec if first_fragment_timeout_sec is None else first_fragment_timeout_sec
        total_timeout = self.total_timeout_sec if total_timeout_sec is None else total_timeout_sec
        deadline = started + max(total_timeout, first_timeout)
        accumulator = StreamAccumulator(stop_policy or StopPolicy())
        stream = self.stream(prompt, config)
        fragments = 0
        first_ms: float | None = None
        final_state: RequestState = "completed"
        error_code = ""

        try:
            try:
                first = await asyncio.wait_for(stream.next_fragment(), timeout=first_timeout)
            except asyncio.TimeoutError as exc:
                raise GenerationTimeout(
                    f"No fragment within {first_timeout:.1f}s.", detail=f"request={request_id}"
                ) from exc
            _enter("streaming")
            if first is None:
                accumulator.stop_reason = "exhausted"
            else:
                first_ms = round((time.perf_counter() - started) * 1000.0, 2)
                fragments = 1
                stopped = accumulator.feed(first)
                while not stopped:
                    remaining = deadline - time.perf_counter()
                    if remaining <= 0:
                        accumulator.stop_reason = "deadline"
                        break
                    try:
                        fragment = await asyncio.wait_for(stream.next_fragment(), timeout=remaining)
                    except asyncio.TimeoutError:
                        accumulator.stop_reason = "deadline"
                        break
                    if fragment is None:
                        accumulator.stop_reason = "exhausted"
                        break
                    fragments += 1
                    stopped = accumulator.feed(fragment)
        except GenerationTimeout as exc:
            _log_failure(exc, label=label, request_id=request_id)
            final_state, error_code = "timed_out", exc.code
        except GenerationCancelled as exc:
            _log_failure(exc, label=label, request_id=request_id)
            final_state, error_code = "cancelled", exc.code
        except WatchpostError as exc:
            _log_failure(exc, label=label, request_id=request_id)
            final_state, error_code = "failed", exc.code
        finally:
            await stream.aclose()

        if final_state in {"timed_out", "failed"} and self._active is None:
            await self.reset()
        _enter(final_state)

        text = accumulator.text.strip()
        if final_state != "completed" or not text:
            if final_state == "completed":
                logger.warning("Empty generation during %s (request=%s); using fallback.", label, request_id)
            return _fallback_outcome(
                request_id,
                final_state,
                fallback,
                error_code,
                started,
                transitions,
                fragments=fragments,
                first_fragment_ms=first_ms,
                stop_reason=accumulator.stop_reason,
            )
        return GenerationOutcome(
            request_id=request_id,
            state=final_state,
            text=text,
            used_fallback=False,
            stop_reason=accumulator.stop_reason,
            fragments=fragments,
            first_fragment_ms=first_ms,
            elapsed_ms=round((time.perf_counter() - started) * 1000.0, 2),
            transitions=tuple(transitions),
        )

    def _forget(self, stream: FragmentStream) -> None:
        if self._active is stream:
            self._active = None


def _resolve_fallback(fallback: Fallback) -> str:
    return fallback() if callable(fallback) else str(fallback)


def _fallback_outcome(
    request_id: str,
    state: RequestState,
    fallback: Fallback,
    error_code: str,
    started: float,
    transitions: list[RequestState],
    *,
    fragments: int = 0,
    first_fragment_ms: float | None = None,
    stop_reason: StopReason = "",
) -> GenerationOutcome:
    return GenerationOutcome(
        request_id=request_id,
        state=state,
        text=_resolve_fallback(fallback),
        used_fallback=True,
        stop_reason=stop_reason,
        error_code=error_code,
        fragments=fragments,
        first_fragment_ms=first_fragment_ms,
        elapsed_ms=round((time.perf_counter() - started) * 1000.0, 2),
        transitions=tuple(transitions),
    )


def _log_failure(exc: WatchpostError, *, label: str, request_id: str) -> None:
    logger.warning(
        "%s during %s (request=%s): %s",
        type(exc).__name__,
        label,
        request_id,
        exc.message,
    )
