from __future__ import annotations

"""
Text-generation backends for the inference orchestrator.

Design intent:
- Keep the backend contract narrow: load, stream fragments, release.
- Import llama_cpp lazily so the pipeline runs (on fallbacks) without it installed.
- Never close a model handle while a stream is still reading from it.
"""

import json
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from watchpost.internal_core.errors import GenerationFailed, ModelUnavailable
from watchpost.utils.model_paths import resolve_medgemma_gguf_path

DEFAULT_STOP_SEQUENCES = ("<end_of_turn>", "</s>")


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float = 0.1
    top_k: int = 40
    top_p: float = 0.95
    max_tokens: int = 256
    repeat_penalty: float = 1.15
    stop: tuple[str, ...] = DEFAULT_STOP_SEQUENCES


class GenerationBackend(ABC):
    @abstractmethod
    def load(self) -> None: ...

    @abstractmethod
    def stream(self, prompt: str, config: GenerationConfig) -> Iterator[str]: ...

    @abstractmethod
    def release(self) -> None: ...

    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def is_loaded(self) -> bool: ...


class LlamaCppBackend(GenerationBackend):
    """
    Local GGUF model through llama_cpp.

    Environment fallbacks:
    - model_path: `WATCHPOST_MEDGEMMA_GGUF` -> auto-discovery
    - debug log: `WATCHPOST_MEDGEMMA_DEBUG_LOG`
      - `1/true/on/yes` => `/tmp/watchpost_medgemma_raw.log`
      - any other non-empty value => write to that path
    """

    def __init__(
        self,
        model_path: str | None = None,
        *,
        n_ctx: int = 1024,
        n_gpu_layers: int = -1,
        n_threads: int | None = None,
        chat_format: str = "gemma",
        debug_log: str | None = None,
    ) -> None:
        self._model_path = model_path
        self._n_ctx = int(n_ctx)
        self._n_gpu_layers = int(n_gpu_layers)
        self._n_threads = n_threads
        self._chat_format = chat_format
        self._debug_log_path = _resolve_debug_log_path(
            debug_log if debug_log is not None else os.getenv("WATCHPOST_MEDGEMMA_DEBUG_LOG", "")
        )
        self._lock = threading.Lock()
        self._llm: Any = None
        self._active_streams = 0
        self._deferred_close: list[Any] = []
        self.chat_format_applied = False
        self.handles_opened = 0
        self.handles_released = 0

    def name(self) -> str:
        return "llama_cpp"

    @property
    def is_loaded(self) -> bool:
        return self._llm is not None

    def load(self) -> None:
        with self._lock:
            if self._llm is not None:
                return

        resolved_model_path = resolve_medgemma_gguf_path(self._model_path).strip()
        if not resolved_model_path:
            raise ModelUnavailable(
                "Model path is missing. Set WATCHPOST_MEDGEMMA_GGUF or place a MedGemma GGUF under local model defaults."
            )
        if not os.path.exists(resolved_model_path):
            raise ModelUnavailable(f"Model file not found: {resolved_model_path}")

        try:
            from llama_cpp import Llama  # type: ignore
        except Exception as exc:
            raise ModelUnavailable(f"llama_cpp import failed: {exc}") from exc

        llm_kwargs: dict[str, Any] = {
            "model_path": resolved_model_path,
            "n_ctx": self._n_ctx,
            "n_gpu_layers": self._n_gpu_layers,
            "verbose": False,
            "chat_format": self._chat_format,
        }
        if self._n_threads is not None:
            llm_kwargs["n_threads"] = int(self._n_threads)

        started = time.perf_counter()
        try:
            try:
                llm = Llama(**llm_kwargs)
                chat_format_applied = True
            except TypeError as exc:
                if "chat_format" not in str(exc):
                    raise
                llm_kwargs.pop("chat_format", None)
                llm = Llama(**llm_kwargs)
                chat_format_applied = False
        except Exception as exc:
            raise ModelUnavailable(f"Model load failed: {exc}") from exc

        with self._lock:
            if self._llm is not None:
                _close_quietly(llm)
                return
            self._llm = llm
            self.chat_format_applied = chat_format_applied
            self.handles_opened += 1
        _append_debug_log(
            self._debug_log_path,
            stage="model_loaded",
            raw=resolved_model_path,
            metadata={
                "n_ctx": self._n_ctx,
                "chat_format": self._chat_format,
                "chat_format_applied": chat_format_applied,
                "load_ms": round((time.perf_counter() - started) * 1000.0, 2),
            },
        )

    def stream(self, prompt: str, config: GenerationConfig) -> Iterator[str]:
        with self._lock:
            llm = self._llm
            if llm is None:
                raise ModelUnavailable("Model is not loaded.")
            self._active_streams += 1

        collected: list[str] = []
        started = time.perf_counter()
        try:
            _append_debug_log(
                self._debug_log_path,
                stage="prompt_input",
                raw=prompt,
                metadata={"max_tokens": config.max_tokens, "temperature": config.temperature},
            )
            for chunk in _run_streaming_chat_completion(llm, prompt=prompt, config=config):
                text = _chunk_text(chunk)
                if text:
                    collected.append(text)
                    yield text
        finally:
            _append_debug_log(
                self._debug_log_path,
                stage="stream_output",
                raw="".join(collected),
                metadata={
                    "fragments": len(collected),
                    "inference_ms": round((time.perf_counter() - started) * 1000.0, 2),
                },
            )
            self._finish_stream()

    def release(self) -> None:
        with self._lock:
            llm, self._llm = self._llm, None
            if llm is None:
                return
            self.handles_released += 1
            if self._active_streams:
                self._deferred_close.append(llm)
                return
        _close_quietly(llm)

    def _finish_stream(self) -> None:
        with self._lock:
            self._active_streams -= 1
            if self._active_streams:
                return
            pending, self._deferred_close = self._deferred_close, []
        for llm in pending:
            _close_quietly(llm)


def _run_streaming_chat_completion(llm: Any, *, prompt: str, config: GenerationConfig) -> Iterator[Any]:
    completion_kwargs: dict[str, Any] = {
        "messages": [{"role": "user", "content": prompt}],
        "temperature": float(config.temperature),
        "top_p": float(config.top_p),
        "top_k": int(config.top_k),
        "repeat_penalty": float(config.repeat_penalty),
        "max_tokens": int(config.max_tokens),
        "stop": list(config.stop),
        "stream": True,
    }
    try:
        resp = llm.create_chat_completion(**completion_kwargs)
    except TypeError as exc:
        # Older llama_cpp builds reject sampling kwargs on the chat API.
        unsupported = [key for key in ("top_k", "repeat_penalty") if key in str(exc)]
        if not unsupported:
            raise GenerationFailed(f"create_chat_completion failed: {exc}") from exc
        for key in unsupported:
            completion_kwargs.pop(key, None)
        resp = llm.create_chat_completion(**completion_kwargs)
    if isinstance(resp, dict):
        return iter([resp])
    return iter(resp)


def _chunk_text(chunk: Any) -> str:
    if isinstance(chunk, str):
        return chunk
    if not isinstance(chunk, dict):
        return ""
    choices = chunk.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    first = choices[0]
    delta = first.get("delta")
    if isinstance(delta, dict):
        return str(delta.get("content") or "")
    message = first.get("message")
    if isinstance(message, dict):
        return str(message.get("content") or "")
    return str(first.get("text") or "")


def _close_quietly(llm: Any) -> None:
    close = getattr(llm, "close", None)
    if not callable(close):
        return
    try:
        close()
    except Exception:
        return


def _resolve_debug_log_path(raw: str | None) -> str | None:
    value = str(raw or "").strip()
    if not value:
        return None
    if value.lower() in {"1", "true", "on", "yes"}:
        return "/tmp/watchpost_medgemma_raw.log"
    return value


def _append_debug_log(path: str | None, *, stage: str, raw: str, metadata: dict[str, Any] | None = None) -> None:
    if not path:
        return
    try:
        target = Path(path).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).isoformat()
        meta = json.dumps(metadata or {}, ensure_ascii=True)
        payload = (
            f"[{stamp}] stage={stage} meta={meta}\n"
            "-----BEGIN MEDGEMMA RAW-----\n"
            f"{raw}\n"
            "-----END MEDGEMMA RAW-----\n"
        )
        with target.open("a", encoding="utf-8") as f:
            f.write(payload)
    except Exception:
        # Debug logging must never break generation.
        return
