import sys
from types import SimpleNamespace

import pytest

from watchpost.inference.engine import GenerationConfig, LlamaCppBackend
from watchpost.internal_core.errors import ModelUnavailable


def _model_file(tmp_path) -> str:
    model_path = tmp_path / "mock.gguf"
    model_path.write_text("x", encoding="utf-8")
    return str(model_path)


def test_backend_streams_delta_chunks_with_chat_format(monkeypatch, tmp_path) -> None:
    created: list = []

    class FakeLlama:
        def __init__(self, **kwargs) -> None:
            assert kwargs["chat_format"] == "gemma"
            assert kwargs["verbose"] is False
            self.closed = 0
            created.append(self)

        def create_chat_completion(self, **kwargs):
            assert kwargs["stream"] is True
            assert kwargs["messages"] == [{"role": "user", "content": "Assess."}]
            assert kwargs["stop"] == ["<end_of_turn>", "</s>"]
            return iter(
                [
                    {"choices": [{"delta": {"role": "assistant"}}]},
                    {"choices": [{"delta": {"content": "orange"}}]},
                    {"choices": [{"delta": {"content": "\nSleep down."}}]},
                ]
            )

        def close(self) -> None:
            self.closed += 1

    monkeypatch.setitem(sys.modules, "llama_cpp", SimpleNamespace(Llama=FakeLlama))
    backend = LlamaCppBackend(_model_file(tmp_path), debug_log="")
    backend.load()

    assert backend.is_loaded is True
    assert backend.chat_format_applied is True
    assert list(backend.stream("Assess.", GenerationConfig())) == ["orange", "\nSleep down."]

    backend.release()
    backend.release()
    assert backend.is_loaded is False
    assert backend.handles_opened == backend.handles_released == 1
    assert created[0].closed == 1


def test_backend_retries_without_unsupported_chat_format(monkeypatch, tmp_path) -> None:
    class FakeLlama:
        def __init__(self, **kwargs) -> None:
            if "chat_format" in kwargs:
                raise TypeError("Llama.__init__() got an unexpected keyword argument 'chat_format'")

        def create_chat_completion(self, **kwargs):
            return {"choices": [{"message": {"content": "green\nStable."}}]}

    monkeypatch.setitem(sys.modules, "llama_cpp", SimpleNamespace(Llama=FakeLlama))
    backend = LlamaCppBackend(_model_file(tmp_path), debug_log="")
    backend.load()

    assert backend.chat_format_applied is False
    assert list(backend.stream("p", GenerationConfig())) == ["green\nStable."]


def test_backend_drops_sampling_kwargs_older_builds_reject(monkeypatch, tmp_path) -> None:
    seen: list[dict] = []

    class FakeLlama:
        def __init__(self, **kwargs) -> None:
            pass

        def create_chat_completion(self, **kwargs):
            seen.append(kwargs)
            if "top_k" in kwargs:
                raise TypeError("create_chat_completion() got an unexpected keyword argument 'top_k'")
            return iter([{"choices": [{"text": "yellow"}]}])

    monkeypatch.setitem(sys.modules, "llama_cpp", SimpleNamespace(Llama=FakeLlama))
    backend = LlamaCppBackend(_model_file(tmp_path), debug_log="")
    backend.load()

    assert list(backend.stream("p", GenerationConfig())) == ["yellow"]
    assert "top_k" not in seen[-1]
    assert "repeat_penalty" in seen[-1]


def test_release_during_stream_defers_close(monkeypatch, tmp_path) -> None:
    class FakeLlama:
        closed = 0

        def __init__(self, **kwargs) -> None:
            pass

        def create_chat_completion(self, **kwargs):
            return iter([{"choices": [{"delta": {"content": "a"}}]}, {"choices": [{"delta": {"content": "b"}}]}])

        def close(self) -> None:
            FakeLlama.closed += 1

    monkeypatch.setitem(sys.modules, "llama_cpp", SimpleNamespace(Llama=FakeLlama))
    backend = LlamaCppBackend(_model_file(tmp_path), debug_log="")
    backend.load()

    stream = backend.stream("p", GenerationConfig())
    assert next(stream) == "a"
    backend.release()
    assert FakeLlama.closed == 0
    assert list(stream) == ["b"]
    assert FakeLlama.closed == 1


def test_missing_model_file_is_unavailable(tmp_path) -> None:
    backend = LlamaCppBackend(str(tmp_path / "absent.gguf"), debug_log="")
    with pytest.raises(ModelUnavailable, match="not found"):
        backend.load()
    assert backend.is_loaded is False


def test_debug_log_records_prompt_and_output(monkeypatch, tmp_path) -> None:
    class FakeLlama:
        def __init__(self, **kwargs) -> None:
            pass

        def create_chat_completion(self, **kwargs):
            return iter([{"choices": [{"delta": {"content": "red"}}]}])

    monkeypatch.setitem(sys.modules, "llama_cpp", SimpleNamespace(Llama=FakeLlama))
    log_path = tmp_path / "raw.log"
    backend = LlamaCppBackend(_model_file(tmp_path), debug_log=str(log_path))
    backend.load()
    list(backend.stream("Prompt text", GenerationConfig()))

    content = log_path.read_text(encoding="utf-8")
    assert "stage=model_loaded" in content
    assert "stage=prompt_input" in content
    assert "Prompt text" in content
    assert "stage=stream_output" in content
