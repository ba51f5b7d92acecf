from __future__ import annotations


class WatchpostError(RuntimeError):
    code = "watchpost_error"

    def __init__(self, message: str, *, detail: str = ""):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ModelUnavailable(WatchpostError):
    """Generation resource failed to load or is not configured."""

    code = "model_unavailable"


class GenerationTimeout(WatchpostError):
    code = "generation_timeout"


class GenerationCancelled(WatchpostError):
    code = "generation_cancelled"


class GenerationFailed(WatchpostError):
    code = "generation_failed"


class ParseFailure(WatchpostError):
    """Generated text could not be interpreted; handled exactly like ModelUnavailable."""

    code = "parse_failure"


class PersistenceFailure(WatchpostError):
    code = "persistence_failure"
