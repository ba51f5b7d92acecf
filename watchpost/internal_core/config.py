from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from watchpost.risk.models import RiskTier
from watchpost.utils.model_paths import resolve_medgemma_gguf_path


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_opt_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _getenv_tier(name: str, default: RiskTier) -> RiskTier:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    tier = RiskTier.from_label(value)
    if tier is None:
        raise ValueError(f"{name} must name a risk tier, got {value!r}")
    return tier


@dataclass(frozen=True)
class PipelineConfig:
    WATCHPOST_MEDGEMMA_GGUF: str
    WATCHPOST_LLAMA_CPP_CHAT_FORMAT: str
    WATCHPOST_LLAMA_CPP_N_CTX: int
    WATCHPOST_LLAMA_CPP_N_GPU_LAYERS: int
    WATCHPOST_LLAMA_CPP_N_THREADS: Optional[int]
    WATCHPOST_LLM_MAX_TOKENS: int
    WATCHPOST_LLM_TEMPERATURE: float
    WATCHPOST_LLM_TOP_K: int
    WATCHPOST_LLM_TOP_P: float
    WATCHPOST_LLM_REPEAT_PENALTY: float
    WATCHPOST_FIRST_FRAGMENT_TIMEOUT_SEC: float
    WATCHPOST_INFERENCE_TIMEOUT_SEC: float
    WATCHPOST_NARRATIVE_TIMEOUT_SEC: float
    WATCHPOST_RERANK_TIMEOUT_SEC: float
    WATCHPOST_HEALTH_FETCH_TIMEOUT_SEC: float
    WATCHPOST_MODEL_LOAD_TIMEOUT_SEC: float
    WATCHPOST_REPORT_MAX_CHARS: int
    WATCHPOST_REPORT_GRACE_CHARS: int
    WATCHPOST_HISTORY_BUDGET: int
    WATCHPOST_TELEMETRY_BUDGET: int
    WATCHPOST_TRANSCRIPT_BUDGET: int
    WATCHPOST_VOICE_BUDGET: int
    WATCHPOST_MODERATE_Z: float
    WATCHPOST_SEVERE_Z: float
    WATCHPOST_STALENESS_DAYS: int
    WATCHPOST_CRISIS_WINDOW_SEC: int
    WATCHPOST_FOLLOW_UP_HOURS: int
    WATCHPOST_Q3_TIER: RiskTier
    WATCHPOST_PROMPTS_PATH: str
    WATCHPOST_STORE_DIR: str
    WATCHPOST_MEDGEMMA_DEBUG_LOG: str
    WATCHPOST_LOG_LEVEL: str
    WATCHPOST_MODEL_ENABLED: bool


def load_config() -> PipelineConfig:
    severe_z = _getenv_float("WATCHPOST_SEVERE_Z", -2.0)
    moderate_z = _getenv_float("WATCHPOST_MODERATE_Z", -1.5)
    if severe_z > moderate_z:
        raise ValueError("WATCHPOST_SEVERE_Z must not be above WATCHPOST_MODERATE_Z")

    return PipelineConfig(
        WATCHPOST_MEDGEMMA_GGUF=resolve_medgemma_gguf_path(),
        WATCHPOST_LLAMA_CPP_CHAT_FORMAT=_getenv_str("WATCHPOST_LLAMA_CPP_CHAT_FORMAT", "gemma"),
        WATCHPOST_LLAMA_CPP_N_CTX=_getenv_int("WATCHPOST_LLAMA_CPP_N_CTX", 1024),
        WATCHPOST_LLAMA_CPP_N_GPU_LAYERS=_getenv_int("WATCHPOST_LLAMA_CPP_N_GPU_LAYERS", -1),
        WATCHPOST_LLAMA_CPP_N_THREADS=_getenv_opt_int("WATCHPOST_LLAMA_CPP_N_THREADS"),
        WATCHPOST_LLM_MAX_TOKENS=_getenv_int("WATCHPOST_LLM_MAX_TOKENS", 256),
        WATCHPOST_LLM_TEMPERATURE=_getenv_float("WATCHPOST_LLM_TEMPERATURE", 0.1),
        WATCHPOST_LLM_TOP_K=_getenv_int("WATCHPOST_LLM_TOP_K", 40),
        WATCHPOST_LLM_TOP_P=_getenv_float("WATCHPOST_LLM_TOP_P", 0.95),
        WATCHPOST_LLM_REPEAT_PENALTY=_getenv_float("WATCHPOST_LLM_REPEAT_PENALTY", 1.15),
        WATCHPOST_FIRST_FRAGMENT_TIMEOUT_SEC=_getenv_float("WATCHPOST_FIRST_FRAGMENT_TIMEOUT_SEC", 10.0),
        WATCHPOST_INFERENCE_TIMEOUT_SEC=_getenv_float("WATCHPOST_INFERENCE_TIMEOUT_SEC", 60.0),
        WATCHPOST_NARRATIVE_TIMEOUT_SEC=_getenv_float("WATCHPOST_NARRATIVE_TIMEOUT_SEC", 30.0),
        WATCHPOST_RERANK_TIMEOUT_SEC=_getenv_float("WATCHPOST_RERANK_TIMEOUT_SEC", 15.0),
        WATCHPOST_HEALTH_FETCH_TIMEOUT_SEC=_getenv_float("WATCHPOST_HEALTH_FETCH_TIMEOUT_SEC", 5.0),
        WATCHPOST_MODEL_LOAD_TIMEOUT_SEC=_getenv_float("WATCHPOST_MODEL_LOAD_TIMEOUT_SEC", 120.0),
        WATCHPOST_REPORT_MAX_CHARS=_getenv_int("WATCHPOST_REPORT_MAX_CHARS", 3000),
        WATCHPOST_REPORT_GRACE_CHARS=_getenv_int("WATCHPOST_REPORT_GRACE_CHARS", 150),
        WATCHPOST_HISTORY_BUDGET=_getenv_int("WATCHPOST_HISTORY_BUDGET", 500),
        WATCHPOST_TELEMETRY_BUDGET=_getenv_int("WATCHPOST_TELEMETRY_BUDGET", 400),
        WATCHPOST_TRANSCRIPT_BUDGET=_getenv_int("WATCHPOST_TRANSCRIPT_BUDGET", 600),
        WATCHPOST_VOICE_BUDGET=_getenv_int("WATCHPOST_VOICE_BUDGET", 300),
        WATCHPOST_MODERATE_Z=moderate_z,
        WATCHPOST_SEVERE_Z=severe_z,
        WATCHPOST_STALENESS_DAYS=_getenv_int("WATCHPOST_STALENESS_DAYS", 30),
        WATCHPOST_CRISIS_WINDOW_SEC=_getenv_int("WATCHPOST_CRISIS_WINDOW_SEC", 600),
        WATCHPOST_FOLLOW_UP_HOURS=_getenv_int("WATCHPOST_FOLLOW_UP_HOURS", 4),
        WATCHPOST_Q3_TIER=_getenv_tier("WATCHPOST_Q3_TIER", RiskTier.MODERATE),
        WATCHPOST_PROMPTS_PATH=_getenv_str("WATCHPOST_PROMPTS_PATH", ""),
        WATCHPOST_STORE_DIR=_getenv_str("WATCHPOST_STORE_DIR", ""),
        WATCHPOST_MEDGEMMA_DEBUG_LOG=_getenv_str("WATCHPOST_MEDGEMMA_DEBUG_LOG", ""),
        WATCHPOST_LOG_LEVEL=_getenv_str("WATCHPOST_LOG_LEVEL", "INFO"),
        WATCHPOST_MODEL_ENABLED=_getenv_bool("WATCHPOST_MODEL_ENABLED", True),
    )
