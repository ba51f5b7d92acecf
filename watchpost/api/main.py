from __future__ import annotations

"""
HTTP surface for the watchpost check-in pipeline.

Design intent:
- Keep API orchestration thin and typed; domain logic lives in checkin/crisis/risk modules.
- Collaborators are built lazily on app.state so tests can inject fakes.
- Only actionable conditions become HTTP errors; model-path failures are reported in `debug`.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Literal

from fastapi import FastAPI, HTTPException
from fastapi import Path as PathParam
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from watchpost.checkin.pipeline import CheckInInputs, CheckInPipeline
from watchpost.checkin.report import Recipient, generate_handoff_report
from watchpost.crisis.safety_plan import SafetyPlanSection
from watchpost.crisis.state_machine import CrisisView, RecheckResponse
from watchpost.inference.engine import GenerationConfig, LlamaCppBackend
from watchpost.inference.orchestrator import InferenceOrchestrator
from watchpost.internal_core.config import PipelineConfig, load_config
from watchpost.internal_core.contracts import LongitudinalStateRecord, TierKey, tier_from_key
from watchpost.internal_core.store import CheckInStore, InMemoryCheckInStore, JsonFileCheckInStore
from watchpost.longitudinal.compressor import format_for_prompt, is_stale, risk_modifiers
from watchpost.prompts.composer import PromptComposer
from watchpost.prompts.templates import load_prompt_specs
from watchpost.risk.models import HealthSignalSnapshot, MetricName, ScreeningResponse
from watchpost.risk.signals import VoiceTelemetry

UserId = Annotated[str, PathParam(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_.-]+$")]


class HealthMetricInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    current: float | None = None
    history: list[float] = Field(default_factory=list, max_length=365)


class VoiceTelemetryInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    words_per_minute: float = Field(default=0.0, ge=0.0)
    pause_count: int | None = Field(default=None, ge=0)
    average_pause_sec: float | None = Field(default=None, ge=0.0)
    mean_pitch_hz: float | None = None
    pitch_variability: float | None = None
    mean_energy_db: float | None = None
    energy_variability: float | None = None
    speech_percentage: float | None = None
    snr_db: float | None = None
    speech_rate: float | None = None


class MultimodalInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    health: dict[MetricName, HealthMetricInput] = Field(default_factory=dict)
    transcript: str = Field(default="", max_length=20000)
    voice: VoiceTelemetryInput | None = None
    behavioral_report: str = Field(default="", max_length=20000)
    wpm: float | None = Field(default=None, ge=0.0)
    check_in_type: str = Field(default="daily", min_length=1, max_length=64)


class CheckInStartRequest(MultimodalInput):
    pass


class CheckInSubmitRequest(MultimodalInput):
    screening: list[bool] = Field(min_length=6, max_length=6)


class CheckInSubmitResponse(BaseModel):
    check_in_id: str
    final_tier: TierKey
    display_name: str
    color: str
    deterministic_tier: TierKey
    ai_tier: TierKey | None
    provenance: str
    explanation: str
    recommendations: list[str] = Field(default_factory=list)
    safety_plan_order: list[int] | None = None
    crisis: CrisisResponse | None = None
    debug: dict[str, Any] = Field(default_factory=dict)


class LongitudinalResponse(BaseModel):
    user_id: str
    state: LongitudinalStateRecord | None
    digest: str
    escalate: bool
    escalate_reason: str | None = None
    stale: bool = False


class EscalationPayload(BaseModel):
    title: str
    message: str
    call_number: str
    text_number: str


class CrisisResponse(BaseModel):
    user_id: str
    status: str
    started_at: datetime | None = None
    remaining_sec: float
    loop_count: int = 0
    escalation: EscalationPayload | None = None
    follow_up_due_at: datetime | None = None


class CrisisRecheckRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    response: RecheckResponse


class CrisisResolveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    started_at: datetime | None = None
    ended_at: datetime | None = None


class SafetyPlanSectionItem(BaseModel):
    id: int
    title: str


class SafetyPlanOrderResponse(BaseModel):
    order: list[SafetyPlanSectionItem]
    source: Literal["rule_based", "model"]
    rerank_pending: bool = False


class ReportRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    recipient: Recipient = "Primary Care Provider"
    patient_name: str = Field(default="", max_length=256)
    transcript: str = Field(default="", max_length=20000)
    behavioral_report: str = Field(default="", max_length=20000)


class ReportResponse(BaseModel):
    report: str
    tier: TierKey
    recipient: str
    debug: dict[str, Any] = Field(default_factory=dict)


class ExplanationResponse(BaseModel):
    explanation: str
    used_fallback: bool


class ContextIngestRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document_text: str = Field(min_length=1, max_length=50000)
    document_type: str = Field(default="Discharge Summary", min_length=1, max_length=128)


class ContextIngestResponse(BaseModel):
    queued: bool
    pending: int


CheckInSubmitResponse.model_rebuild()

app = FastAPI(title="watchpost check-in service")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_config() -> PipelineConfig:
    existing = getattr(app.state, "config", None)
    if isinstance(existing, PipelineConfig):
        return existing
    created = load_config()
    logging.getLogger("watchpost").setLevel(created.WATCHPOST_LOG_LEVEL.upper())
    setattr(app.state, "config", created)
    return created


def _get_store() -> CheckInStore:
    existing = getattr(app.state, "store", None)
    if isinstance(existing, CheckInStore):
        return existing
    config = _get_config()
    created: CheckInStore
    if config.WATCHPOST_STORE_DIR:
        created = JsonFileCheckInStore(Path(config.WATCHPOST_STORE_DIR).expanduser())
    else:
        created = InMemoryCheckInStore()
    setattr(app.state, "store", created)
    return created


def _get_orchestrator() -> InferenceOrchestrator:
    existing = getattr(app.state, "orchestrator", None)
    if isinstance(existing, InferenceOrchestrator):
        return existing
    config = _get_config()
    backend = None
    if config.WATCHPOST_MODEL_ENABLED:
        backend = LlamaCppBackend(
            config.WATCHPOST_MEDGEMMA_GGUF or None,
            n_ctx=config.WATCHPOST_LLAMA_CPP_N_CTX,
            n_gpu_layers=config.WATCHPOST_LLAMA_CPP_N_GPU_LAYERS,
            n_threads=config.WATCHPOST_LLAMA_CPP_N_THREADS,
            chat_format=config.WATCHPOST_LLAMA_CPP_CHAT_FORMAT,
            debug_log=config.WATCHPOST_MEDGEMMA_DEBUG_LOG,
        )
    created = InferenceOrchestrator(
        backend,
        generation_config=GenerationConfig(
            temperature=config.WATCHPOST_LLM_TEMPERATURE,
            top_k=config.WATCHPOST_LLM_TOP_K,
            top_p=config.WATCHPOST_LLM_TOP_P,
            max_tokens=config.WATCHPOST_LLM_MAX_TOKENS,
            repeat_penalty=config.WATCHPOST_LLM_REPEAT_PENALTY,
        ),
        first_fragment_timeout_sec=config.WATCHPOST_FIRST_FRAGMENT_TIMEOUT_SEC,
        total_timeout_sec=config.WATCHPOST_INFERENCE_TIMEOUT_SEC,
        load_timeout_sec=config.WATCHPOST_MODEL_LOAD_TIMEOUT_SEC,
    )
    setattr(app.state, "orchestrator", created)
    return created


def _get_pipeline() -> CheckInPipeline:
    existing = getattr(app.state, "pipeline", None)
    if isinstance(existing, CheckInPipeline):
        return existing
    config = _get_config()
    composer = PromptComposer(
        load_prompt_specs(config.WATCHPOST_PROMPTS_PATH or None),
        history_budget=config.WATCHPOST_HISTORY_BUDGET,
        telemetry_budget=config.WATCHPOST_TELEMETRY_BUDGET,
        transcript_budget=config.WATCHPOST_TRANSCRIPT_BUDGET,
        voice_budget=config.WATCHPOST_VOICE_BUDGET,
    )
    created = CheckInPipeline.from_config(
        config,
        _get_orchestrator(),
        _get_store(),
        composer=composer,
        signal_source=getattr(app.state, "signal_source", None),
        notifier=getattr(app.state, "contact_notifier", None),
    )
    setattr(app.state, "pipeline", created)
    return created


def _build_health(payload: MultimodalInput) -> HealthSignalSnapshot | None:
    if not payload.health:
        return None
    return HealthSignalSnapshot.from_histories(
        {name: item.current for name, item in payload.health.items()},
        {name: item.history for name, item in payload.health.items()},
    )


def _build_inputs(payload: MultimodalInput, screening: ScreeningResponse | None) -> CheckInInputs:
    return CheckInInputs(
        screening=screening,
        health=_build_health(payload),
        transcript=payload.transcript,
        voice=VoiceTelemetry(**payload.voice.model_dump()) if payload.voice is not None else None,
        behavioral_report=payload.behavioral_report,
        wpm=payload.wpm,
        check_in_type=payload.check_in_type,
    )


def _crisis_response(user_id: str, view: CrisisView) -> CrisisResponse:
    escalation = None
    if view.escalation is not None:
        escalation = EscalationPayload(
            title=view.escalation.title,
            message=view.escalation.message,
            call_number=view.escalation.call_number,
            text_number=view.escalation.text_number,
        )
    return CrisisResponse(
        user_id=user_id,
        status=view.status,
        started_at=view.started_at,
        remaining_sec=round(view.remaining_sec, 3),
        loop_count=view.loop_count,
        escalation=escalation,
        follow_up_due_at=view.follow_up_due_at,
    )


def _section_items(order: list[SafetyPlanSection]) -> list[SafetyPlanSectionItem]:
    return [SafetyPlanSectionItem(id=int(section), title=section.title) for section in order]


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    orchestrator = _get_orchestrator()
    return {"status": "ok", "model_loaded": orchestrator.is_loaded, "engine_state": orchestrator.state}


@app.post("/checkin/{user_id}/start")
async def checkin_start(user_id: UserId, payload: CheckInStartRequest) -> dict[str, Any]:
    pipeline = _get_pipeline()
    pipeline.start_proactive_assessment(user_id, _build_inputs(payload, None))
    return {"user_id": user_id, "proactive_assessment": "started"}


@app.post("/checkin/{user_id}/submit", response_model=CheckInSubmitResponse)
async def checkin_submit(user_id: UserId, payload: CheckInSubmitRequest) -> CheckInSubmitResponse:
    pipeline = _get_pipeline()
    screening = ScreeningResponse.from_answers(payload.screening)
    result = await pipeline.submit_check_in(user_id, _build_inputs(payload, screening))
    final_tier = result.reconciliation.final_tier
    return CheckInSubmitResponse(
        check_in_id=result.record.check_in_id,
        final_tier=result.record.final_tier,
        display_name=final_tier.display_name,
        color=final_tier.color,
        deterministic_tier=result.record.deterministic_tier,
        ai_tier=result.record.ai_tier,
        provenance=result.reconciliation.provenance,
        explanation=result.reconciliation.explanation,
        recommendations=list(result.assessment.recommendations),
        safety_plan_order=[int(s) for s in result.safety_plan_order] if result.safety_plan_order else None,
        crisis=_crisis_response(user_id, result.crisis) if result.crisis is not None else None,
        debug={
            "path": result.path,
            "used_fallback": result.used_fallback,
            "failure_codes": list(result.record.failure_codes),
            "persisted": result.persisted,
            "assessment_source": result.assessment.source,
            "trajectory": result.state.trajectory,
            "primary_driver": result.state.primary_driver,
        },
    )


@app.get("/longitudinal/{user_id}", response_model=LongitudinalResponse)
async def longitudinal_get(user_id: UserId) -> LongitudinalResponse:
    pipeline = _get_pipeline()
    state = pipeline.load_state(user_id)
    modifiers = risk_modifiers(state)
    return LongitudinalResponse(
        user_id=user_id,
        state=LongitudinalStateRecord.from_state(state) if state is not None else None,
        digest=format_for_prompt(state, budget=_get_config().WATCHPOST_HISTORY_BUDGET),
        escalate=modifiers.escalate,
        escalate_reason=modifiers.reason,
        stale=is_stale(state, pipeline.clock(), staleness_days=pipeline.staleness_days) if state is not None else False,
    )


@app.post("/longitudinal/{user_id}/reset")
async def longitudinal_reset(user_id: UserId) -> dict[str, str]:
    _get_pipeline().reset_state(user_id)
    return {"user_id": user_id, "status": "reset"}


@app.get("/crisis/{user_id}", response_model=CrisisResponse)
async def crisis_get(user_id: UserId) -> CrisisResponse:
    machine = _get_pipeline().crisis_machine(user_id)
    return _crisis_response(user_id, machine.view())


@app.post("/crisis/{user_id}/enter", response_model=CrisisResponse)
async def crisis_enter(user_id: UserId) -> CrisisResponse:
    machine = _get_pipeline().crisis_machine(user_id)
    return _crisis_response(user_id, machine.enter_crisis())


@app.post("/crisis/{user_id}/recheck", response_model=CrisisResponse)
async def crisis_recheck(user_id: UserId, payload: CrisisRecheckRequest) -> CrisisResponse:
    machine = _get_pipeline().crisis_machine(user_id)
    if not machine.in_crisis:
        raise HTTPException(status_code=409, detail="No active crisis session.")
    return _crisis_response(user_id, machine.recheck(payload.response))


@app.post("/crisis/{user_id}/resolve", response_model=CrisisResponse)
async def crisis_resolve(user_id: UserId, payload: CrisisResolveRequest | None = None) -> CrisisResponse:
    machine = _get_pipeline().crisis_machine(user_id)
    if not machine.in_crisis:
        raise HTTPException(status_code=409, detail="No active crisis session.")
    body = payload or CrisisResolveRequest()
    if body.started_at and body.ended_at and body.ended_at < body.started_at:
        raise HTTPException(status_code=400, detail="ended_at must not be before started_at.")
    return _crisis_response(user_id, machine.resolve_crisis(body.started_at, body.ended_at))


@app.post("/crisis/{user_id}/missed-follow-up", response_model=CrisisResponse)
async def crisis_missed_follow_up(user_id: UserId) -> CrisisResponse:
    machine = _get_pipeline().crisis_machine(user_id)
    return _crisis_response(user_id, machine.handle_missed_follow_up())


@app.post("/crisis/{user_id}/follow-up/complete")
async def crisis_follow_up_complete(user_id: UserId) -> dict[str, str]:
    _get_pipeline().crisis_machine(user_id).complete_follow_up()
    return {"user_id": user_id, "status": "completed"}


@app.get("/safety-plan/{user_id}/order", response_model=SafetyPlanOrderResponse)
async def safety_plan_order_get(user_id: UserId) -> SafetyPlanOrderResponse:
    pipeline = _get_pipeline()
    order, source = pipeline.safety_plan_order(user_id)
    return SafetyPlanOrderResponse(
        order=_section_items(order),
        source=source,  # type: ignore[arg-type]
        rerank_pending=pipeline.rerank_pending(user_id),
    )


@app.post("/safety-plan/{user_id}/order", response_model=SafetyPlanOrderResponse)
async def safety_plan_order(user_id: UserId) -> SafetyPlanOrderResponse:
    """Rule order right away; a model ranking is started in the background when none has landed."""
    pipeline = _get_pipeline()
    state = pipeline.load_state(user_id)
    order, source = pipeline.safety_plan_order(user_id, state)
    if source == "rule_based":
        pipeline.schedule_safety_plan_rerank(user_id, state)
    return SafetyPlanOrderResponse(
        order=_section_items(order),
        source=source,  # type: ignore[arg-type]
        rerank_pending=pipeline.rerank_pending(user_id),
    )


@app.post("/report/{user_id}", response_model=ReportResponse)
async def handoff_report(user_id: UserId, payload: ReportRequest) -> ReportResponse:
    pipeline = _get_pipeline()
    check_ins = pipeline.store.list_check_ins(user_id)
    if not check_ins:
        raise HTTPException(status_code=404, detail="No check-ins recorded for this user.")
    latest = check_ins[-1]
    config = _get_config()
    text, outcome = await generate_handoff_report(
        pipeline.orchestrator,
        pipeline.composer,
        tier=tier_from_key(latest.final_tier),
        recipient=payload.recipient,
        state=pipeline.load_state(user_id),
        screening=ScreeningResponse.from_answers(latest.screening),
        behavioral_report=payload.behavioral_report,
        transcript=payload.transcript,
        patient_name=payload.patient_name,
        max_chars=config.WATCHPOST_REPORT_MAX_CHARS,
        grace_chars=config.WATCHPOST_REPORT_GRACE_CHARS,
    )
    return ReportResponse(
        report=text,
        tier=latest.final_tier,
        recipient=payload.recipient,
        debug={
            "state": outcome.state,
            "used_fallback": outcome.used_fallback,
            "stop_reason": outcome.stop_reason,
            "fragments": outcome.fragments,
            "elapsed_ms": outcome.elapsed_ms,
        },
    )


@app.get("/explain/{user_id}", response_model=ExplanationResponse)
async def explain(user_id: UserId) -> ExplanationResponse:
    explanation, used_fallback = await _get_pipeline().explain_risk(user_id)
    return ExplanationResponse(explanation=explanation, used_fallback=used_fallback)


@app.post("/context/{user_id}/ingest", response_model=ContextIngestResponse, status_code=202)
async def context_ingest(user_id: UserId, payload: ContextIngestRequest) -> ContextIngestResponse:
    pipeline = _get_pipeline()
    if not payload.document_text.strip():
        raise HTTPException(status_code=400, detail="Document text is empty.")
    pipeline.ingest_clinical_document(user_id, payload.document_text, payload.document_type)
    return ContextIngestResponse(queued=True, pending=pipeline.narrative_queue.pending(user_id))


@app.post("/engine/suspend")
async def engine_suspend() -> dict[str, str]:
    await _get_orchestrator().suspend()
    return {"status": "suspended"}


@app.post("/persistence/retry")
async def persistence_retry() -> dict[str, int]:
    queue = _get_pipeline().retry_queue
    recovered = queue.retry_pending()
    return {"recovered": recovered, "pending": len(queue)}
