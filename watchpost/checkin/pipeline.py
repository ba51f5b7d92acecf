from __future__ import annotations

"""
Check-in submission pipeline.

Design intent:
- The safety floor is computed first and independently; nothing downstream can lower it.
- Submission prefers the proactive assessment task started earlier in the session; without
  one it re-fetches signals and runs inference just in time under the same timeouts.
- Every model-path failure degrades to the deterministic responder and is logged, never raised.
- Narrative updates are fire-and-forget and serialized per user through the narrative queue.
- Longitudinal state is re-read and written under the per-user state lock, so a narrative
  job landing while a check-in is in flight is never overwritten.
- Persistence failures, including unreadable records, are logged and queued for retry;
  the check-in still completes.
- On crisis entry the rule-based safety-plan order is returned at once; the model ranking
  runs in the background and replaces it only when it is a complete permutation.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Sequence
from uuid import uuid4

from watchpost.crisis.safety_plan import SafetyPlanReranker, SafetyPlanSection, rule_based_order
from watchpost.crisis.state_machine import ContactNotifier, CrisisStateMachine, CrisisView
from watchpost.inference.orchestrator import GenerationOutcome, InferenceOrchestrator, StopPolicy
from watchpost.inference.parser import parse_assessment, strip_thinking
from watchpost.internal_core.audit import log_event
from watchpost.internal_core.config import PipelineConfig
from watchpost.internal_core.contracts import AssessmentRecord, CheckInRecord, LongitudinalStateRecord, tier_from_key
from watchpost.internal_core.errors import GenerationCancelled, ParseFailure, PersistenceFailure
from watchpost.internal_core.store import CheckInStore, PersistenceRetryQueue, persist_or_queue
from watchpost.longitudinal import compressor
from watchpost.longitudinal.compressor import LongitudinalState
from watchpost.longitudinal.narrative_queue import NarrativeUpdateQueue
from watchpost.prompts.composer import PromptComposer
from watchpost.risk import responder
from watchpost.risk.models import ClinicalAssessment, DetectedPattern, HealthSignalSnapshot, RiskTier, ScreeningResponse
from watchpost.risk.reconciler import Reconciliation, reconcile
from watchpost.risk.safety_floor import tier_from_screening
from watchpost.risk.signals import VoiceTelemetry
from watchpost.utils.text import truncate_to_sentences

logger = logging.getLogger(__name__)

EXPLANATION_FALLBACK = (
    "Unable to generate explanation (AI model offline). "
    "Risk level is based on your most recent check-in protocol."
)
SKIPPED_TRANSCRIPT = "User skipped audio check-in."
SKIPPED_BEHAVIOR = "User skipped visual check-in."


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HealthSignalSource(Protocol):
    async def fetch(self, user_id: str) -> Optional[HealthSignalSnapshot]: ...


@dataclass(frozen=True)
class CheckInInputs:
    screening: Optional[ScreeningResponse] = None
    health: Optional[HealthSignalSnapshot] = None
    transcript: str = ""
    voice: Optional[VoiceTelemetry] = None
    behavioral_report: str = ""
    wpm: Optional[float] = None
    check_in_type: str = "daily"


@dataclass(frozen=True)
class ModelRun:
    """Result of one risk-assessment generation; `assessment` is None when the model path failed."""

    assessment: Optional[ClinicalAssessment]
    outcome: Optional[GenerationOutcome]
    health: Optional[HealthSignalSnapshot]
    failure_codes: tuple[str, ...] = ()


@dataclass(frozen=True)
class CheckInResult:
    record: CheckInRecord
    reconciliation: Reconciliation
    assessment: ClinicalAssessment
    state: LongitudinalState
    used_fallback: bool
    persisted: bool
    path: str
    safety_plan_order: Optional[list[SafetyPlanSection]] = None
    crisis: Optional[CrisisView] = None
    narrative_task: Optional[asyncio.Task] = field(default=None, compare=False, repr=False)
    rerank_task: Optional[asyncio.Task] = field(default=None, compare=False, repr=False)


class CheckInPipeline:
    def __init__(
        self,
        orchestrator: InferenceOrchestrator,
        store: CheckInStore,
        *,
        composer: Optional[PromptComposer] = None,
        signal_source: Optional[HealthSignalSource] = None,
        narrative_queue: Optional[NarrativeUpdateQueue] = None,
        retry_queue: Optional[PersistenceRetryQueue] = None,
        notifier: Optional[ContactNotifier] = None,
        clock: Callable[[], datetime] = utc_now,
        moderate_z: float = responder.DEFAULT_MODERATE_Z,
        severe_z: float = responder.DEFAULT_SEVERE_Z,
        q3_tier: RiskTier = RiskTier.MODERATE,
        inference_timeout_sec: float = 60.0,
        narrative_timeout_sec: float = 30.0,
        rerank_timeout_sec: float = 15.0,
        health_fetch_timeout_sec: float = 5.0,
        staleness_days: int = compressor.DEFAULT_STALENESS_DAYS,
        history_budget: int = compressor.DEFAULT_PROMPT_BUDGET,
        crisis_window_sec: int = 600,
        follow_up_hours: int = 4,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.composer = composer or PromptComposer(history_budget=history_budget)
        self.signal_source = signal_source
        self.narrative_queue = narrative_queue or NarrativeUpdateQueue()
        self.retry_queue = retry_queue or PersistenceRetryQueue()
        self.notifier = notifier
        self.clock = clock
        self.moderate_z = float(moderate_z)
        self.severe_z = float(severe_z)
        self.q3_tier = q3_tier
        self.inference_timeout_sec = float(inference_timeout_sec)
        self.narrative_timeout_sec = float(narrative_timeout_sec)
        self.health_fetch_timeout_sec = float(health_fetch_timeout_sec)
        self.staleness_days = int(staleness_days)
        self.crisis_window_sec = int(crisis_window_sec)
        self.follow_up_hours = int(follow_up_hours)
        self.reranker = SafetyPlanReranker(orchestrator, self.composer, timeout_sec=rerank_timeout_sec)
        self._proactive: dict[str, asyncio.Task[ModelRun]] = {}
        self._ranked_orders: dict[str, list[SafetyPlanSection]] = {}
        self._rerank_tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        orchestrator: InferenceOrchestrator,
        store: CheckInStore,
        *,
        composer: Optional[PromptComposer] = None,
        signal_source: Optional[HealthSignalSource] = None,
        notifier: Optional[ContactNotifier] = None,
    ) -> "CheckInPipeline":
        return cls(
            orchestrator,
            store,
            composer=composer,
            signal_source=signal_source,
            notifier=notifier,
            moderate_z=config.WATCHPOST_MODERATE_Z,
            severe_z=config.WATCHPOST_SEVERE_Z,
            q3_tier=config.WATCHPOST_Q3_TIER,
            inference_timeout_sec=config.WATCHPOST_INFERENCE_TIMEOUT_SEC,
            narrative_timeout_sec=config.WATCHPOST_NARRATIVE_TIMEOUT_SEC,
            rerank_timeout_sec=config.WATCHPOST_RERANK_TIMEOUT_SEC,
            health_fetch_timeout_sec=config.WATCHPOST_HEALTH_FETCH_TIMEOUT_SEC,
            staleness_days=config.WATCHPOST_STALENESS_DAYS,
            history_budget=config.WATCHPOST_HISTORY_BUDGET,
            crisis_window_sec=config.WATCHPOST_CRISIS_WINDOW_SEC,
            follow_up_hours=config.WATCHPOST_FOLLOW_UP_HOURS,
        )

    # ----- state -----

    def load_state(self, user_id: str) -> Optional[LongitudinalState]:
        try:
            record = self.store.load_state(user_id)
        except PersistenceFailure as exc:
            logger.error("Longitudinal state unreadable for user=%s: %s %s", user_id, exc.message, exc.detail)
            return None
        return record.to_state() if record is not None else None

    def _save_state(self, user_id: str, state: LongitudinalState) -> bool:
        record = LongitudinalStateRecord.from_state(state)
        return persist_or_queue(
            self.retry_queue,
            f"state:{user_id}",
            lambda: self.store.save_state(user_id, record),
        )

    async def _write_state(
        self,
        user_id: str,
        change: Callable[[Optional[LongitudinalState]], LongitudinalState],
    ) -> tuple[LongitudinalState, bool]:
        """Apply `change` to the latest stored state under the user's state lock."""

        async with self.narrative_queue.state_lock(user_id):
            state = change(self.current_state(user_id))
            return state, self._save_state(user_id, state)

    def current_state(self, user_id: str) -> Optional[LongitudinalState]:
        """Latest state, replaced by a fresh one (persisted and audited) when stale."""

        state = self.load_state(user_id)
        refreshed, was_reset = compressor.refresh_if_stale(state, self.clock(), staleness_days=self.staleness_days)
        if was_reset and refreshed is not None:
            self._save_state(user_id, refreshed)
            log_event(self.store, user_id, "state", "state_reset_stale", retry_queue=self.retry_queue)
        return refreshed

    def reset_state(self, user_id: str) -> None:
        persist_or_queue(self.retry_queue, f"state:{user_id}", lambda: self.store.clear_state(user_id))
        log_event(self.store, user_id, "state", "state_reset_user", retry_queue=self.retry_queue)

    def update_longitudinal_state(
        self,
        prior: Optional[LongitudinalState],
        assessment: ClinicalAssessment,
        elapsed_days: Optional[int] = None,
        *,
        final_tier: Optional[RiskTier] = None,
        screening: Optional[ScreeningResponse] = None,
        health: Optional[HealthSignalSnapshot] = None,
    ) -> LongitudinalState:
        return compressor.update_from_assessment(
            prior,
            assessment,
            elapsed_days,
            final_tier=final_tier,
            screening=screening,
            health=health,
            now=self.clock(),
            moderate_z=self.moderate_z,
            severe_z=self.severe_z,
        )

    # ----- assessment -----

    def deterministic_response(
        self, screening: ScreeningResponse, health: Optional[HealthSignalSnapshot]
    ) -> responder.FallbackResponse:
        return responder.respond(screening, health, moderate_z=self.moderate_z, severe_z=self.severe_z)

    async def _run_model(self, inputs: CheckInInputs, prior_state: Optional[LongitudinalState]) -> ModelRun:
        prompt = self.composer.risk_assessment(
            screening=inputs.screening,
            health=inputs.health,
            state=prior_state,
            transcript=inputs.transcript,
            voice=inputs.voice,
            behavioral_report=inputs.behavioral_report,
            wpm=inputs.wpm,
        )
        outcome = await self.orchestrator.generate(
            prompt,
            fallback="",
            stop_policy=StopPolicy(max_chars=800),
            label="risk_assessment",
            total_timeout_sec=self.inference_timeout_sec,
        )
        if outcome.used_fallback:
            return ModelRun(None, outcome, inputs.health, (outcome.error_code or "empty_generation",))
        try:
            assessment = parse_assessment(outcome.text)
        except ParseFailure as exc:
            logger.warning("ParseFailure during risk_assessment (request=%s): %s", outcome.request_id, exc.detail)
            return ModelRun(None, outcome, inputs.health, (exc.code,))
        return ModelRun(assessment, outcome, inputs.health)

    async def assess(
        self,
        screening: ScreeningResponse,
        health: Optional[HealthSignalSnapshot] = None,
        telemetry: str = "",
        voice: Optional[VoiceTelemetry] = None,
        prior_state: Optional[LongitudinalState] = None,
        *,
        transcript: str = "",
        wpm: Optional[float] = None,
    ) -> ClinicalAssessment:
        """Model assessment, or the deterministic responder's when the model path cannot answer."""

        inputs = CheckInInputs(
            screening=screening,
            health=health,
            transcript=transcript,
            voice=voice,
            behavioral_report=telemetry,
            wpm=wpm,
        )
        run = await self._run_model(inputs, prior_state)
        if run.assessment is not None:
            return run.assessment
        return self.deterministic_response(screening, health).assessment

    async def _fetch_health(self, user_id: str, current: Optional[HealthSignalSnapshot]) -> Optional[HealthSignalSnapshot]:
        if current is not None or self.signal_source is None:
            return current
        try:
            return await asyncio.wait_for(self.signal_source.fetch(user_id), timeout=self.health_fetch_timeout_sec)
        except asyncio.TimeoutError:
            logger.warning("Health signal fetch timed out after %.1fs for user=%s", self.health_fetch_timeout_sec, user_id)
        except Exception:
            logger.warning("Health signal fetch failed for user=%s", user_id, exc_info=True)
        return None

    def start_proactive_assessment(self, user_id: str, inputs: CheckInInputs) -> asyncio.Task[ModelRun]:
        """Start inference while the questionnaire is still being answered."""

        previous = self._proactive.pop(user_id, None)
        if previous is not None and not previous.done():
            previous.cancel()

        async def _proactive() -> ModelRun:
            health = await self._fetch_health(user_id, inputs.health)
            prepared = CheckInInputs(
                screening=inputs.screening,
                health=health,
                transcript=inputs.transcript,
                voice=inputs.voice,
                behavioral_report=inputs.behavioral_report,
                wpm=inputs.wpm,
                check_in_type=inputs.check_in_type,
            )
            return await self._run_model(prepared, self.current_state(user_id))

        task = asyncio.get_running_loop().create_task(_proactive())
        self._proactive[user_id] = task
        return task

    def has_proactive_assessment(self, user_id: str) -> bool:
        return user_id in self._proactive

    async def _await_proactive(self, task: asyncio.Task[ModelRun]) -> ModelRun:
        try:
            return await task
        except asyncio.CancelledError:
            logger.warning("Proactive assessment was cancelled; using deterministic responder.")
            return ModelRun(None, None, None, (GenerationCancelled.code,))

    # ----- submission -----

    async def submit_check_in(self, user_id: str, inputs: CheckInInputs) -> CheckInResult:
        if inputs.screening is None:
            raise ValueError("Screening answers are required to submit a check-in.")
        screening = inputs.screening
        floor = tier_from_screening(screening, q3_tier=self.q3_tier)
        # read for the prompt only; the update below re-reads under the state lock
        prompt_state = self.current_state(user_id)

        proactive = self._proactive.pop(user_id, None)
        if proactive is not None:
            path = "proactive"
            run = await self._await_proactive(proactive)
        else:
            path = "just_in_time"
            logger.info("No proactive assessment for user=%s; running just-in-time path", user_id)
            health = await self._fetch_health(user_id, inputs.health)
            jit_inputs = CheckInInputs(
                screening=screening,
                health=health,
                transcript=inputs.transcript or SKIPPED_TRANSCRIPT,
                voice=inputs.voice,
                behavioral_report=inputs.behavioral_report or SKIPPED_BEHAVIOR,
                wpm=inputs.wpm,
                check_in_type=inputs.check_in_type,
            )
            run = await self._run_model(jit_inputs, prompt_state)

        health = run.health if run.health is not None else inputs.health
        if run.assessment is not None:
            assessment = run.assessment
            used_fallback = False
        else:
            assessment = self.deterministic_response(screening, health).assessment
            used_fallback = True
            logger.info("Deterministic responder stands in for user=%s (%s)", user_id, ",".join(run.failure_codes))

        reconciliation = reconcile(
            floor,
            assessment.assessed_tier,
            assessment.reasoning,
            ai_source=assessment.source,
        )
        final_tier = reconciliation.final_tier

        record = CheckInRecord(
            check_in_id=uuid4().hex,
            user_id=user_id,
            created_at=self.clock(),
            screening=list(screening.as_tuple()),
            deterministic_tier=floor.key,
            ai_tier=assessment.assessed_tier.key,
            final_tier=final_tier.key,
            provenance=reconciliation.provenance,
            explanation=reconciliation.explanation,
            assessment=AssessmentRecord.from_assessment(assessment),
            used_fallback=used_fallback,
            failure_codes=list(run.failure_codes),
        )
        persisted = persist_or_queue(
            self.retry_queue,
            f"check_in:{user_id}:{record.check_in_id}",
            lambda: self.store.append_check_in(record),
        )

        state, state_saved = await self._write_state(
            user_id,
            lambda latest: self.update_longitudinal_state(
                latest,
                assessment,
                final_tier=final_tier,
                screening=screening,
                health=health,
            ),
        )
        persisted = state_saved and persisted
        log_event(
            self.store,
            user_id,
            "check_in",
            "check_in_submitted",
            f"final={final_tier.key} floor={floor.key} provenance={reconciliation.provenance} path={path}",
            retry_queue=self.retry_queue,
        )

        order: Optional[list[SafetyPlanSection]] = None
        crisis_view: Optional[CrisisView] = None
        rerank_task: Optional[asyncio.Task] = None
        if final_tier == RiskTier.CRISIS:
            crisis_view = self.crisis_machine(user_id).enter_crisis()
            order = rule_based_order(state.primary_driver)
            rerank_task = self.schedule_safety_plan_rerank(user_id, state)

        narrative_task = self.schedule_narrative_update(user_id, final_tier, inputs, health)

        return CheckInResult(
            record=record,
            reconciliation=reconciliation,
            assessment=assessment,
            state=state,
            used_fallback=used_fallback,
            persisted=persisted,
            path=path,
            safety_plan_order=order,
            crisis=crisis_view,
            narrative_task=narrative_task,
            rerank_task=rerank_task,
        )

    def crisis_machine(self, user_id: str) -> CrisisStateMachine:
        return CrisisStateMachine(
            self.store,
            user_id,
            window_sec=self.crisis_window_sec,
            follow_up_hours=self.follow_up_hours,
            clock=self.clock,
            notifier=self.notifier,
            retry_queue=self.retry_queue,
        )

    # ----- narrative -----

    async def _replace_narrative(self, user_id: str, prompt: str, label: str) -> bool:
        outcome = await self.orchestrator.generate(
            prompt,
            fallback="",
            stop_policy=StopPolicy(max_chars=1200),
            label=label,
            total_timeout_sec=self.narrative_timeout_sec,
        )
        narrative = strip_thinking(outcome.text) if not outcome.used_fallback else ""
        if not narrative:
            logger.info("%s produced no narrative for user=%s; keeping previous narrative", label, user_id)
            return False
        await self._write_state(
            user_id,
            lambda latest: compressor.with_narrative(latest or compressor.create_fresh_state(self.clock()), narrative),
        )
        log_event(self.store, user_id, "narrative", f"{label}_applied", retry_queue=self.retry_queue)
        return True

    def schedule_narrative_update(
        self,
        user_id: str,
        tier: RiskTier,
        inputs: CheckInInputs,
        health: Optional[HealthSignalSnapshot],
    ) -> asyncio.Task:
        async def _job() -> None:
            current = self.load_state(user_id)
            prompt = self.composer.narrative_update(
                previous_summary=current.narrative if current is not None else None,
                tier=tier,
                transcript=inputs.transcript,
                health=health,
                check_in_type=inputs.check_in_type,
            )
            await self._replace_narrative(user_id, prompt, "narrative_update")

        return self.narrative_queue.submit(user_id, _job)

    def ingest_clinical_document(
        self,
        user_id: str,
        document_text: str,
        document_type: str = "Discharge Summary",
    ) -> asyncio.Task:
        if not document_text.strip():
            raise ValueError("Document text is empty.")

        async def _job() -> None:
            current = self.load_state(user_id)
            prompt = self.composer.context_ingestion(
                current_summary=current.narrative if current is not None else None,
                document_text=document_text,
                document_type=document_type,
            )
            await self._replace_narrative(user_id, prompt, "context_ingestion")

        return self.narrative_queue.submit(user_id, _job)

    # ----- explanation / rerank -----

    async def explain_risk(self, user_id: str) -> tuple[str, bool]:
        try:
            check_ins = self.store.list_check_ins(user_id)
        except PersistenceFailure as exc:
            logger.error("Check-in history unreadable for user=%s: %s %s", user_id, exc.message, exc.detail)
            return EXPLANATION_FALLBACK, True
        if not check_ins:
            return EXPLANATION_FALLBACK, True
        latest = check_ins[-1]
        tier = tier_from_key(latest.final_tier)
        prompt = self.composer.risk_explanation(
            tier=tier,
            state=self.load_state(user_id),
            screening=ScreeningResponse.from_answers(latest.screening),
            health=None,
            time_ago=_time_ago(latest.created_at, self.clock()),
            data_source="Columbia screening" if latest.provenance == "safety_floor" else "AI clinical assessment",
        )
        outcome = await self.orchestrator.generate(
            prompt,
            fallback=EXPLANATION_FALLBACK,
            stop_policy=StopPolicy(max_chars=600),
            label="risk_explanation",
            total_timeout_sec=self.inference_timeout_sec,
        )
        if outcome.used_fallback:
            return outcome.text, True
        explanation = truncate_to_sentences(strip_thinking(outcome.text), 2)
        if not explanation:
            return EXPLANATION_FALLBACK, True
        return explanation, False

    async def rerank(
        self,
        prior_state: Optional[LongitudinalState],
        detected_patterns: Sequence[DetectedPattern] = (),
    ) -> Optional[list[SafetyPlanSection]]:
        return await self.reranker.rerank(prior_state, detected_patterns)

    def safety_plan_order(
        self, user_id: str, state: Optional[LongitudinalState] = None
    ) -> tuple[list[SafetyPlanSection], str]:
        """Validated model ranking when one has landed, otherwise the rule order. Never waits."""

        ranked = self._ranked_orders.get(user_id)
        if ranked is not None:
            return list(ranked), "model"
        if state is None:
            state = self.load_state(user_id)
        return rule_based_order(state.primary_driver if state is not None else None), "rule_based"

    def rerank_pending(self, user_id: str) -> bool:
        task = self._rerank_tasks.get(user_id)
        return task is not None and not task.done()

    def schedule_safety_plan_rerank(self, user_id: str, state: Optional[LongitudinalState]) -> asyncio.Task:
        """Rank the sections in the background; the rule order stays in effect until it lands."""

        previous = self._rerank_tasks.get(user_id)
        if previous is not None and not previous.done():
            return previous
        self._ranked_orders.pop(user_id, None)
        patterns = state.detected_patterns if state is not None else ()

        async def _job() -> None:
            ranked = await self.reranker.rerank(state, patterns)
            if ranked is None:
                return
            self._ranked_orders[user_id] = ranked
            log_event(
                self.store,
                user_id,
                "safety_plan",
                "safety_plan_reranked",
                "order=" + ",".join(str(int(section)) for section in ranked),
                retry_queue=self.retry_queue,
            )

        # shares the per-user queue so the ranking never supersedes a narrative generation
        task = self.narrative_queue.submit(user_id, _job)
        self._rerank_tasks[user_id] = task
        return task


def _time_ago(then: datetime, now: datetime) -> str:
    seconds = max(0, int((now - then).total_seconds()))
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60} minutes ago"
    if seconds < 86400:
        return f"{seconds // 3600} hours ago"
    return f"{seconds // 86400} days ago"
