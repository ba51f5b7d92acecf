import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from watchpost.checkin.pipeline import EXPLANATION_FALLBACK, CheckInInputs, CheckInPipeline
from watchpost.crisis.safety_plan import SafetyPlanSection, rule_based_order
from watchpost.inference.engine import GenerationBackend, GenerationConfig
from watchpost.inference.orchestrator import InferenceOrchestrator
from watchpost.internal_core.contracts import LongitudinalStateRecord
from watchpost.internal_core.errors import PersistenceFailure
from watchpost.internal_core.store import InMemoryCheckInStore, JsonFileCheckInStore
from watchpost.longitudinal.compressor import LongitudinalState
from watchpost.risk.models import RiskTier, ScreeningResponse

NOW = datetime(2026, 6, 10, 9, 0, tzinfo=timezone.utc)

_ROUTES = (
    ("Assess mental health risk", "risk"),
    ("clinical continuity note", "narrative"),
    ("clinical explainability engine", "explain"),
    ("Reorder safety plan sections", "rerank"),
    ("maintaining a clinical summary", "ingest"),
)


class RoutingBackend(GenerationBackend):
    """Answers each prompt kind with a canned response; callables receive the prompt."""

    def __init__(self, **responses) -> None:
        self.responses = {"risk": "green\nStable.", "narrative": "", "explain": "", "rerank": "", "ingest": ""}
        self.responses.update(responses)
        self.prompts: dict[str, list[str]] = {}
        self.loaded = False

    def load(self) -> None:
        self.loaded = True

    def stream(self, prompt: str, config: GenerationConfig):
        kind = next((name for marker, name in _ROUTES if marker in prompt), "other")
        self.prompts.setdefault(kind, []).append(prompt)
        response = self.responses.get(kind, "")
        text = response(prompt) if callable(response) else response
        if text:
            yield text

    def release(self) -> None:
        self.loaded = False

    def name(self) -> str:
        return "routing"

    @property
    def is_loaded(self) -> bool:
        return self.loaded


class FlakyStore(InMemoryCheckInStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    def _write(self, document) -> None:
        if self.fail:
            raise PersistenceFailure("disk full", detail="ENOSPC")
        super()._write(document)


def _screening(*positives: int) -> ScreeningResponse:
    return ScreeningResponse.from_answers([index in positives for index in range(1, 7)])


def _pipeline(backend, store=None, **kwargs) -> CheckInPipeline:
    orchestrator = InferenceOrchestrator(backend, first_fragment_timeout_sec=2.0, total_timeout_sec=5.0)
    return CheckInPipeline(orchestrator, store or InMemoryCheckInStore(), clock=lambda: NOW, **kwargs)


def _seed_state(store, **fields) -> None:
    fields.setdefault("last_updated", NOW - timedelta(days=1))
    store.save_state("vet-1", LongitudinalStateRecord.from_state(LongitudinalState(**fields)))


def test_model_cannot_lower_safety_floor() -> None:
    backend = RoutingBackend(risk="green\nLooks fine today.")
    store = InMemoryCheckInStore()

    async def _run():
        pipeline = _pipeline(backend, store)
        result = await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening(4)))
        await result.narrative_task
        return result

    result = asyncio.run(_run())
    assert result.path == "just_in_time"
    assert result.reconciliation.final_tier == RiskTier.CRISIS
    assert result.record.provenance == "safety_floor"
    assert result.record.ai_tier == "low"
    assert result.used_fallback is False
    assert result.crisis is not None and result.crisis.status == "active"
    assert result.state.primary_driver == "cssrs"
    assert result.safety_plan_order == rule_based_order("cssrs")
    assert result.safety_plan_order[0] == SafetyPlanSection.LETHAL_MEANS_REDUCTION
    assert store.load_crisis("vet-1") is not None


def test_model_can_raise_tier_above_floor() -> None:
    backend = RoutingBackend(risk="orange\nHRV dropped sharply over three days.")

    async def _run():
        return await _pipeline(backend).submit_check_in("vet-1", CheckInInputs(screening=_screening()))

    result = asyncio.run(_run())
    assert result.reconciliation.final_tier == RiskTier.HIGH_MONITORING
    assert result.record.provenance == "model"
    assert result.record.explanation == "HRV dropped sharply over three days."
    assert result.crisis is None
    assert result.safety_plan_order is None


def test_skipped_modalities_are_stated_in_just_in_time_prompt() -> None:
    backend = RoutingBackend()

    async def _run():
        return await _pipeline(backend).submit_check_in("vet-1", CheckInInputs(screening=_screening()))

    asyncio.run(_run())
    prompt = backend.prompts["risk"][0]
    assert "User skipped audio check-in." in prompt
    assert "User skipped visual check-in." in prompt


def test_unparseable_output_uses_deterministic_responder() -> None:
    backend = RoutingBackend(risk="lorem ipsum dolor sit amet")

    async def _run():
        return await _pipeline(backend).submit_check_in("vet-1", CheckInInputs(screening=_screening(1)))

    result = asyncio.run(_run())
    assert result.used_fallback is True
    assert result.record.failure_codes == ["parse_failure"]
    assert result.assessment.source == "deterministic"
    assert result.reconciliation.final_tier == RiskTier.MODERATE


def test_missing_model_degrades_to_floor() -> None:
    async def _run():
        return await _pipeline(None).submit_check_in("vet-1", CheckInInputs(screening=_screening(6)))

    result = asyncio.run(_run())
    assert result.used_fallback is True
    assert result.record.failure_codes == ["model_unavailable"]
    assert result.reconciliation.final_tier >= RiskTier.HIGH_MONITORING


def test_submit_requires_screening() -> None:
    async def _run():
        await _pipeline(None).submit_check_in("vet-1", CheckInInputs(transcript="hi"))

    with pytest.raises(ValueError):
        asyncio.run(_run())


def test_proactive_assessment_is_used_on_submit() -> None:
    backend = RoutingBackend(risk="yellow\nPoor sleep noted.")

    async def _run():
        pipeline = _pipeline(backend)
        pipeline.start_proactive_assessment("vet-1", CheckInInputs(transcript="Rough night, barely slept."))
        assert pipeline.has_proactive_assessment("vet-1") is True
        result = await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening()))
        return pipeline, result

    pipeline, result = asyncio.run(_run())
    assert result.path == "proactive"
    assert result.reconciliation.final_tier == RiskTier.MODERATE
    assert pipeline.has_proactive_assessment("vet-1") is False
    assert "Rough night, barely slept." in backend.prompts["risk"][0]
    assert len(backend.prompts["risk"]) == 1


def test_cancelled_proactive_assessment_falls_back() -> None:
    backend = RoutingBackend(risk="red\nShould not be used.")

    async def _run():
        pipeline = _pipeline(backend)
        task = pipeline.start_proactive_assessment("vet-1", CheckInInputs())
        task.cancel()
        return await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening()))

    result = asyncio.run(_run())
    assert result.path == "proactive"
    assert result.used_fallback is True
    assert result.record.failure_codes == ["generation_cancelled"]
    assert result.reconciliation.final_tier == RiskTier.LOW


def test_persistence_failure_is_queued_and_retried() -> None:
    backend = RoutingBackend()
    store = FlakyStore()
    store.fail = True

    async def _run():
        pipeline = _pipeline(backend, store)
        result = await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening()))
        await result.narrative_task
        return pipeline, result

    pipeline, result = asyncio.run(_run())
    assert result.persisted is False
    assert result.reconciliation.final_tier == RiskTier.LOW
    assert len(pipeline.retry_queue) >= 2
    assert store.list_check_ins("vet-1") == []

    store.fail = False
    assert pipeline.retry_queue.retry_pending() >= 2
    assert len(pipeline.retry_queue) == 0
    assert len(store.list_check_ins("vet-1")) == 1
    assert store.load_state("vet-1") is not None


def test_narrative_update_runs_in_background() -> None:
    backend = RoutingBackend(narrative="UPDATED SUMMARY:\nSleep remains poor; mood steady.")
    store = InMemoryCheckInStore()

    async def _run():
        pipeline = _pipeline(backend, store)
        result = await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening(), transcript="Tired."))
        await result.narrative_task
        return pipeline

    pipeline = asyncio.run(_run())
    assert pipeline.load_state("vet-1").narrative == "Sleep remains poor; mood steady."
    codes = [event.code for event in store.list_audit_events("vet-1")]
    assert "check_in_submitted" in codes
    assert "narrative_update_applied" in codes


def test_empty_narrative_keeps_previous_one() -> None:
    backend = RoutingBackend(narrative="")
    store = InMemoryCheckInStore()
    _seed_state(store, narrative="Discharged last month; sleep improving.", last_tier=RiskTier.LOW)

    async def _run():
        pipeline = _pipeline(backend, store)
        result = await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening()))
        await result.narrative_task
        return pipeline

    pipeline = asyncio.run(_run())
    state = pipeline.load_state("vet-1")
    assert state.narrative == "Discharged last month; sleep improving."
    assert state.check_in_count == 1


def test_context_ingestion_jobs_are_serialized_per_user() -> None:
    counter = {"n": 0}

    def _ingest(prompt: str) -> str:
        counter["n"] += 1
        return f"Summary v{counter['n']}"

    backend = RoutingBackend(ingest=_ingest)
    store = InMemoryCheckInStore()

    async def _run():
        pipeline = _pipeline(backend, store)
        first = pipeline.ingest_clinical_document("vet-1", "Inpatient stay for depression.")
        second = pipeline.ingest_clinical_document("vet-1", "Started sertraline 50mg.")
        assert pipeline.narrative_queue.pending("vet-1") == 2
        await asyncio.gather(first, second)
        return pipeline

    pipeline = asyncio.run(_run())
    assert "Summary v1" in backend.prompts["ingest"][1]
    assert pipeline.load_state("vet-1").narrative == "Summary v2"


def test_ingest_rejects_empty_document() -> None:
    with pytest.raises(ValueError):
        _pipeline(None).ingest_clinical_document("vet-1", "   ")


def test_explain_risk_without_check_ins_uses_fallback() -> None:
    async def _run():
        return await _pipeline(RoutingBackend()).explain_risk("vet-1")

    assert asyncio.run(_run()) == (EXPLANATION_FALLBACK, True)


def test_explain_risk_trims_to_two_sentences() -> None:
    backend = RoutingBackend(
        explain="<think>check flags</think>Intent was reported today. Sleep is far below baseline. Extra detail."
    )

    async def _run():
        pipeline = _pipeline(backend)
        result = await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening(4)))
        await result.narrative_task
        return await pipeline.explain_risk("vet-1")

    text, used_fallback = asyncio.run(_run())
    assert used_fallback is False
    assert text == "Intent was reported today. Sleep is far below baseline."


def test_stale_state_is_replaced_and_audited() -> None:
    store = InMemoryCheckInStore()
    _seed_state(store, narrative="Old.", check_in_count=9, last_updated=NOW - timedelta(days=45))
    pipeline = _pipeline(None, store)

    state = pipeline.current_state("vet-1")
    assert state.check_in_count == 0
    assert state.narrative is None
    assert store.load_state("vet-1").check_in_count == 0
    assert [event.code for event in store.list_audit_events("vet-1")] == ["state_reset_stale"]


def test_reset_state_clears_record() -> None:
    store = InMemoryCheckInStore()
    _seed_state(store, check_in_count=3)
    pipeline = _pipeline(None, store)

    pipeline.reset_state("vet-1")
    assert pipeline.load_state("vet-1") is None
    assert "state_reset_user" in [event.code for event in store.list_audit_events("vet-1")]


def test_failing_signal_source_does_not_block_check_in() -> None:
    class BrokenSource:
        async def fetch(self, user_id: str):
            raise ConnectionError("wearable sync offline")

    async def _run():
        pipeline = _pipeline(RoutingBackend(), signal_source=BrokenSource())
        return await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening()))

    result = asyncio.run(_run())
    assert result.reconciliation.final_tier == RiskTier.LOW
    assert result.used_fallback is False


class GatedSource:
    """Signal source that holds a fetch open once `gate` is set."""

    def __init__(self) -> None:
        self.gate = None
        self.waiting = None

    async def fetch(self, user_id: str):
        if self.gate is not None:
            self.waiting.set()
            await self.gate.wait()
        return None


def test_narrative_landing_during_a_check_in_is_kept() -> None:
    narratives = iter(["UPDATED SUMMARY:\nNightmares returned after the anniversary date."])
    backend = RoutingBackend(narrative=lambda prompt: next(narratives, ""))
    store = InMemoryCheckInStore()

    async def _run():
        source = GatedSource()
        pipeline = _pipeline(backend, store, signal_source=source)
        first = await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening()))

        source.gate = asyncio.Event()
        source.waiting = asyncio.Event()
        second = asyncio.create_task(pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening())))
        await source.waiting.wait()
        await first.narrative_task
        landed = pipeline.load_state("vet-1").narrative

        source.gate.set()
        result = await second
        await result.narrative_task
        return pipeline, landed

    pipeline, landed = asyncio.run(_run())
    assert landed == "Nightmares returned after the anniversary date."
    state = pipeline.load_state("vet-1")
    assert state.narrative == "Nightmares returned after the anniversary date."
    assert state.check_in_count == 2


def test_corrupt_record_does_not_block_crisis_check_in(tmp_path) -> None:
    store = JsonFileCheckInStore(tmp_path)
    (tmp_path / "vet-1.json").write_text("{not json", encoding="utf-8")

    async def _run():
        pipeline = _pipeline(None, store)
        result = await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening(4)))
        await result.rerank_task
        await result.narrative_task
        return pipeline, result

    pipeline, result = asyncio.run(_run())
    assert result.reconciliation.final_tier == RiskTier.CRISIS
    assert result.record.provenance == "safety_floor"
    assert result.persisted is False
    assert result.crisis is not None and result.crisis.status == "active"
    assert result.safety_plan_order == rule_based_order("cssrs")
    assert "state:vet-1" in pipeline.retry_queue.descriptions()


def test_queued_state_write_never_overwrites_newer_state() -> None:
    store = FlakyStore()

    async def _run():
        pipeline = _pipeline(None, store)
        store.fail = True
        first = await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening(4)))
        await first.rerank_task
        await first.narrative_task
        store.fail = False
        second = await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening()))
        await second.narrative_task
        return pipeline

    pipeline = asyncio.run(_run())
    assert store.load_state("vet-1").to_state().last_tier == RiskTier.LOW
    assert [item.final_tier for item in store.list_check_ins("vet-1")] == ["crisis", "low"]
    assert store.load_crisis("vet-1") is not None

    pipeline.retry_queue.retry_pending()
    assert len(pipeline.retry_queue) == 0
    assert store.load_state("vet-1").to_state().last_tier == RiskTier.LOW


class SlowRerankBackend(RoutingBackend):
    def __init__(self, ranking: str) -> None:
        super().__init__(rerank=ranking)
        self.release_rerank = threading.Event()

    def stream(self, prompt: str, config: GenerationConfig):
        if "Reorder safety plan sections" in prompt:
            self.release_rerank.wait(timeout=5.0)
        yield from super().stream(prompt, config)


def test_crisis_entry_returns_rule_order_before_rerank_lands() -> None:
    backend = SlowRerankBackend("7,2,3,4,6,5,1")

    async def _run():
        pipeline = _pipeline(backend)
        result = await pipeline.submit_check_in("vet-1", CheckInInputs(screening=_screening(5)))
        immediate = pipeline.safety_plan_order("vet-1")
        pending = pipeline.rerank_pending("vet-1")
        backend.release_rerank.set()
        await result.rerank_task
        await result.narrative_task
        return pipeline, result, immediate, pending

    pipeline, result, immediate, pending = asyncio.run(_run())
    assert result.safety_plan_order == rule_based_order("cssrs")
    assert immediate == (rule_based_order("cssrs"), "rule_based")
    assert pending is True
    assert pipeline.safety_plan_order("vet-1") == (
        [SafetyPlanSection(value) for value in (7, 2, 3, 4, 6, 5, 1)],
        "model",
    )
    assert pipeline.rerank_pending("vet-1") is False
    assert "safety_plan_reranked" in [event.code for event in pipeline.store.list_audit_events("vet-1")]
