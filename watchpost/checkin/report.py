from __future__ import annotations

"""
SBAR clinical handoff reports.

Design intent:
- Stream the model report under a hard character cap, an end sentinel and a
  short grace budget after the RECOMMENDATION header.
- Fall back to a fixed SBAR template per tier and recipient when the model is silent.
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from watchpost.inference.orchestrator import GenerationOutcome, InferenceOrchestrator, StopPolicy
from watchpost.inference.parser import strip_thinking
from watchpost.longitudinal.compressor import LongitudinalState
from watchpost.prompts.composer import PromptComposer
from watchpost.risk.models import HealthSignalSnapshot, RiskTier, ScreeningResponse
from watchpost.risk.signals import VoiceTelemetry

Recipient = Literal["Primary Care Provider", "Mental Health Provider", "Emergency Services", "Caregiver"]

END_OF_REPORT = "<<END_OF_REPORT>>"
REPORT_SECTION_MARKER = "RECOMMENDATION"

_SITUATION = {
    RiskTier.CRISIS: "Patient {name} is presenting with CRISIS-level risk indicators requiring immediate intervention.",
    RiskTier.HIGH_MONITORING: "Patient {name} is presenting with HIGH MONITORING risk indicators requiring close follow-up.",
    RiskTier.MODERATE: "Patient {name} is presenting with ELEVATED risk indicators warranting clinical attention.",
    RiskTier.LOW: "Patient {name} completed routine wellness check-in with stable indicators.",
}

_ASSESSMENT = {
    RiskTier.CRISIS: "Clinical assessment indicates immediate safety concerns. Active suicidal ideation with intent or plan reported.",
    RiskTier.HIGH_MONITORING: "Clinical assessment indicates significant risk factors. Enhanced monitoring and follow-up recommended.",
    RiskTier.MODERATE: "Clinical assessment indicates mild-to-moderate distress. Patient may benefit from supportive intervention.",
    RiskTier.LOW: "Clinical assessment indicates stable mental health status. No acute concerns identified.",
}

_RECOMMENDATION = {
    RiskTier.CRISIS: "Requesting URGENT follow-up with {recipient}. Patient has been advised to contact 988 Veterans Crisis Line.",
    RiskTier.HIGH_MONITORING: "Requesting priority follow-up with {recipient} within 24-48 hours to reassess risk and adjust care plan.",
    RiskTier.MODERATE: "Requesting routine follow-up with {recipient} at next available appointment to discuss current stressors.",
    RiskTier.LOW: "No immediate action required. Recommend continued routine monitoring.",
}

_SCREENING_LINES = (
    "Reports passive death wish",
    "Reports suicidal thoughts",
    "Reports thoughts with method consideration",
    "Reports active suicidal intent",
    "Reports specific suicide plan",
    "Reports recent suicide attempt",
)

_METRIC_LINES = (
    ("sleep", "Sleep", "{:.1f} hr"),
    ("activity", "Steps", "{:.0f} steps"),
    ("hrv", "HRV", "{:.0f} ms"),
)


def report_stop_policy(max_chars: int = 3000, grace_chars: int = 150) -> StopPolicy:
    return StopPolicy(
        max_chars=max_chars,
        end_sentinel=END_OF_REPORT,
        section_marker=REPORT_SECTION_MARKER,
        grace_chars=grace_chars,
    )


def template_report(
    tier: RiskTier,
    *,
    recipient: Recipient = "Primary Care Provider",
    screening: Optional[ScreeningResponse] = None,
    health: Optional[HealthSignalSnapshot] = None,
    patient_name: str = "",
    now: Optional[datetime] = None,
) -> str:
    name = patient_name.strip() or "Veteran"
    stamp = (now or datetime.now(timezone.utc)).strftime("%b %d, %Y %H:%M")

    background = [f"Check-in completed: {stamp}"]
    if screening is not None:
        background += [f"- {line}" for line, flag in zip(_SCREENING_LINES, screening.as_tuple()) if flag]
    if health is not None:
        for metric, label, fmt in _METRIC_LINES:
            signal = health.metrics.get(metric)
            if signal is not None and signal.current is not None:
                background.append(f"- {label}: {fmt.format(signal.current)}")
        for metric, label, _ in _METRIC_LINES:
            z = health.z(metric)
            if z is not None and abs(z) > 1.5:
                background.append(f"- {label} deviation: {z:+.1f} SD")

    return "\n".join(
        [
            "SITUATION:",
            _SITUATION[tier].format(name=name),
            "",
            "BACKGROUND:",
            "\n".join(background),
            "",
            "ASSESSMENT:",
            _ASSESSMENT[tier],
            "",
            "RECOMMENDATION:",
            _RECOMMENDATION[tier].format(recipient=recipient),
        ]
    )


def finalize_report_text(text: str) -> str:
    cleaned = strip_thinking(text).replace(END_OF_REPORT, "").strip()
    if cleaned and not cleaned.upper().startswith("SITUATION"):
        cleaned = "SITUATION:\n" + cleaned
    return cleaned


async def generate_handoff_report(
    orchestrator: InferenceOrchestrator,
    composer: PromptComposer,
    *,
    tier: RiskTier,
    recipient: Recipient = "Primary Care Provider",
    state: Optional[LongitudinalState] = None,
    screening: Optional[ScreeningResponse] = None,
    health: Optional[HealthSignalSnapshot] = None,
    voice: Optional[VoiceTelemetry] = None,
    behavioral_report: str = "",
    transcript: str = "",
    patient_name: str = "",
    max_chars: int = 3000,
    grace_chars: int = 150,
) -> tuple[str, GenerationOutcome]:
    prompt = composer.handoff_report(
        tier=tier,
        recipient=recipient,
        state=state,
        screening=screening,
        health=health,
        voice=voice,
        behavioral_report=behavioral_report,
        transcript=transcript,
        patient_name=patient_name,
    )
    outcome = await orchestrator.generate(
        prompt,
        fallback=lambda: template_report(
            tier, recipient=recipient, screening=screening, health=health, patient_name=patient_name
        ),
        stop_policy=report_stop_policy(max_chars, grace_chars),
        label="handoff_report",
    )
    if outcome.used_fallback:
        return outcome.text, outcome
    text = finalize_report_text(outcome.text)
    if not text:
        text = template_report(tier, recipient=recipient, screening=screening, health=health, patient_name=patient_name)
    return text, outcome
