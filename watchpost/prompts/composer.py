from __future__ import annotations

"""
Compose bounded prompts from current signals and the longitudinal digest.

Design intent:
- Truncate every variable-length field to its own budget before substitution.
- Substitute every placeholder in one pass over the template; a field value is never
  re-expanded, so text that looks like a placeholder cannot pull in another field.
- Reject unknown field names instead of silently ignoring them.
"""

from typing import Mapping, Sequence

from watchpost.longitudinal.compressor import LongitudinalState, format_for_prompt, risk_modifiers
from watchpost.risk.models import DetectedPattern, HealthSignalSnapshot, RiskTier, ScreeningResponse
from watchpost.risk.safety_floor import compact_screening_summary
from watchpost.risk.signals import VoiceTelemetry, detect_signal_discrepancy, format_voice_features
from watchpost.utils.text import truncate_to_budget

from .templates import DEFAULT_SPECS, PLACEHOLDER_RE, PromptKind, PromptSpec

_SCREENING_FACTORS = (
    "Reported passive death wish",
    "Reported suicidal thoughts",
    "Thoughts with method",
    "Active intent declared",
    "Specific plan declared",
    "Recent attempt reported",
)


def compose(spec: PromptSpec, values: Mapping[str, str | None]) -> str:
    unknown = set(values) - spec.field_keys()
    if unknown:
        raise ValueError(f"Unknown fields for {spec.kind}: {sorted(unknown)}")

    rendered: dict[str, str] = {}
    for item in spec.fields:
        raw = values.get(item.key)
        text = str(raw).strip() if raw is not None else ""
        rendered[item.key] = truncate_to_budget(text, item.budget) if text else item.placeholder

    return PLACEHOLDER_RE.sub(lambda match: rendered.get(match.group(1), match.group(0)), spec.template)


class PromptComposer:
    def __init__(
        self,
        specs: Mapping[PromptKind, PromptSpec] | None = None,
        *,
        history_budget: int = 500,
        telemetry_budget: int = 400,
        transcript_budget: int = 600,
        voice_budget: int = 300,
    ) -> None:
        resolved = dict(specs or DEFAULT_SPECS)
        resolved["risk_assessment"] = resolved["risk_assessment"].with_budgets(
            {
                "HISTORY_CONTEXT": history_budget,
                "BEHAVIORAL_TELEMETRY": telemetry_budget,
                "TRANSCRIPT": transcript_budget,
                "VOICE_ANALYSIS": voice_budget,
            }
        )
        self._specs = resolved
        self.history_budget = history_budget

    def spec(self, kind: PromptKind) -> PromptSpec:
        return self._specs[kind]

    def risk_assessment(
        self,
        *,
        screening: ScreeningResponse | None,
        health: HealthSignalSnapshot | None,
        state: LongitudinalState | None,
        transcript: str = "",
        voice: VoiceTelemetry | None = None,
        behavioral_report: str = "",
        wpm: float | None = None,
    ) -> str:
        modifiers = risk_modifiers(state)
        vigilance = f"Increase vigilance - {modifiers.reason}" if modifiers.escalate else None
        voice_summary = format_voice_features(voice, wpm=wpm) if (voice is not None or wpm is not None) else None
        return compose(
            self._specs["risk_assessment"],
            {
                "HISTORY_CONTEXT": format_for_prompt(state, budget=self.history_budget),
                "HEALTH_SUMMARY": health.summary() if health is not None else None,
                "TRANSCRIPT": transcript,
                "VOICE_ANALYSIS": voice_summary,
                "BEHAVIORAL_TELEMETRY": behavioral_report,
                "CSSRS_SUMMARY": compact_screening_summary(screening) if screening is not None else None,
                "VIGILANCE_NOTE": vigilance,
                "SIGNAL_DISCREPANCY": detect_signal_discrepancy(transcript, voice, behavioral_report),
            },
        )

    def narrative_update(
        self,
        *,
        previous_summary: str | None,
        tier: RiskTier,
        transcript: str = "",
        health: HealthSignalSnapshot | None = None,
        check_in_type: str = "daily",
    ) -> str:
        sleep = health.metrics.get("sleep") if health is not None else None
        sleep_hours = f"{sleep.current:.1f}h" if sleep is not None and sleep.current else None
        sleep_z = health.z("sleep") if health is not None else None
        return compose(
            self._specs["narrative_update"],
            {
                "PREVIOUS_SUMMARY": previous_summary,
                "RISK_TIER": tier.display_name,
                "CHECKIN_TYPE": check_in_type,
                "TRANSCRIPT": transcript,
                "SLEEP_HOURS": sleep_hours,
                "SLEEP_TREND": f"{sleep_z:.2f}" if sleep_z is not None else None,
            },
        )

    def risk_explanation(
        self,
        *,
        tier: RiskTier,
        state: LongitudinalState | None,
        screening: ScreeningResponse | None,
        health: HealthSignalSnapshot | None,
        time_ago: str,
        data_source: str,
    ) -> str:
        return compose(
            self._specs["risk_explanation"],
            {
                "RISK_LEVEL": tier.display_name,
                "HISTORY_CONTEXT": format_for_prompt(state, budget=self.history_budget) if state else None,
                "RISK_FACTORS": "\n".join(f"- {item}" for item in _screening_factors(screening)),
                "HEALTH_CONTEXT": _health_lines(health),
                "TIME_AGO": time_ago,
                "DATA_SOURCE": data_source,
            },
        )

    def handoff_report(
        self,
        *,
        tier: RiskTier,
        recipient: str,
        state: LongitudinalState | None,
        screening: ScreeningResponse | None,
        health: HealthSignalSnapshot | None,
        voice: VoiceTelemetry | None = None,
        behavioral_report: str = "",
        transcript: str = "",
        patient_name: str = "",
    ) -> str:
        health_context = _health_lines(health)
        factors = _screening_factors(screening)
        if factors:
            flags = "C-SSRS FLAGS: " + ", ".join(factors)
            health_context = f"{health_context}\n{flags}" if health_context else flags
        voice_context = (
            f"Voice: {format_voice_features(voice)}\nBehavior: {behavioral_report.strip() or 'No data'}"
            if voice is not None or behavioral_report.strip()
            else None
        )
        return compose(
            self._specs["handoff_report"],
            {
                "RECIPIENT": recipient,
                "PATIENT_NAME": patient_name,
                "RISK_TIER": tier.display_name,
                "HISTORY_CONTEXT": format_for_prompt(state, budget=self.history_budget) if state else None,
                "HEALTH_CONTEXT": health_context,
                "VOICE_CONTEXT": voice_context,
                "TRANSCRIPT": transcript,
            },
        )

    def safety_plan_rerank(
        self,
        *,
        state: LongitudinalState | None,
        patterns: Sequence[DetectedPattern],
    ) -> str:
        return compose(
            self._specs["safety_plan_rerank"],
            {
                "TRAJECTORY": state.trajectory if state else None,
                "PRIMARY_DRIVER": state.primary_driver if state else None,
                "RISK_TIER": state.last_tier.display_name if state and state.last_tier is not None else None,
                "RECENT_CRISIS_COUNT": str(state.recent_crisis_count) if state else None,
                "DETECTED_PATTERNS": ", ".join(f"{item.type} ({item.severity})" for item in patterns),
                "CLINICAL_NARRATIVE": state.narrative if state else None,
            },
        )

    def context_ingestion(
        self,
        *,
        current_summary: str | None,
        document_text: str,
        document_type: str = "Discharge Summary",
    ) -> str:
        return compose(
            self._specs["context_ingestion"],
            {
                "CURRENT_SUMMARY": current_summary,
                "DOCUMENT_TYPE": document_type,
                "NEW_CONTEXT": document_text,
            },
        )


def _screening_factors(screening: ScreeningResponse | None) -> list[str]:
    if screening is None:
        return []
    return [label for label, value in zip(_SCREENING_FACTORS, screening.as_tuple()) if value]


def _health_lines(health: HealthSignalSnapshot | None) -> str:
    if health is None:
        return ""
    lines: list[str] = []
    units = {"sleep": ("Sleep", "hours", "{:.1f}"), "hrv": ("HRV", "ms", "{:.0f}"), "activity": ("Steps", "", "{:.0f}")}
    for name, (label, unit, fmt) in units.items():
        signal = health.metrics.get(name)
        if signal is None or signal.current is None:
            continue
        value = fmt.format(signal.current)
        lines.append(f"{label}: {value} {unit}".rstrip())
        z = signal.z_score
        if z is not None and abs(z) > 1.5:
            lines.append(f"{label} deviation: z={z:.1f}")
    return "\n".join(lines)
