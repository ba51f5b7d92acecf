from __future__ import annotations

"""
Rule-based responder used whenever the model path cannot answer.

Design intent:
- Always produce a tier, reasoning and action from screening plus health deviations.
- Emit the same two-line text shape the model is prompted for, so downstream handling is uniform.
- Stay deterministic: identical inputs yield identical text and assessment.
"""

from dataclasses import dataclass

from watchpost.utils.text import truncate_to_sentences

from .models import ClinicalAssessment, DetectedPattern, HealthSignalSnapshot, RiskTier, ScreeningResponse

DEFAULT_MODERATE_Z = -1.5
DEFAULT_SEVERE_Z = -2.0

_ACTIONS = {
    RiskTier.CRISIS: "Contact 988 Veterans Crisis Line immediately. Do not leave veteran alone.",
    RiskTier.HIGH_MONITORING: "Activate Safety Plan Item 4 (Professional Contact). Schedule same-day follow-up.",
    RiskTier.LOW: "Continue daily check-ins. Maintain current wellness routines.",
}

_SAFETY_PLAN_ITEMS = {
    RiskTier.CRISIS: 6,
    RiskTier.HIGH_MONITORING: 4,
    RiskTier.MODERATE: 3,
    RiskTier.LOW: 1,
}


@dataclass(frozen=True)
class FallbackResponse:
    text: str
    assessment: ClinicalAssessment
    risk_score: float
    safety_plan_item: int
    key_deviations: tuple[str, ...]


def respond(
    screening: ScreeningResponse,
    health: HealthSignalSnapshot | None = None,
    *,
    moderate_z: float = DEFAULT_MODERATE_Z,
    severe_z: float = DEFAULT_SEVERE_Z,
) -> FallbackResponse:
    health = health or HealthSignalSnapshot()
    key_deviations = tuple(
        name for name in ("sleep", "hrv", "activity") if _below(health.z(name), moderate_z)
    )
    tier = _determine_tier(screening, health, severe_z=severe_z)
    reasoning = _build_reasoning(screening, health, moderate_z=moderate_z)
    action = _build_action(tier, key_deviations)
    score = _risk_score(screening, health, moderate_z=moderate_z, severe_z=severe_z)
    patterns = _detected_patterns(screening, health, moderate_z=moderate_z, severe_z=severe_z)

    short_reasoning = truncate_to_sentences(reasoning, 2)
    text = f"{tier.color}\n{short_reasoning}"
    assessment = ClinicalAssessment(
        assessed_tier=tier,
        confidence=round(score / 10.0, 3),
        reasoning=short_reasoning,
        recommendations=(action,),
        raw_text=text,
        detected_patterns=patterns,
        source="deterministic",
    )
    return FallbackResponse(
        text=text,
        assessment=assessment,
        risk_score=score,
        safety_plan_item=_SAFETY_PLAN_ITEMS[tier],
        key_deviations=key_deviations,
    )


def _below(z: float | None, threshold: float) -> bool:
    return z is not None and z < threshold


def _determine_tier(screening: ScreeningResponse, health: HealthSignalSnapshot, *, severe_z: float) -> RiskTier:
    if screening.q4_intent or screening.q5_plan or screening.q6_recent_behavior:
        return RiskTier.CRISIS
    if screening.q3_thoughts_with_method:
        return RiskTier.HIGH_MONITORING
    if screening.q1_wish_dead or screening.q2_suicidal_thoughts:
        return RiskTier.MODERATE
    if any(_below(health.z(name), severe_z) for name in ("sleep", "hrv", "activity")):
        return RiskTier.MODERATE
    return RiskTier.LOW


def _build_reasoning(screening: ScreeningResponse, health: HealthSignalSnapshot, *, moderate_z: float) -> str:
    reasons: list[str] = []
    if screening.q4_intent:
        reasons.append("Active suicidal intent reported - immediate safety protocol required")
    elif screening.q5_plan:
        reasons.append("Specific suicide plan disclosed - crisis intervention needed")
    elif screening.q6_recent_behavior:
        reasons.append("Recent suicide attempt indicates elevated ongoing risk")
    elif screening.q3_thoughts_with_method:
        reasons.append("Suicidal ideation with method consideration present")
    elif screening.q2_suicidal_thoughts:
        reasons.append("Active suicidal thoughts reported")
    elif screening.q1_wish_dead:
        reasons.append("Passive death wish indicated")

    hrv = health.z("hrv")
    if _below(hrv, moderate_z):
        reasons.append(f"HRV shows autonomic dysregulation (z={hrv:.1f}), suggesting elevated stress")
    sleep = health.z("sleep")
    if _below(sleep, moderate_z):
        reasons.append(f"Sleep disruption detected (z={sleep:.1f}), a known risk factor")
    if _below(health.z("activity"), moderate_z):
        reasons.append("Decreased activity levels may indicate withdrawal or anhedonia")

    if not reasons:
        return "No acute risk indicators. Veteran appears stable with consistent baseline metrics."
    return ". ".join(reasons) + "."


def _build_action(tier: RiskTier, key_deviations: tuple[str, ...]) -> str:
    if tier == RiskTier.MODERATE:
        if "hrv" in key_deviations:
            return "Practice 4-7-8 breathing exercise. Consider reaching out to a support contact today."
        if "sleep" in key_deviations:
            return "Review sleep hygiene. Limit screen time before bed. Contact support if symptoms persist."
        return "Review Safety Plan. Consider connecting with a trusted support contact."
    return _ACTIONS[tier]


def _risk_score(
    screening: ScreeningResponse,
    health: HealthSignalSnapshot,
    *,
    moderate_z: float,
    severe_z: float,
) -> float:
    score = 0.0
    weights = (1.0, 1.5, 2.0, 3.5, 4.0, 2.5)
    for weight, answer in zip(weights, screening.as_tuple()):
        if answer:
            score += weight

    hrv = health.z("hrv")
    if _below(hrv, severe_z):
        score += 1.0
    elif _below(hrv, moderate_z):
        score += 0.5
    sleep = health.z("sleep")
    if _below(sleep, severe_z):
        score += 0.75
    elif _below(sleep, moderate_z):
        score += 0.5
    if _below(health.z("activity"), severe_z):
        score += 0.5
    return min(10.0, max(0.0, score))


def _detected_patterns(
    screening: ScreeningResponse,
    health: HealthSignalSnapshot,
    *,
    moderate_z: float,
    severe_z: float,
) -> tuple[DetectedPattern, ...]:
    patterns: list[DetectedPattern] = []
    labels = {
        "sleep": ("Sleep Disruption", "Sleep below personal baseline"),
        "hrv": ("HRV Drop", "Heart rate variability below personal baseline"),
        "activity": ("Activity Decline", "Activity below personal baseline"),
    }
    for name, (pattern_type, description) in labels.items():
        z = health.z(name)  # type: ignore[arg-type]
        if not _below(z, moderate_z):
            continue
        severity = "Significant" if _below(z, severe_z) else "Moderate"
        patterns.append(DetectedPattern(type=pattern_type, severity=severity, description=f"{description} (z={z:.1f})"))
    if screening.q1_wish_dead or screening.q2_suicidal_thoughts:
        patterns.append(DetectedPattern(type="Mood Decline", severity="Moderate", description="Ideation reported on screening"))
    if len(patterns) >= 2:
        patterns.append(
            DetectedPattern(type="Combined Indicators", severity="Significant", description="Multiple concurrent signals")
        )
    return tuple(patterns)
