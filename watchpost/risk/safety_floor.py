from __future__ import annotations

"""
Deterministic safety floor from screening answers.

Design intent:
- Total, pure mapping from answers to tier; no I/O and no failure mode.
- Runs before and independently of any model step.
"""

from .models import RiskTier, ScreeningResponse


def tier_from_screening(
    answers: ScreeningResponse,
    *,
    q3_tier: RiskTier = RiskTier.MODERATE,
) -> RiskTier:
    if answers.q4_intent or answers.q5_plan:
        return RiskTier.CRISIS
    if answers.q6_recent_behavior:
        return RiskTier.HIGH_MONITORING
    if answers.q3_thoughts_with_method:
        return max(RiskTier.MODERATE, q3_tier)
    if answers.q1_wish_dead or answers.q2_suicidal_thoughts:
        return RiskTier.MODERATE
    return RiskTier.LOW


def compact_screening_summary(answers: ScreeningResponse) -> str:
    labels = ["Q1+", "Q2+", "Q3+", "Q4+CRISIS", "Q5+CRISIS", "Q6+"]
    positives = [label for label, value in zip(labels, answers.as_tuple()) if value]
    return ", ".join(positives) if positives else "All negative"
