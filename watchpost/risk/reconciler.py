from __future__ import annotations

"""
Combine the safety floor and the model tier into one governing tier.

Design intent:
- final tier = max(floor, model); confidence never participates.
- Record which path governed so persisted assessments stay auditable.
"""

from dataclasses import dataclass
from typing import Literal

from .models import AssessmentSource, RiskTier

Provenance = Literal["safety_floor", "model", "deterministic_responder"]

SAFETY_FLOOR_EXPLANATION = "This was the minimum risk tier based on Columbia screening questions."
MODEL_DEFAULT_EXPLANATION = "The model identified elevated risk factors."


@dataclass(frozen=True)
class Reconciliation:
    final_tier: RiskTier
    provenance: Provenance
    explanation: str
    deterministic_tier: RiskTier
    ai_tier: RiskTier | None


def reconcile(
    deterministic_tier: RiskTier,
    ai_tier: RiskTier | None,
    ai_reasoning: str | None = None,
    *,
    ai_source: AssessmentSource = "model",
) -> Reconciliation:
    reasoning = str(ai_reasoning or "").strip()
    if ai_tier is None or deterministic_tier >= ai_tier:
        explanation = SAFETY_FLOOR_EXPLANATION
        if ai_tier is not None and ai_tier == deterministic_tier and reasoning:
            explanation = reasoning
        return Reconciliation(
            final_tier=deterministic_tier,
            provenance="safety_floor",
            explanation=explanation,
            deterministic_tier=deterministic_tier,
            ai_tier=ai_tier,
        )
    return Reconciliation(
        final_tier=ai_tier,
        provenance="model" if ai_source == "model" else "deterministic_responder",
        explanation=reasoning or MODEL_DEFAULT_EXPLANATION,
        deterministic_tier=deterministic_tier,
        ai_tier=ai_tier,
    )
