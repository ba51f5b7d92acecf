from __future__ import annotations

"""
Safety-plan section ordering for crisis entry.

Design intent:
- The rule-based order keyed on the primary driver is available instantly and is what
  callers show first; the model ranking runs later and never holds it up.
- A model ranking may replace it only when it names all seven sections exactly once.
"""

import logging
import re
from enum import IntEnum
from typing import Optional, Sequence

from watchpost.inference.orchestrator import InferenceOrchestrator, StopPolicy
from watchpost.inference.parser import clean_generated_text
from watchpost.longitudinal.compressor import LongitudinalState, RiskDriver
from watchpost.prompts.composer import PromptComposer
from watchpost.risk.models import DetectedPattern

logger = logging.getLogger(__name__)


class SafetyPlanSection(IntEnum):
    WARNING_SIGNS = 1
    COPING_STRATEGIES = 2
    SOCIAL_DISTRACTIONS = 3
    SUPPORT_CONTACTS = 4
    PROFESSIONAL_HELP = 5
    LETHAL_MEANS_REDUCTION = 6
    REASONS_FOR_LIVING = 7

    @property
    def title(self) -> str:
        return self.name.replace("_", " ")


ALL_SECTIONS = tuple(SafetyPlanSection)

DEFAULT_CRISIS_ORDER = (6, 5, 4, 2, 3, 7, 1)

_RULE_ORDERS: dict[Optional[RiskDriver], tuple[int, ...]] = {
    "cssrs": (6, 5, 4, 7, 2, 3, 1),
    "sleep": (2, 7, 3, 4, 6, 5, 1),
    "hrv": (2, 7, 3, 4, 6, 5, 1),
    "activity": (3, 4, 2, 7, 6, 5, 1),
    "mood": (7, 2, 3, 4, 6, 5, 1),
    "combined": DEFAULT_CRISIS_ORDER,
    None: DEFAULT_CRISIS_ORDER,
}

_INT_TOKEN_RE = re.compile(r"-?\d+")


def rule_based_order(driver: Optional[RiskDriver]) -> list[SafetyPlanSection]:
    return [SafetyPlanSection(value) for value in _RULE_ORDERS.get(driver, DEFAULT_CRISIS_ORDER)]


def parse_rerank_output(text: str) -> Optional[list[SafetyPlanSection]]:
    """Return the ranking only if it is a complete permutation of sections 1..7."""

    cleaned = clean_generated_text(text or "")
    values = [int(token) for token in _INT_TOKEN_RE.findall(cleaned)]
    if len(values) != len(ALL_SECTIONS) or sorted(values) != [int(s) for s in ALL_SECTIONS]:
        return None
    return [SafetyPlanSection(value) for value in values]


class SafetyPlanReranker:
    def __init__(
        self,
        orchestrator: InferenceOrchestrator,
        composer: PromptComposer,
        *,
        timeout_sec: float = 15.0,
    ) -> None:
        self._orchestrator = orchestrator
        self._composer = composer
        self._timeout_sec = float(timeout_sec)

    async def rerank(
        self,
        state: Optional[LongitudinalState],
        patterns: Sequence[DetectedPattern] = (),
    ) -> Optional[list[SafetyPlanSection]]:
        """Model ranking, or None when it is unavailable or not a full permutation."""

        prompt = self._composer.safety_plan_rerank(state=state, patterns=patterns)
        outcome = await self._orchestrator.generate(
            prompt,
            fallback="",
            stop_policy=StopPolicy(max_chars=200, max_lines=2),
            label="safety_plan_rerank",
            first_fragment_timeout_sec=min(self._timeout_sec, self._orchestrator.first_fragment_timeout_sec),
            total_timeout_sec=self._timeout_sec,
        )
        if outcome.used_fallback:
            return None
        order = parse_rerank_output(outcome.text)
        if order is None:
            logger.warning("Rerank output discarded (not a complete permutation): %r", outcome.text[:80])
        return order

