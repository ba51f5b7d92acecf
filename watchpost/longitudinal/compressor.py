from __future__ import annotations

"""
Longitudinal state compression across check-ins.

Design intent:
- Trajectory is the immediate tier comparison only; no smoothing over noisy single deltas.
- Primary driver follows a fixed priority cascade so identical inputs always agree.
- Prompt digest is hard-capped so it never starves the rest of the context window.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Literal, Sequence

from watchpost.risk.models import (
    METRIC_ORDER,
    ClinicalAssessment,
    DetectedPattern,
    HealthSignalSnapshot,
    RiskTier,
    ScreeningResponse,
)
from watchpost.utils.text import truncate_to_budget

Trajectory = Literal["stable", "improving", "worsening"]
RiskDriver = Literal["cssrs", "sleep", "hrv", "activity", "mood", "combined"]

DEFAULT_PROMPT_BUDGET = 500
DEFAULT_STALENESS_DAYS = 30
RECENT_CRISIS_WINDOW_DAYS = 7

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LongitudinalState:
    trajectory: Trajectory = "stable"
    primary_driver: RiskDriver | None = None
    check_in_count: int = 0
    recent_crisis_count: int = 0
    days_since_last_crisis: int | None = None
    narrative: str | None = None
    last_updated: datetime = field(default_factory=_utc_now)
    last_tier: RiskTier | None = None
    detected_patterns: tuple[DetectedPattern, ...] = ()


@dataclass(frozen=True)
class RiskModifiers:
    escalate: bool
    reason: str | None


def create_fresh_state(now: datetime | None = None) -> LongitudinalState:
    return LongitudinalState(last_updated=now or _utc_now())


def compute_trajectory(prior_tier: RiskTier | None, new_tier: RiskTier) -> Trajectory:
    if prior_tier is None:
        return "stable"
    if new_tier > prior_tier:
        return "worsening"
    if new_tier < prior_tier:
        return "improving"
    return "stable"


def identify_primary_driver(
    screening: ScreeningResponse | None,
    health: HealthSignalSnapshot | None,
    *,
    moderate_z: float = -1.5,
    severe_z: float = -2.0,
) -> RiskDriver:
    if screening is not None:
        if screening.q4_intent or screening.q5_plan or screening.q6_recent_behavior:
            return "cssrs"
        if screening.q2_suicidal_thoughts or screening.q3_thoughts_with_method:
            return "cssrs"

    if health is not None:
        for threshold in (severe_z, moderate_z):
            for metric in METRIC_ORDER:
                z = health.z(metric)
                if z is not None and z < threshold:
                    return metric

    if screening is not None and screening.q1_wish_dead:
        return "mood"
    return "combined"


def update(
    prior: LongitudinalState | None,
    new_tier: RiskTier,
    *,
    screening: ScreeningResponse | None = None,
    health: HealthSignalSnapshot | None = None,
    elapsed_days: int | None = None,
    detected_patterns: Sequence[DetectedPattern] = (),
    now: datetime | None = None,
    moderate_z: float = -1.5,
    severe_z: float = -2.0,
) -> LongitudinalState:
    current = now or _utc_now()
    base = prior or create_fresh_state(current)
    if elapsed_days is None:
        elapsed_days = _calendar_days_between(base.last_updated, current) if prior is not None else 0

    if new_tier == RiskTier.CRISIS:
        recent_crisis_count = base.recent_crisis_count + 1
        days_since_last_crisis: int | None = 0
    else:
        recent_crisis_count = base.recent_crisis_count
        days_since_last_crisis = base.days_since_last_crisis
        if days_since_last_crisis is not None:
            days_since_last_crisis += max(0, int(elapsed_days))

    return replace(
        base,
        trajectory=compute_trajectory(prior.last_tier if prior else None, new_tier),
        primary_driver=identify_primary_driver(screening, health, moderate_z=moderate_z, severe_z=severe_z),
        check_in_count=base.check_in_count + 1,
        recent_crisis_count=recent_crisis_count,
        days_since_last_crisis=days_since_last_crisis,
        last_updated=current,
        last_tier=new_tier,
        detected_patterns=tuple(detected_patterns),
    )


def update_from_assessment(
    prior: LongitudinalState | None,
    assessment: ClinicalAssessment,
    elapsed_days: int | None = None,
    *,
    final_tier: RiskTier | None = None,
    screening: ScreeningResponse | None = None,
    health: HealthSignalSnapshot | None = None,
    now: datetime | None = None,
    moderate_z: float = -1.5,
    severe_z: float = -2.0,
) -> LongitudinalState:
    return update(
        prior,
        final_tier if final_tier is not None else assessment.assessed_tier,
        screening=screening,
        health=health,
        elapsed_days=elapsed_days,
        detected_patterns=assessment.detected_patterns,
        now=now,
        moderate_z=moderate_z,
        severe_z=severe_z,
    )


def with_narrative(state: LongitudinalState, narrative: str | None) -> LongitudinalState:
    cleaned = str(narrative or "").strip()
    return replace(state, narrative=cleaned or state.narrative)


def format_for_prompt(state: LongitudinalState | None, *, budget: int = DEFAULT_PROMPT_BUDGET) -> str:
    if state is None:
        return truncate_to_budget("No prior history.", budget)

    lines: list[str] = []
    if state.narrative:
        lines.append(f"CLINICAL NARRATIVE: {state.narrative}")
    lines.append(f"- Trajectory: {state.trajectory.upper()}")
    lines.append(f"- Primary Driver: {state.primary_driver or 'combined'}")
    if state.last_tier is not None:
        lines.append(f"- Last Risk: {state.last_tier.display_name}")
    lines.append(f"- Check-ins: {state.check_in_count}")
    if state.recent_crisis_count > 0:
        lines.append(f"- Recent Crises: {state.recent_crisis_count}")
    if state.days_since_last_crisis is not None:
        lines.append(f"- Days Since Crisis: {state.days_since_last_crisis}")
    return truncate_to_budget("\n".join(lines), budget)


def risk_modifiers(state: LongitudinalState | None) -> RiskModifiers:
    if state is None:
        return RiskModifiers(escalate=False, reason=None)
    reasons: list[str] = []
    if state.trajectory == "worsening":
        reasons.append("Trajectory is worsening")
    if state.recent_crisis_count >= 2:
        reasons.append(f"Multiple recent crisis events ({state.recent_crisis_count})")
    if state.days_since_last_crisis is not None and state.days_since_last_crisis <= RECENT_CRISIS_WINDOW_DAYS:
        reasons.append(f"Recent crisis {state.days_since_last_crisis} days ago")
    if not reasons:
        return RiskModifiers(escalate=False, reason=None)
    return RiskModifiers(escalate=True, reason="; ".join(reasons))


def is_stale(
    state: LongitudinalState,
    now: datetime | None = None,
    *,
    staleness_days: int = DEFAULT_STALENESS_DAYS,
) -> bool:
    current = now or _utc_now()
    return current - state.last_updated > timedelta(days=staleness_days)


def refresh_if_stale(
    state: LongitudinalState | None,
    now: datetime | None = None,
    *,
    staleness_days: int = DEFAULT_STALENESS_DAYS,
) -> tuple[LongitudinalState | None, bool]:
    """Replace a stale state with a fresh one; the caller persists and audits the replacement."""

    if state is None or not is_stale(state, now, staleness_days=staleness_days):
        return state, False
    current = now or _utc_now()
    logger.info(
        "Longitudinal state stale (last_updated=%s, limit=%sd); starting fresh.",
        state.last_updated.isoformat(),
        staleness_days,
    )
    return create_fresh_state(current), True


def _calendar_days_between(start: datetime, end: datetime) -> int:
    start_day = start.astimezone(timezone.utc).date()
    end_day = end.astimezone(timezone.utc).date()
    return max(0, (end_day - start_day).days)
