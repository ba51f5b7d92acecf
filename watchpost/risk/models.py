from __future__ import annotations

"""
Typed risk domain values shared across the check-in pipeline.

Design intent:
- Keep tier ordering total so reconciliation is a plain max().
- Keep screening answers immutable once recorded.
- Derive z-scores from rolling baselines instead of trusting caller-supplied values.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Literal, Mapping, Sequence

import numpy as np


MetricName = Literal["sleep", "hrv", "activity"]
PatternType = Literal[
    "Sleep Disruption",
    "Activity Decline",
    "HRV Drop",
    "Mood Decline",
    "Voice Change",
    "Combined Indicators",
]
PatternSeverity = Literal["Mild", "Moderate", "Significant"]
AssessmentSource = Literal["model", "deterministic"]

METRIC_ORDER: tuple[MetricName, ...] = ("sleep", "hrv", "activity")
MIN_BASELINE_POINTS = 7


class RiskTier(IntEnum):
    LOW = 0
    MODERATE = 1
    HIGH_MONITORING = 2
    CRISIS = 3

    @property
    def rank(self) -> int:
        return int(self)

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def color(self) -> str:
        return _COLORS[self]

    @property
    def key(self) -> str:
        return _KEYS[self]

    @classmethod
    def from_label(cls, raw: str | None) -> "RiskTier | None":
        text = str(raw or "").strip().lower().replace(" ", "_")
        return _ALIASES.get(text)


_DISPLAY_NAMES = {
    RiskTier.LOW: "ALL CLEAR",
    RiskTier.MODERATE: "ELEVATED",
    RiskTier.HIGH_MONITORING: "HIGH MONITORING",
    RiskTier.CRISIS: "CRISIS",
}

_COLORS = {
    RiskTier.LOW: "green",
    RiskTier.MODERATE: "yellow",
    RiskTier.HIGH_MONITORING: "orange",
    RiskTier.CRISIS: "red",
}

_KEYS = {
    RiskTier.LOW: "low",
    RiskTier.MODERATE: "moderate",
    RiskTier.HIGH_MONITORING: "high_monitoring",
    RiskTier.CRISIS: "crisis",
}

_ALIASES = {
    "green": RiskTier.LOW,
    "low": RiskTier.LOW,
    "yellow": RiskTier.MODERATE,
    "moderate": RiskTier.MODERATE,
    "elevated": RiskTier.MODERATE,
    "orange": RiskTier.HIGH_MONITORING,
    "high": RiskTier.HIGH_MONITORING,
    "high_monitoring": RiskTier.HIGH_MONITORING,
    "highmonitoring": RiskTier.HIGH_MONITORING,
    "red": RiskTier.CRISIS,
    "crisis": RiskTier.CRISIS,
}


@dataclass(frozen=True)
class ScreeningResponse:
    """Six Columbia-style screening answers, Q1 (least severe) to Q6."""

    q1_wish_dead: bool = False
    q2_suicidal_thoughts: bool = False
    q3_thoughts_with_method: bool = False
    q4_intent: bool = False
    q5_plan: bool = False
    q6_recent_behavior: bool = False

    @classmethod
    def from_answers(cls, answers: Sequence[bool]) -> "ScreeningResponse":
        values = [bool(item) for item in answers]
        if len(values) != 6:
            raise ValueError(f"Screening requires exactly 6 answers, got {len(values)}.")
        return cls(*values)

    def as_tuple(self) -> tuple[bool, bool, bool, bool, bool, bool]:
        return (
            self.q1_wish_dead,
            self.q2_suicidal_thoughts,
            self.q3_thoughts_with_method,
            self.q4_intent,
            self.q5_plan,
            self.q6_recent_behavior,
        )

    @property
    def any_positive(self) -> bool:
        return any(self.as_tuple())


@dataclass(frozen=True)
class MetricSignal:
    current: float | None
    baseline_mean: float | None = None
    baseline_std: float | None = None

    @property
    def z_score(self) -> float | None:
        if self.current is None or self.baseline_mean is None or not self.baseline_std:
            return None
        return (self.current - self.baseline_mean) / self.baseline_std


def build_metric_signal(
    current: float | None,
    history: Sequence[float],
    *,
    min_points: int = MIN_BASELINE_POINTS,
) -> MetricSignal:
    """Compute a rolling baseline from prior daily values; too little history yields no baseline."""

    values = np.asarray([float(v) for v in history if v is not None], dtype=float)
    values = values[np.isfinite(values)]
    if values.size < max(2, min_points):
        return MetricSignal(current=current)
    return MetricSignal(
        current=current,
        baseline_mean=float(np.mean(values)),
        baseline_std=float(np.std(values, ddof=1)),
    )


@dataclass(frozen=True)
class HealthSignalSnapshot:
    metrics: Mapping[str, MetricSignal] = field(default_factory=dict)

    def z(self, metric: MetricName) -> float | None:
        signal = self.metrics.get(metric)
        return signal.z_score if signal is not None else None

    @classmethod
    def from_histories(
        cls,
        current: Mapping[str, float | None],
        histories: Mapping[str, Sequence[float]],
        *,
        min_points: int = MIN_BASELINE_POINTS,
    ) -> "HealthSignalSnapshot":
        metrics = {
            name: build_metric_signal(current.get(name), histories.get(name, ()), min_points=min_points)
            for name in METRIC_ORDER
            if name in current or name in histories
        }
        return cls(metrics=metrics)

    def summary(self) -> str:
        parts: list[str] = []
        for name in METRIC_ORDER:
            signal = self.metrics.get(name)
            if signal is None or signal.current is None:
                continue
            z = signal.z_score
            if z is None:
                parts.append(f"{name}={signal.current:.1f} (no baseline)")
            else:
                parts.append(f"{name}={signal.current:.1f} (z={z:+.2f})")
        return "; ".join(parts)


@dataclass(frozen=True)
class DetectedPattern:
    type: PatternType
    severity: PatternSeverity
    description: str


@dataclass(frozen=True)
class ClinicalAssessment:
    assessed_tier: RiskTier
    confidence: float
    reasoning: str
    recommendations: tuple[str, ...] = ()
    raw_text: str = ""
    detected_patterns: tuple[DetectedPattern, ...] = ()
    source: AssessmentSource = "model"
