from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from watchpost.longitudinal.compressor import LongitudinalState
from watchpost.risk.models import ClinicalAssessment, DetectedPattern, RiskTier

TierKey = Literal["low", "moderate", "high_monitoring", "crisis"]
CrisisStatus = Literal["active", "recheck", "stabilizing", "resolved", "escalated"]
AuditEventType = Literal["check_in", "state", "crisis", "narrative", "safety_plan", "persistence"]

_TIERS_BY_KEY = {tier.key: tier for tier in RiskTier}


def tier_from_key(key: str) -> RiskTier:
    return _TIERS_BY_KEY[key]


class DetectedPatternRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    severity: str
    description: str = ""

    @classmethod
    def from_pattern(cls, pattern: DetectedPattern) -> "DetectedPatternRecord":
        return cls(type=pattern.type, severity=pattern.severity, description=pattern.description)

    def to_pattern(self) -> DetectedPattern:
        return DetectedPattern(type=self.type, severity=self.severity, description=self.description)  # type: ignore[arg-type]


class LongitudinalStateRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    trajectory: Literal["stable", "improving", "worsening"] = "stable"
    primary_driver: Optional[Literal["cssrs", "sleep", "hrv", "activity", "mood", "combined"]] = None
    check_in_count: int = Field(default=0, ge=0)
    recent_crisis_count: int = Field(default=0, ge=0)
    days_since_last_crisis: Optional[int] = Field(default=None, ge=0)
    narrative: Optional[str] = None
    last_updated: datetime
    last_tier: Optional[TierKey] = None
    detected_patterns: List[DetectedPatternRecord] = Field(default_factory=list)

    @classmethod
    def from_state(cls, state: LongitudinalState) -> "LongitudinalStateRecord":
        return cls(
            trajectory=state.trajectory,
            primary_driver=state.primary_driver,
            check_in_count=state.check_in_count,
            recent_crisis_count=state.recent_crisis_count,
            days_since_last_crisis=state.days_since_last_crisis,
            narrative=state.narrative,
            last_updated=state.last_updated,
            last_tier=state.last_tier.key if state.last_tier is not None else None,
            detected_patterns=[DetectedPatternRecord.from_pattern(p) for p in state.detected_patterns],
        )

    def to_state(self) -> LongitudinalState:
        return LongitudinalState(
            trajectory=self.trajectory,
            primary_driver=self.primary_driver,
            check_in_count=self.check_in_count,
            recent_crisis_count=self.recent_crisis_count,
            days_since_last_crisis=self.days_since_last_crisis,
            narrative=self.narrative,
            last_updated=self.last_updated,
            last_tier=tier_from_key(self.last_tier) if self.last_tier else None,
            detected_patterns=tuple(p.to_pattern() for p in self.detected_patterns),
        )


class AssessmentRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    assessed_tier: TierKey
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    recommendations: List[str] = Field(default_factory=list)
    raw_text: str = ""
    source: Literal["model", "deterministic"]
    detected_patterns: List[DetectedPatternRecord] = Field(default_factory=list)

    @classmethod
    def from_assessment(cls, assessment: ClinicalAssessment) -> "AssessmentRecord":
        return cls(
            assessed_tier=assessment.assessed_tier.key,
            confidence=max(0.0, min(1.0, assessment.confidence)),
            reasoning=assessment.reasoning,
            recommendations=list(assessment.recommendations),
            raw_text=assessment.raw_text,
            source=assessment.source,
            detected_patterns=[DetectedPatternRecord.from_pattern(p) for p in assessment.detected_patterns],
        )


class CheckInRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    check_in_id: str
    user_id: str
    created_at: datetime
    screening: List[bool] = Field(min_length=6, max_length=6)
    deterministic_tier: TierKey
    ai_tier: Optional[TierKey] = None
    final_tier: TierKey
    provenance: Literal["safety_floor", "model", "deterministic_responder"]
    explanation: str
    assessment: AssessmentRecord
    used_fallback: bool = False
    failure_codes: List[str] = Field(default_factory=list)


class CrisisSessionRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    started_at: datetime
    status: CrisisStatus = "active"
    loop_count: int = Field(default=0, ge=0)
    escalated_at: Optional[datetime] = None


class CrisisResolutionRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    started_at: datetime
    resolved_at: datetime
    follow_up_due_at: Optional[datetime] = None


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    user_id: str
    type: AuditEventType
    code: str
    detail: str = ""


class UserDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str
    longitudinal_state: Optional[LongitudinalStateRecord] = None
    check_ins: List[CheckInRecord] = Field(default_factory=list)
    crisis_session: Optional[CrisisSessionRecord] = None
    resolutions: List[CrisisResolutionRecord] = Field(default_factory=list)
    follow_up_due_at: Optional[datetime] = None
    follow_up_completed: bool = True
    audit_events: List[AuditEvent] = Field(default_factory=list)
