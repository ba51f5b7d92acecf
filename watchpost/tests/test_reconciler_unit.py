import itertools

from watchpost.risk.models import RiskTier
from watchpost.risk.reconciler import MODEL_DEFAULT_EXPLANATION, SAFETY_FLOOR_EXPLANATION, reconcile


def test_final_tier_never_below_safety_floor() -> None:
    for det, ai in itertools.product(list(RiskTier), [None, *RiskTier]):
        result = reconcile(det, ai, "Some reasoning.")
        assert result.final_tier >= det
        if ai is not None:
            assert result.final_tier == max(det, ai)


def test_model_governs_when_it_is_higher() -> None:
    result = reconcile(RiskTier.LOW, RiskTier.HIGH_MONITORING, "Sleep collapse with withdrawal.")
    assert result.final_tier == RiskTier.HIGH_MONITORING
    assert result.provenance == "model"
    assert result.explanation == "Sleep collapse with withdrawal."


def test_deterministic_responder_provenance_when_fallback_governs() -> None:
    result = reconcile(RiskTier.LOW, RiskTier.MODERATE, "", ai_source="deterministic")
    assert result.provenance == "deterministic_responder"
    assert result.explanation == MODEL_DEFAULT_EXPLANATION


def test_safety_floor_governs_when_model_is_lower_or_missing() -> None:
    lower = reconcile(RiskTier.CRISIS, RiskTier.LOW, "Looks fine.")
    assert lower.final_tier == RiskTier.CRISIS
    assert lower.provenance == "safety_floor"
    assert lower.explanation == SAFETY_FLOOR_EXPLANATION

    missing = reconcile(RiskTier.MODERATE, None)
    assert missing.final_tier == RiskTier.MODERATE
    assert missing.explanation == SAFETY_FLOOR_EXPLANATION


def test_equal_tiers_keep_model_reasoning_as_explanation() -> None:
    result = reconcile(RiskTier.MODERATE, RiskTier.MODERATE, "Passive ideation without plan.")
    assert result.provenance == "safety_floor"
    assert result.explanation == "Passive ideation without plan."
