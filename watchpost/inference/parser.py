from __future__ import annotations

"""
Recover a risk tier and reasoning from free-form generated text.

Design intent:
- Pure function of the raw text; the same input always yields the same result.
- Fixed resolution order: envelope, thinking strip, tier line, keyword scan, risk phrases, legacy object.
- Exhaustive tagged result; an unreadable answer is `Unparseable`, never a silent default tier.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Literal, Union

from watchpost.internal_core.errors import ParseFailure
from watchpost.risk.models import ClinicalAssessment, DetectedPattern, RiskTier
from watchpost.utils.text import truncate_to_sentences

STANDALONE_CONFIDENCE = 0.9
SCAN_CONFIDENCE = 0.7
LEGACY_DEFAULT_SCORE = 5.0
SUMMARY_MARKER = "UPDATED SUMMARY:"

# Most severe first; first match wins.
TIER_KEYWORDS: tuple[tuple[str, RiskTier], ...] = (
    ("red", RiskTier.CRISIS),
    ("crisis", RiskTier.CRISIS),
    ("orange", RiskTier.HIGH_MONITORING),
    ("yellow", RiskTier.MODERATE),
    ("green", RiskTier.LOW),
)

# Negated phrases precede the phrases they contain.
RISK_PHRASES: tuple[tuple[str, RiskTier], ...] = (
    ("no significant risk", RiskTier.LOW),
    ("imminent risk", RiskTier.CRISIS),
    ("immediate risk", RiskTier.CRISIS),
    ("acute risk", RiskTier.CRISIS),
    ("high risk", RiskTier.HIGH_MONITORING),
    ("elevated risk", RiskTier.HIGH_MONITORING),
    ("significant risk", RiskTier.HIGH_MONITORING),
    ("significant distress", RiskTier.HIGH_MONITORING),
    ("moderate risk", RiskTier.MODERATE),
    ("low risk", RiskTier.LOW),
    ("minimal risk", RiskTier.LOW),
)

_KEYWORD_PATTERNS = tuple(
    (re.compile(rf"\b{re.escape(word)}\b", flags=re.IGNORECASE), tier) for word, tier in TIER_KEYWORDS
)
_FENCE_RE = re.compile(r"```(?:json|JSON)?")
_FORMAL_THINKING_RE = re.compile(r"<(think|thought|thinking)>.*?</\1>", flags=re.IGNORECASE | re.DOTALL)
_GEMMA_THINKING_RE = re.compile(r"<unused94>.*?(?:<unused95>|$)", flags=re.DOTALL)
_INFORMAL_MARKERS = {"thought", "thinking", "reasoning"}
_LEADING_WORD_RE = re.compile(r"^[\W_]*([A-Za-z]+)")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_LINE_DECORATION = "*_`#>\"' \t"

MatchKind = Literal["first_line", "keyword_scan", "risk_phrase"]


@dataclass(frozen=True)
class ParsedTier:
    tier: RiskTier
    reasoning: str
    confidence: float
    standalone: bool
    matched_by: MatchKind


@dataclass(frozen=True)
class ParsedLegacyObject:
    tier: RiskTier
    reasoning: str
    confidence: float
    score: float | None
    deviations: tuple[str, ...]
    action: str | None


@dataclass(frozen=True)
class Unparseable:
    reason: str


ParseResult = Union[ParsedTier, ParsedLegacyObject, Unparseable]


def unwrap_envelope(raw: str) -> str:
    text = _FENCE_RE.sub("", str(raw or "")).strip()
    if not text or text[0] not in "[{":
        return text
    try:
        data = json.loads(text)
    except ValueError:
        return text
    inner = _envelope_content(data)
    return inner.strip() if inner is not None else text


def strip_thinking(text: str) -> str:
    cleaned = str(text or "")
    marker_idx = cleaned.rfind(SUMMARY_MARKER)
    if marker_idx >= 0:
        cleaned = cleaned[marker_idx + len(SUMMARY_MARKER) :]
    cleaned = _FORMAL_THINKING_RE.sub("", cleaned)
    cleaned = _GEMMA_THINKING_RE.sub("", cleaned).strip()

    match = _LEADING_WORD_RE.match(cleaned)
    if match and match.group(1).lower() in _INFORMAL_MARKERS:
        paragraphs = [p for p in _PARAGRAPH_SPLIT_RE.split(cleaned) if p.strip()]
        if len(paragraphs) > 1:
            cleaned = paragraphs[-1]
        else:
            parts = cleaned.split("\n", 1)
            cleaned = parts[1] if len(parts) > 1 else ""
    return cleaned.strip()


def clean_generated_text(raw: str) -> str:
    return strip_thinking(unwrap_envelope(raw))


def parse_generated_text(raw: str) -> ParseResult:
    text = clean_generated_text(raw)
    if not text:
        return Unparseable(reason="empty_after_cleanup")

    lines = [line.strip() for line in text.splitlines() if line.strip()]
    first_line = _normalize_line(lines[0])

    for word, tier in TIER_KEYWORDS:
        if first_line == word:
            reasoning = " ".join(lines[1:])
            return ParsedTier(
                tier=tier,
                reasoning=_finalize_reasoning(reasoning, tier),
                confidence=STANDALONE_CONFIDENCE,
                standalone=True,
                matched_by="first_line",
            )
        if _is_prefix_match(first_line, word):
            return _scan_result(tier, text, "first_line")

    for pattern, tier in _KEYWORD_PATTERNS:
        if pattern.search(text):
            return _scan_result(tier, text, "keyword_scan")

    lowered = text.lower()
    for phrase, tier in RISK_PHRASES:
        if phrase in lowered:
            return _scan_result(tier, text, "risk_phrase")

    legacy = _parse_legacy_object(text)
    if legacy is not None:
        return legacy
    return Unparseable(reason="no_tier_signal")


def to_assessment(result: ParseResult, raw_text: str) -> ClinicalAssessment:
    if isinstance(result, ParsedTier):
        return ClinicalAssessment(
            assessed_tier=result.tier,
            confidence=result.confidence,
            reasoning=result.reasoning,
            raw_text=raw_text,
            source="model",
        )
    if isinstance(result, ParsedLegacyObject):
        return ClinicalAssessment(
            assessed_tier=result.tier,
            confidence=result.confidence,
            reasoning=result.reasoning,
            recommendations=(result.action,) if result.action else (),
            raw_text=raw_text,
            detected_patterns=tuple(_deviation_pattern(item) for item in result.deviations),
            source="model",
        )
    if isinstance(result, Unparseable):
        raise ParseFailure("Generated text could not be interpreted.", detail=result.reason)
    raise TypeError(f"Unhandled parse result: {type(result).__name__}")


def parse_assessment(raw_text: str) -> ClinicalAssessment:
    return to_assessment(parse_generated_text(raw_text), raw_text)


def _scan_result(tier: RiskTier, text: str, matched_by: MatchKind) -> ParsedTier:
    return ParsedTier(
        tier=tier,
        reasoning=_finalize_reasoning(text, tier),
        confidence=SCAN_CONFIDENCE,
        standalone=False,
        matched_by=matched_by,
    )


def _finalize_reasoning(text: str, tier: RiskTier) -> str:
    reasoning = truncate_to_sentences(text, 2)
    return reasoning or f"Risk assessment: {tier.display_name}"


def _normalize_line(line: str) -> str:
    return line.strip(_LINE_DECORATION).rstrip(".:!,;").strip(_LINE_DECORATION).lower()


def _is_prefix_match(line: str, word: str) -> bool:
    if not line.startswith(word) or len(line) == len(word):
        return False
    return not line[len(word)].isalnum()


def _envelope_content(data: Any) -> str | None:
    if isinstance(data, list):
        for item in data:
            found = _envelope_content(item)
            if found is not None:
                return found
        return None
    if not isinstance(data, dict):
        return None
    completion = data.get("completion")
    if isinstance(completion, str):
        return completion
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        first = choices[0]
        if isinstance(first.get("text"), str):
            return first["text"]
        for key in ("message", "delta"):
            body = first.get(key)
            if isinstance(body, dict) and isinstance(body.get("content"), str):
                return body["content"]
    return None


def _parse_legacy_object(text: str) -> ParsedLegacyObject | None:
    data = _parse_json_object(text)
    if data is None:
        return None
    tier = None
    for key in ("risk_tier", "tier", "riskTier", "risk_level"):
        tier = RiskTier.from_label(data.get(key)) if isinstance(data.get(key), str) else None
        if tier is not None:
            break
    if tier is None:
        return None

    score: float | None = None
    for key in ("risk_score", "score", "riskScore"):
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            score = float(value)
            break
    confidence = max(0.0, min(1.0, (score if score is not None else LEGACY_DEFAULT_SCORE) / 10.0))

    raw_deviations = data.get("key_deviations", data.get("deviations", []))
    deviations = tuple(str(item) for item in raw_deviations if str(item).strip()) if isinstance(raw_deviations, list) else ()
    action = data.get("action")
    return ParsedLegacyObject(
        tier=tier,
        reasoning=_finalize_reasoning(str(data.get("reasoning") or ""), tier),
        confidence=confidence,
        score=score,
        deviations=deviations,
        action=str(action).strip() if isinstance(action, str) and action.strip() else None,
    )


def _deviation_pattern(name: str) -> DetectedPattern:
    lowered = name.lower()
    if "sleep" in lowered:
        return DetectedPattern(type="Sleep Disruption", severity="Moderate", description=name)
    if "hrv" in lowered:
        return DetectedPattern(type="HRV Drop", severity="Moderate", description=name)
    if "activity" in lowered or "step" in lowered:
        return DetectedPattern(type="Activity Decline", severity="Moderate", description=name)
    if "voice" in lowered or "speech" in lowered:
        return DetectedPattern(type="Voice Change", severity="Moderate", description=name)
    if "mood" in lowered:
        return DetectedPattern(type="Mood Decline", severity="Moderate", description=name)
    return DetectedPattern(type="Combined Indicators", severity="Mild", description=name)


def _parse_json_object(raw: str) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
        if isinstance(data, dict):
            return data
    except ValueError:
        pass

    extracted = _extract_first_json_object(raw)
    if not extracted:
        return None
    try:
        data = json.loads(extracted)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _extract_first_json_object(text: str) -> str:
    start = text.find("{")
    if start < 0:
        return ""
    depth = 0
    in_str = False
    escape = False
    for i, ch in enumerate(text[start:], start=start):
        if in_str:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return ""
