import json
from datetime import datetime, timezone

import pytest

from watchpost.longitudinal.compressor import LongitudinalState
from watchpost.prompts.composer import PromptComposer, compose
from watchpost.prompts.templates import DEFAULT_SPECS, NO_DATA, load_prompt_specs
from watchpost.risk.models import RiskTier, ScreeningResponse
from watchpost.utils.text import TRUNCATION_MARKER


def _state() -> LongitudinalState:
    return LongitudinalState(
        trajectory="worsening",
        primary_driver="sleep",
        check_in_count=4,
        recent_crisis_count=1,
        days_since_last_crisis=3,
        narrative="Sleep has been poor for a week.",
        last_updated=datetime(2026, 3, 1, tzinfo=timezone.utc),
        last_tier=RiskTier.HIGH_MONITORING,
    )


def test_empty_field_renders_placeholder() -> None:
    composer = PromptComposer()
    prompt = composer.risk_assessment(screening=None, health=None, state=None, transcript="")
    assert f'Speech: "{NO_DATA}"' in prompt
    assert "No prior history." in prompt
    assert "No health data" in prompt
    assert "{{" not in prompt


def test_long_transcript_is_capped_to_its_budget() -> None:
    composer = PromptComposer(transcript_budget=50)
    transcript = "I have not slept well. " * 40
    prompt = composer.risk_assessment(
        screening=ScreeningResponse.from_answers([False] * 6),
        health=None,
        state=None,
        transcript=transcript,
    )
    speech_line = next(line for line in prompt.splitlines() if line.startswith("- Speech:"))
    rendered = speech_line[len('- Speech: "') : -1]
    assert len(rendered) == 50
    assert rendered.endswith(TRUNCATION_MARKER)


def test_history_digest_respects_history_budget() -> None:
    composer = PromptComposer(history_budget=60)
    prompt = composer.risk_assessment(
        screening=ScreeningResponse.from_answers([False] * 6),
        health=None,
        state=_state(),
    )
    history = prompt.split("HISTORY (LCSC):\n", 1)[1].split("\n\nCURRENT DATA:", 1)[0]
    assert len(history) <= 60


def test_worsening_state_adds_vigilance_note() -> None:
    prompt = PromptComposer().risk_assessment(
        screening=ScreeningResponse.from_answers([False] * 6),
        health=None,
        state=_state(),
    )
    assert "Vigilance: Increase vigilance - " in prompt


def test_same_inputs_give_identical_prompts() -> None:
    composer = PromptComposer()
    kwargs = dict(
        screening=ScreeningResponse.from_answers([True, True, False, False, False, False]),
        health=None,
        state=_state(),
        transcript="Rough week.",
    )
    assert composer.risk_assessment(**kwargs) == composer.risk_assessment(**kwargs)


def test_unknown_field_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown fields"):
        compose(DEFAULT_SPECS["narrative_update"], {"NOT_A_FIELD": "x"})


def test_rerank_prompt_uses_state_fields() -> None:
    prompt = PromptComposer().safety_plan_rerank(state=_state(), patterns=())
    assert "Trajectory: worsening" in prompt
    assert "Primary Driver: sleep" in prompt
    assert "Detected Patterns: None detected" in prompt


def test_override_file_replaces_valid_templates_only(tmp_path) -> None:
    override = tmp_path / "prompts.json"
    override.write_text(
        json.dumps(
            {
                "context_ingestion": "Summary {{CURRENT_SUMMARY}} / {{DOCUMENT_TYPE}} / {{NEW_CONTEXT}}",
                "narrative_update": "Missing placeholders",
                "unknown_kind": "ignored",
            }
        ),
        encoding="utf-8",
    )
    specs = load_prompt_specs(override)
    assert specs["context_ingestion"].template.startswith("Summary ")
    assert specs["narrative_update"].template == DEFAULT_SPECS["narrative_update"].template


def test_missing_override_file_keeps_defaults(tmp_path) -> None:
    specs = load_prompt_specs(tmp_path / "absent.json")
    assert specs == DEFAULT_SPECS


def test_placeholder_text_inside_a_field_is_not_expanded() -> None:
    composer = PromptComposer(telemetry_budget=40)
    prompt = composer.risk_assessment(
        screening=ScreeningResponse.from_answers([False] * 6),
        health=None,
        state=None,
        transcript="I keep waking at 3am. " * 30,
        behavioral_report="{{TRANSCRIPT}}",
    )
    behavior_line = next(line for line in prompt.splitlines() if line.startswith("- Behavior:"))
    rendered = behavior_line[len("- Behavior: ") :]
    assert rendered == "{{TRANSCRIPT}}"
    assert len(rendered) <= 40
    assert prompt.count("I keep waking at 3am.") < 30
