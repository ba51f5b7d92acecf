from __future__ import annotations

"""
Default prompt templates and their bounded fields.

Design intent:
- Keep templates as plain text so clinicians can review and edit them.
- Allow a JSON override file, but only accept overrides that keep every placeholder.
"""

import json
import logging
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Literal, Mapping

PromptKind = Literal[
    "risk_assessment",
    "narrative_update",
    "risk_explanation",
    "handoff_report",
    "safety_plan_rerank",
    "context_ingestion",
]

NO_DATA = "No data"
PLACEHOLDER_RE = re.compile(r"\{\{([A-Z_]+)\}\}")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromptField:
    key: str
    budget: int
    placeholder: str = NO_DATA


@dataclass(frozen=True)
class PromptSpec:
    kind: PromptKind
    template: str
    fields: tuple[PromptField, ...]

    def field_keys(self) -> set[str]:
        return {item.key for item in self.fields}

    def with_budgets(self, budgets: Mapping[str, int]) -> "PromptSpec":
        unknown = set(budgets) - self.field_keys()
        if unknown:
            raise ValueError(f"Unknown fields for {self.kind}: {sorted(unknown)}")
        fields = tuple(
            replace(item, budget=int(budgets[item.key])) if item.key in budgets else item
            for item in self.fields
        )
        return replace(self, fields=fields)

    def with_template(self, template: str) -> "PromptSpec":
        missing = self.field_keys() - set(PLACEHOLDER_RE.findall(template))
        if missing:
            raise ValueError(f"Template for {self.kind} is missing placeholders: {sorted(missing)}")
        return replace(self, template=template)


RISK_ASSESSMENT_TEMPLATE = """Assess mental health risk. Combine history + current data.

HISTORY (LCSC):
{{HISTORY_CONTEXT}}

CURRENT DATA:
- Health: {{HEALTH_SUMMARY}}
- Speech: "{{TRANSCRIPT}}"
- Voice: {{VOICE_ANALYSIS}}
- Behavior: {{BEHAVIORAL_TELEMETRY}}
- C-SSRS: {{CSSRS_SUMMARY}}
- Vigilance: {{VIGILANCE_NOTE}}
- Signal discrepancy: {{SIGNAL_DISCREPANCY}}

TASK:
Assess current risk level based on ALL data above.

RESPONSE FORMAT (STRICT):
- First word must be: green, yellow, orange, or red
- Second line: Short explanation (1 sentence)
- NO JSON, NO other formatting

Example response:
red
Active suicidal ideation detected.

YOUR RESPONSE:
"""

NARRATIVE_UPDATE_TEMPLATE = """You are updating a clinical continuity note. Merge the PAST CONTEXT with TODAY'S DATA into a concise, updated summary (max 3 sentences).

PAST CONTEXT:
{{PREVIOUS_SUMMARY}}

TODAY'S DATA:
- Risk: {{RISK_TIER}}
- Check-in Type: {{CHECKIN_TYPE}}
- Transcript: {{TRANSCRIPT}}
- Sleep: {{SLEEP_HOURS}} (Trend: {{SLEEP_TREND}})

TASK:
1. Identify if the patient is improving, worsening, or stable vs Past Context.
2. Highlight persistent issues (e.g. "Sleep remains poor").
3. Drop irrelevant old details to save space.

UPDATED SUMMARY:
"""

RISK_EXPLANATION_TEMPLATE = """You are a clinical explainability engine. Explain WHY the patient is currently at {{RISK_LEVEL}} risk level.

PATIENT HISTORY:
{{HISTORY_CONTEXT}}

RECENT RISK FACTORS:
{{RISK_FACTORS}}

HEALTH DATA:
{{HEALTH_CONTEXT}}

LATEST DATA IS FROM: {{TIME_AGO}}
SOURCE OF RISK: {{DATA_SOURCE}}

TASK:
Provide a 2-sentence explanation for the risk level.

RULES:
1. Start immediately with the explanation.
2. If C-SSRS flags exist, cite them.
3. If recent data is poor (e.g. 0 hours sleep), cite it.
4. NO <thought> tags. NO internal monologue.

EXPLANATION:
"""

HANDOFF_REPORT_TEMPLATE = """You are a clinical medical scribe. Write a professional SBAR (Situation, Background, Assessment, Recommendation) secure message to a {{RECIPIENT}}.

PATIENT: {{PATIENT_NAME}}
RISK TIER: {{RISK_TIER}}
HISTORY:
{{HISTORY_CONTEXT}}
DATA:
{{HEALTH_CONTEXT}}
{{VOICE_CONTEXT}}
TRANSCRIPT: {{TRANSCRIPT}}

STRICT RULES:
1. Audience: This is for {{RECIPIENT}}. Tailor the language accordingly.
2. USE ONLY THE DATA PROVIDED. Do not invent symptoms.
3. Format strictly as SBAR with exactly four sections.
4. STOP IMMEDIATELY after the RECOMMENDATION section and write <<END_OF_REPORT>>.

FORMAT:
SITUATION: [State current risk tier]
BACKGROUND: [Summarize data]
ASSESSMENT: [Clinical summary of provided data]
RECOMMENDATION: [Requested follow-up]

Write the SBAR report now, starting with SITUATION:
"""

SAFETY_PLAN_RERANK_TEMPLATE = """Reorder safety plan sections for a veteran in crisis. Output ONLY a comma-separated list of numbers. Do NOT think. Do NOT explain.

SECTIONS:
1=Warning Signs, 2=Coping Strategies, 3=Social Distractions, 4=Support Contacts, 5=Professional Help, 6=Lethal Means Reduction, 7=Reasons for Living

CLINICAL CONTEXT:
Trajectory: {{TRAJECTORY}}
Primary Driver: {{PRIMARY_DRIVER}}
Risk Tier: {{RISK_TIER}}
Recent Crises: {{RECENT_CRISIS_COUNT}}
Detected Patterns: {{DETECTED_PATTERNS}}
Narrative: {{CLINICAL_NARRATIVE}}

RULES:
1. Output EXACTLY 7 numbers separated by commas, most relevant section FIRST.
2. Every number 1-7 must appear EXACTLY once.
3. No JSON. No explanation. ONLY the 7 numbers.

Example: 6,5,2,7,4,3,1

ORDER:
"""

CONTEXT_INGESTION_TEMPLATE = """You are maintaining a clinical summary for a veteran.

CURRENT SUMMARY:
{{CURRENT_SUMMARY}}

NEW DOCUMENT ({{DOCUMENT_TYPE}}):
{{NEW_CONTEXT}}

TASK:
Update the CURRENT SUMMARY to include key medical history, diagnoses, and risk factors from the NEW DOCUMENT.
Keep the summary concise (under 300 words). Do not lose existing important details.

UPDATED SUMMARY:
"""

DEFAULT_SPECS: dict[PromptKind, PromptSpec] = {
    "risk_assessment": PromptSpec(
        kind="risk_assessment",
        template=RISK_ASSESSMENT_TEMPLATE,
        fields=(
            PromptField("HISTORY_CONTEXT", 500, "No prior history."),
            PromptField("HEALTH_SUMMARY", 300, "No health data"),
            PromptField("TRANSCRIPT", 600),
            PromptField("VOICE_ANALYSIS", 300),
            PromptField("BEHAVIORAL_TELEMETRY", 400),
            PromptField("CSSRS_SUMMARY", 120, "All negative"),
            PromptField("VIGILANCE_NOTE", 200, "None"),
            PromptField("SIGNAL_DISCREPANCY", 300, "None detected"),
        ),
    ),
    "narrative_update": PromptSpec(
        kind="narrative_update",
        template=NARRATIVE_UPDATE_TEMPLATE,
        fields=(
            PromptField("PREVIOUS_SUMMARY", 600, "Initial intake. No prior history."),
            PromptField("RISK_TIER", 40),
            PromptField("CHECKIN_TYPE", 40, "daily"),
            PromptField("TRANSCRIPT", 600, "No transcript"),
            PromptField("SLEEP_HOURS", 20, "N/A"),
            PromptField("SLEEP_TREND", 20, "N/A"),
        ),
    ),
    "risk_explanation": PromptSpec(
        kind="risk_explanation",
        template=RISK_EXPLANATION_TEMPLATE,
        fields=(
            PromptField("RISK_LEVEL", 40),
            PromptField("HISTORY_CONTEXT", 500, "No significant history."),
            PromptField("RISK_FACTORS", 300, "None reported in this check-in."),
            PromptField("HEALTH_CONTEXT", 300, "No wearable data available."),
            PromptField("TIME_AGO", 60, "unknown"),
            PromptField("DATA_SOURCE", 60, "C-SSRS"),
        ),
    ),
    "handoff_report": PromptSpec(
        kind="handoff_report",
        template=HANDOFF_REPORT_TEMPLATE,
        fields=(
            PromptField("RECIPIENT", 60, "Primary Care Provider"),
            PromptField("PATIENT_NAME", 60, "Veteran"),
            PromptField("RISK_TIER", 40),
            PromptField("HISTORY_CONTEXT", 500, "None available"),
            PromptField("HEALTH_CONTEXT", 400, "No health data available"),
            PromptField("VOICE_CONTEXT", 400),
            PromptField("TRANSCRIPT", 600),
        ),
    ),
    "safety_plan_rerank": PromptSpec(
        kind="safety_plan_rerank",
        template=SAFETY_PLAN_RERANK_TEMPLATE,
        fields=(
            PromptField("TRAJECTORY", 20, "stable"),
            PromptField("PRIMARY_DRIVER", 20, "combined"),
            PromptField("RISK_TIER", 40, "CRISIS"),
            PromptField("RECENT_CRISIS_COUNT", 10, "0"),
            PromptField("DETECTED_PATTERNS", 300, "None detected"),
            PromptField("CLINICAL_NARRATIVE", 400, "No prior history."),
        ),
    ),
    "context_ingestion": PromptSpec(
        kind="context_ingestion",
        template=CONTEXT_INGESTION_TEMPLATE,
        fields=(
            PromptField("CURRENT_SUMMARY", 600, "No prior summary."),
            PromptField("DOCUMENT_TYPE", 60, "Discharge Summary"),
            PromptField("NEW_CONTEXT", 1500),
        ),
    ),
}


def load_prompt_specs(override_path: str | Path | None = None) -> dict[PromptKind, PromptSpec]:
    specs = dict(DEFAULT_SPECS)
    if not override_path:
        return specs
    path = Path(override_path).expanduser()
    if not path.exists():
        logger.warning("Prompt override file not found: %s", path)
        return specs
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Prompt override file unreadable (%s): %s", path, exc)
        return specs
    if not isinstance(payload, dict):
        logger.warning("Prompt override file must hold a JSON object: %s", path)
        return specs

    for kind, template in payload.items():
        spec = specs.get(kind)  # type: ignore[call-overload]
        if spec is None or not isinstance(template, str) or not template.strip():
            logger.warning("Ignoring prompt override for %r.", kind)
            continue
        try:
            specs[spec.kind] = spec.with_template(template)
        except ValueError as exc:
            logger.warning("Ignoring prompt override for %r: %s", kind, exc)
    return specs
