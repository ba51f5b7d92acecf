from __future__ import annotations

import re

TRUNCATION_MARKER = "...(truncated)"

_SENTENCE_END_RE = re.compile(r"[.!?](?=\s|$)")


def truncate_to_budget(text: str, budget: int, *, marker: str = TRUNCATION_MARKER) -> str:
    """Hard-cap text at `budget` characters; the marker counts against the budget."""

    if budget <= 0:
        return ""
    if len(text) <= budget:
        return text
    if len(marker) >= budget:
        return marker[:budget]
    return text[: budget - len(marker)] + marker


def truncate_to_sentences(text: str, max_sentences: int = 2) -> str:
    cleaned = " ".join(str(text or "").split())
    if not cleaned or max_sentences <= 0:
        return ""
    count = 0
    for match in _SENTENCE_END_RE.finditer(cleaned):
        count += 1
        if count >= max_sentences:
            return cleaned[: match.end()].strip()
    return cleaned
