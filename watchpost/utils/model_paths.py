from __future__ import annotations

import os
from pathlib import Path

DEFAULT_GGUF_NAME = "medgemma-1.5-4b-it-Q5_K_M.gguf"


def project_root() -> Path:
    # watchpost/utils/model_paths.py -> watchpost -> repo root
    return Path(__file__).resolve().parents[2]


def model_search_roots() -> list[Path]:
    roots: list[Path] = []
    model_root = os.getenv("WATCHPOST_MODEL_ROOT", "").strip()
    if model_root:
        roots.append(Path(model_root).expanduser())
    base = project_root()
    roots.extend([base, base / "models", base.parent / "models"])
    out: list[Path] = []
    seen: set[str] = set()
    for item in roots:
        key = str(item)
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def discover_medgemma_gguf() -> str:
    for root in model_search_roots():
        for candidate in (root / "MedGemma" / DEFAULT_GGUF_NAME, root / DEFAULT_GGUF_NAME):
            try:
                resolved = candidate.expanduser().resolve()
            except OSError:
                continue
            if resolved.exists():
                return str(resolved)
    return ""


def resolve_medgemma_gguf_path(explicit_path: str | None = None) -> str:
    """
    Resolve the GGUF path with precedence:
    1) explicit arg
    2) WATCHPOST_MEDGEMMA_GGUF
    3) auto-discovery under the model search roots
    """

    explicit = str(explicit_path or "").strip()
    if explicit:
        return explicit
    env_path = os.getenv("WATCHPOST_MEDGEMMA_GGUF", "").strip()
    if env_path:
        return env_path
    return discover_medgemma_gguf()
