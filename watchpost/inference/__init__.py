"""
Local inference boundary for Watchpost.

Design intent:
- Own the generation resource through one orchestrator; no module-level model singletons.
- Race the first fragment against a fixed timeout and fall back deterministically.
- Interpret free-form model output through a tagged, exhaustive parse result.
"""
