"""
Longitudinal state boundary for Watchpost.

Design intent:
- Keep cross-session memory compact and deterministic.
- Update counters and trajectory synchronously; narrative text is refreshed in the background.
- Serialize narrative writers per user so counters are never clobbered.
"""
