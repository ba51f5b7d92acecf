"""
Watchpost check-in risk pipeline.

Design intent:
- Turn screening answers, physiological signals and behavioral telemetry into a governed risk tier.
- Keep the deterministic safety floor independent from every AI step.
- Keep cross-session memory small enough for a short-context local model.
"""
