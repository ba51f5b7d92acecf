"""
Risk tier boundary for Watchpost.

Design intent:
- Compute the deterministic safety floor before any model output is considered.
- Reconcile model tiers upward only; the floor is never lowered.
- Keep a rule-based responder available whenever the model path cannot answer.
"""
