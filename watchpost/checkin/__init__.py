"""Check-in submission flow: safety floor, model assessment, reconciliation and persistence."""
