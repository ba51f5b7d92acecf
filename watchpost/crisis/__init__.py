"""Crisis holding pattern: persisted-start timer, re-check loop and safety-plan ordering."""
