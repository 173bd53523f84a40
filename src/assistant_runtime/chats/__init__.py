"""Chat transcripts used by chat runs and runbook conversations."""
