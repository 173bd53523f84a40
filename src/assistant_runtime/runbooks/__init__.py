"""Scheduled runbooks: definitions, run protocol, triage store and scheduler."""
