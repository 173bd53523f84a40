"""Task log, event fan-out and runbook scheduling for the assistant backend."""

__version__ = "0.3.0"
