"""Durable task log, event fan-out and queued-task execution.

Every long-running operation (chat replies, logins, runbook runs) is a row in
``tasks`` plus an append-only stream in ``task_events``.  The event id doubles
as the replay cursor: subscribers only ever ask for "events after N", so a late
or reconnecting client sees the same ordered stream as one attached from the
start.
"""
