"""Domain models for runbook runs and triage items."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class RunbookRunStatus(str, Enum):
    RUNNING = "running"
    OK = "ok"
    ERROR = "error"


class TriageKind(str, Enum):
    QUICK_READ = "quick_read"
    NEXT_ACTION = "next_action"


class TriageStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"
    DISMISSED = "dismissed"


OUTPUT_PARSE_FAILED = "output_parse_failed"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class RunbookState:
    """Per-runbook pointer to its conversation and last outcome."""

    runbook_id: str
    chat_id: str | None
    last_run_at: datetime | None
    last_status: str | None
    last_error: str | None
    updated_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "runbookId": self.runbook_id,
            "chatId": self.chat_id,
            "lastRunAt": _iso(self.last_run_at),
            "lastStatus": self.last_status,
            "lastError": self.last_error,
            "updatedAt": _iso(self.updated_at),
        }


@dataclass(slots=True)
class RunbookRun:
    id: str
    runbook_id: str
    task_id: str | None
    account_key: str | None
    status: RunbookRunStatus
    started_at: datetime
    finished_at: datetime | None
    error: str | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "runbookId": self.runbook_id,
            "taskId": self.task_id,
            "accountKey": self.account_key,
            "status": self.status.value,
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
            "error": self.error,
        }


@dataclass(slots=True)
class TriageItem:
    id: str
    runbook_id: str | None
    kind: TriageKind
    status: TriageStatus
    title: str
    summary_md: str
    priority: int
    confidence_pct: int | None
    source_key: str
    source: dict[str, Any]
    chat_id: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "runbookId": self.runbook_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "title": self.title,
            "summaryMd": self.summary_md,
            "priority": self.priority,
            "confidencePct": self.confidence_pct,
            "sourceKey": self.source_key,
            "source": dict(self.source),
            "chatId": self.chat_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "completedAt": _iso(self.completed_at),
        }


@dataclass(slots=True)
class TriageFeedback:
    """One feedback record, joined with the item it refers to."""

    id: str
    item_id: str
    kind: str
    actor: str
    reason: str | None
    outcome: str | None
    notes: str | None
    meta: dict[str, Any]
    created_at: datetime
    item_title: str | None = None
    item_kind: str | None = None
    item_status: str | None = None
    runbook_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "itemId": self.item_id,
            "kind": self.kind,
            "actor": self.actor,
            "reason": self.reason,
            "outcome": self.outcome,
            "notes": self.notes,
            "meta": dict(self.meta),
            "createdAt": _iso(self.created_at),
            "itemTitle": self.item_title,
            "itemKind": self.item_kind,
            "itemStatus": self.item_status,
            "runbookId": self.runbook_id,
        }
