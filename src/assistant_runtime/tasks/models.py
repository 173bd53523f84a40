"""Domain models for the task log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from assistant_runtime.tasks.events import TaskEvent


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    OK = "ok"
    ERROR = "error"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.OK, TaskStatus.ERROR, TaskStatus.CANCELED})
ACTIVE_STATUSES = frozenset({TaskStatus.QUEUED, TaskStatus.RUNNING})


class TaskNotFoundError(LookupError):
    """Raised when an operation targets a task id that does not exist."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTaskTransitionError(ValueError):
    """Raised for a status change outside queued -> running -> terminal."""


@dataclass(slots=True)
class TaskView:
    """Readable task view for API, CLI and worker logic."""

    id: str
    kind: str
    status: TaskStatus
    input: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    def summary(self) -> dict[str, str]:
        return {"id": self.id, "kind": self.kind, "status": self.status.value}


@dataclass(slots=True)
class TaskEventView:
    """One stored log entry; ``id`` is the resumable replay cursor."""

    id: int
    task_id: str
    event: TaskEvent
    created_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.event.terminal

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "event": self.event.to_dict(),
            "createdAt": self.created_at.isoformat(),
        }
