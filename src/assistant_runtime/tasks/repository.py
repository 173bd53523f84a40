"""Persistent task log backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from assistant_runtime.storage.alembic_runner import upgrade_head
from assistant_runtime.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    new_id,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from assistant_runtime.storage.sqlmodel_models import TaskEventRow, TaskRow
from assistant_runtime.tasks.events import CanceledEvent, DoneEvent, TaskEvent, parse_event
from assistant_runtime.tasks.models import (
    ACTIVE_STATUSES,
    InvalidTaskTransitionError,
    TaskEventView,
    TaskNotFoundError,
    TaskStatus,
    TaskView,
)

logger = logging.getLogger(__name__)

MAX_EVENTS_PAGE = 2_000
_ACTIVE_VALUES = tuple(status.value for status in ACTIVE_STATUSES)


class TaskRepository:
    """Task log persistence facade.

    Every status change is a single conditional UPDATE whose rowcount decides
    the winner, so concurrent writers (API, scheduler, workers in other
    processes) never need an external lock.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(
        self,
        *,
        kind: str,
        input: dict[str, Any] | None = None,  # noqa: A002
        status: TaskStatus = TaskStatus.QUEUED,
    ) -> TaskView:
        """Create a task; ``running`` tasks get ``started_at`` immediately."""

        if status.is_terminal:
            raise InvalidTaskTransitionError(f"Cannot create a task in status={status.value}")
        now = to_db_datetime(utc_now())
        row = TaskRow(
            id=new_id(),
            kind=str(kind or "task"),
            status=status.value,
            input_json=_dump_input(input),
            created_at=now,
            updated_at=now,
            started_at=now if status is TaskStatus.RUNNING else None,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            return _to_task_view(row) if row is not None else None

    def require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        kind: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, newest first."""

        statement = select(TaskRow).order_by(col(TaskRow.created_at).desc()).limit(limit)
        if status is not None:
            statement = statement.where(TaskRow.status == status.value)
        if kind:
            statement = statement.where(TaskRow.kind == kind)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def update_input(self, task_id: str, input: dict[str, Any] | None) -> TaskView:  # noqa: A002
        """Replace the task's structured input payload."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(col(TaskRow.id) == task_id)
                .values(input_json=_dump_input(input), updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotFoundError(task_id)
            session.commit()
        return self.require_task(task_id)

    def append_event(self, task_id: str, event: TaskEvent) -> TaskEventView | None:
        """Append one event and bump ``updated_at``.

        Returns ``None`` without writing when the task is already terminal, so
        its ``done``/``canceled`` entry stays the last one in the log.
        """

        if event.terminal:
            raise ValueError(
                f"Terminal event {event.type!r} must be written by finish_task/cancel_task",
            )
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            touched = session.exec(
                sa_update(TaskRow)
                .where(col(TaskRow.id) == task_id, col(TaskRow.status).in_(_ACTIVE_VALUES))
                .values(updated_at=now),
            )
            if touched.rowcount != 1:
                session.rollback()
                if session.get(TaskRow, task_id) is None:
                    raise TaskNotFoundError(task_id)
                logger.debug("Dropped %s event for finished task %s", event.type, task_id)
                return None
            row = _add_event(session, task_id=task_id, event=event, created_at=now)
            session.commit()
            session.refresh(row)
            return _to_event_view(row)

    def set_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> TaskView:
        """Partial status update; timestamps are only written when provided.

        Once the task is terminal any further call is a no-op that returns the
        stored task unchanged.
        """

        while True:
            current = self.require_task(task_id)
            if current.status.is_terminal:
                return current
            _check_transition(current.status, status)

            values: dict[str, object] = {
                "status": status.value,
                "updated_at": to_db_datetime(utc_now()),
            }
            if started_at is not None:
                values["started_at"] = to_db_datetime(started_at)
            if completed_at is not None:
                values["completed_at"] = to_db_datetime(completed_at)
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.id) == task_id,
                        col(TaskRow.status) == current.status.value,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
            return self.require_task(task_id)

    def finish_task(self, task_id: str, *, ok: bool, exit_code: int | None = None) -> bool:
        """Move an active task to ``ok``/``error`` and append its ``done`` event.

        Returns ``False`` when the task already finished (duplicate completion).
        """

        status = TaskStatus.OK if ok else TaskStatus.ERROR
        return self._terminate(task_id, status=status, event=DoneEvent(ok=ok, exit_code=exit_code))

    def cancel_task(self, task_id: str, *, reason: str = "canceled") -> bool:
        """Cancel a queued/running task; ``False`` when it is already terminal."""

        return self._terminate(
            task_id,
            status=TaskStatus.CANCELED,
            event=CanceledEvent(reason=reason),
        )

    def list_events(
        self,
        task_id: str,
        *,
        after_id: int = 0,
        limit: int = 500,
    ) -> list[TaskEventView]:
        """Return events with ``id > after_id`` in id order (the replay primitive)."""

        bounded = max(1, min(MAX_EVENTS_PAGE, int(limit)))
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEventRow)
                .where(
                    TaskEventRow.task_id == task_id,
                    col(TaskEventRow.id) > max(0, int(after_id)),
                )
                .order_by(col(TaskEventRow.id).asc())
                .limit(bounded),
            ).all()
        return [_to_event_view(row) for row in rows]

    def claim_next_queued(self, *, kind: str | None = None) -> TaskView | None:
        """Atomically claim the oldest queued task, optionally of one kind."""

        while True:
            statement = (
                select(TaskRow)
                .where(TaskRow.status == TaskStatus.QUEUED.value)
                .order_by(col(TaskRow.created_at).asc())
                .limit(1)
            )
            if kind:
                statement = statement.where(TaskRow.kind == kind)
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(statement).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.id) == candidate.id,
                        col(TaskRow.status) == TaskStatus.QUEUED.value,
                    )
                    .values(
                        status=TaskStatus.RUNNING.value,
                        started_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.get(TaskRow, candidate.id)
                session.refresh(claimed)
                return _to_task_view(claimed)

    def _terminate(self, task_id: str, *, status: TaskStatus, event: TaskEvent) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(col(TaskRow.id) == task_id, col(TaskRow.status).in_(_ACTIVE_VALUES))
                .values(status=status.value, completed_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                if session.get(TaskRow, task_id) is None:
                    raise TaskNotFoundError(task_id)
                return False
            _add_event(session, task_id=task_id, event=event, created_at=now)
            session.commit()
        logger.debug("Task %s finished with status=%s", task_id, status.value)
        return True


def _check_transition(current: TaskStatus, target: TaskStatus) -> None:
    if target == current:
        return
    if current is TaskStatus.RUNNING and target is TaskStatus.QUEUED:
        raise InvalidTaskTransitionError("Task cannot move from running back to queued")


def _add_event(
    session: Session,
    *,
    task_id: str,
    event: TaskEvent,
    created_at: datetime,
) -> TaskEventRow:
    row = TaskEventRow(
        task_id=task_id,
        event_type=event.type,
        event_json=json.dumps(event.to_dict(), ensure_ascii=False),
        created_at=created_at,
    )
    session.add(row)
    return row


def _dump_input(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_input(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        id=row.id,
        kind=row.kind,
        status=TaskStatus(row.status),
        input=_load_input(row.input_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
    )


def _to_event_view(row: TaskEventRow) -> TaskEventView:
    payload = json.loads(row.event_json)
    return TaskEventView(
        id=row.id or 0,
        task_id=row.task_id,
        event=parse_event(payload if isinstance(payload, dict) else {}),
        created_at=to_utc_aware_datetime(row.created_at),
    )
