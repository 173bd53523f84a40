"""Runbook state, run history and cursor persistence."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from assistant_runtime.runbooks.models import RunbookRun, RunbookRunStatus, RunbookState
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
from assistant_runtime.storage.sqlmodel_models import (
    RunbookCursorRow,
    RunbookRunRow,
    RunbookStateRow,
)

logger = logging.getLogger(__name__)

MAX_RUNS_PAGE = 200


class RunbookRepository:
    """Rows the run protocol reads and writes around each runbook run."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def get_state(self, runbook_id: str) -> RunbookState | None:
        with Session(self.engine) as session:
            row = session.get(RunbookStateRow, runbook_id)
            return _to_state(row) if row is not None else None

    def list_states(self) -> dict[str, RunbookState]:
        with Session(self.engine) as session:
            rows = session.exec(select(RunbookStateRow)).all()
        return {row.runbook_id: _to_state(row) for row in rows}

    def upsert_state(
        self,
        *,
        runbook_id: str,
        chat_id: str | None,
        last_run_at: datetime | None = None,
        last_status: str | None = None,
        last_error: str | None = None,
    ) -> RunbookState:
        """Replace the whole state row (created on first call)."""

        values = {
            "chat_id": chat_id,
            "last_run_at": to_db_datetime(last_run_at) if last_run_at is not None else None,
            "last_status": last_status,
            "last_error": last_error,
        }
        try:
            return self._write_state(runbook_id, values)
        except IntegrityError:
            # A concurrent writer inserted the row first; the retry updates it.
            logger.debug("Runbook state for %s was created concurrently", runbook_id)
            return self._write_state(runbook_id, values)

    def _write_state(self, runbook_id: str, values: dict[str, Any]) -> RunbookState:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(RunbookStateRow, runbook_id)
            if row is None:
                row = RunbookStateRow(runbook_id=runbook_id, updated_at=now)
            for name, value in values.items():
                setattr(row, name, value)
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_state(row)

    def create_run(
        self,
        *,
        runbook_id: str,
        task_id: str | None,
        account_key: str | None = None,
    ) -> RunbookRun:
        now = to_db_datetime(utc_now())
        row = RunbookRunRow(
            id=new_id(),
            runbook_id=runbook_id,
            task_id=task_id,
            account_key=account_key,
            status=RunbookRunStatus.RUNNING.value,
            started_at=now,
            created_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run(row)

    def finish_run(
        self,
        run_id: str,
        *,
        status: RunbookRunStatus,
        error: str | None = None,
    ) -> RunbookRun | None:
        """Close a ``running`` run; a run that is already closed is left as is."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(RunbookRunRow)
                .where(
                    col(RunbookRunRow.id) == run_id,
                    col(RunbookRunRow.status) == RunbookRunStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    finished_at=to_db_datetime(utc_now()),
                    error=error,
                ),
            )
            session.commit()
        return self.get_run(run_id)

    def get_run(self, run_id: str) -> RunbookRun | None:
        with Session(self.engine) as session:
            row = session.get(RunbookRunRow, run_id)
            return _to_run(row) if row is not None else None

    def list_runs(self, runbook_id: str, *, limit: int = 50) -> list[RunbookRun]:
        bounded = max(1, min(MAX_RUNS_PAGE, int(limit)))
        with Session(self.engine) as session:
            rows = session.exec(
                select(RunbookRunRow)
                .where(RunbookRunRow.runbook_id == runbook_id)
                .order_by(col(RunbookRunRow.started_at).desc())
                .limit(bounded),
            ).all()
        return [_to_run(row) for row in rows]

    def get_cursor(self, *, runbook_id: str, account_key: str) -> dict[str, Any] | None:
        with Session(self.engine) as session:
            row = session.get(RunbookCursorRow, (runbook_id, account_key))
            if row is None:
                return None
            try:
                parsed = json.loads(row.cursor_json or "{}")
            except json.JSONDecodeError:
                logger.warning("Ignoring corrupt cursor for %s/%s", runbook_id, account_key)
                return None
            return parsed if isinstance(parsed, dict) else None

    def set_cursor(self, *, runbook_id: str, account_key: str, cursor: dict[str, Any]) -> None:
        """Replace the stored cursor (last write wins, no merge)."""

        now = to_db_datetime(utc_now())
        payload = json.dumps(cursor or {}, ensure_ascii=False, sort_keys=True)
        with Session(self.engine) as session:
            row = session.get(RunbookCursorRow, (runbook_id, account_key))
            if row is None:
                row = RunbookCursorRow(
                    runbook_id=runbook_id,
                    account_key=account_key,
                    cursor_json=payload,
                    updated_at=now,
                )
            else:
                row.cursor_json = payload
                row.updated_at = now
            session.add(row)
            session.commit()


def _to_state(row: RunbookStateRow) -> RunbookState:
    return RunbookState(
        runbook_id=row.runbook_id,
        chat_id=row.chat_id,
        last_run_at=optional_utc(row.last_run_at),
        last_status=row.last_status,
        last_error=row.last_error,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_run(row: RunbookRunRow) -> RunbookRun:
    return RunbookRun(
        id=row.id,
        runbook_id=row.runbook_id,
        task_id=row.task_id,
        account_key=row.account_key,
        status=RunbookRunStatus(row.status),
        started_at=to_utc_aware_datetime(row.started_at),
        finished_at=optional_utc(row.finished_at),
        error=row.error,
    )
