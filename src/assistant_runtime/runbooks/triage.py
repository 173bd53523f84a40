"""Triage item and feedback persistence."""

from __future__ import annotations

import hashlib
import json
import math
from pathlib import Path
from typing import Any

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from assistant_runtime.runbooks.models import TriageFeedback, TriageItem, TriageKind, TriageStatus
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
from assistant_runtime.storage.sqlmodel_models import TriageFeedbackRow, TriageItemRow

PRIORITY_MIN, PRIORITY_MAX = 0, 10
CONFIDENCE_MIN, CONFIDENCE_MAX = 0, 100
MAX_PAGE = 500


def clamp_int(value: object, minimum: int, maximum: int) -> int:
    """Round to the nearest int and clamp; anything non-numeric becomes ``minimum``."""

    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return minimum
    if not math.isfinite(number):
        return minimum
    return max(minimum, min(maximum, math.floor(number + 0.5)))


def default_source_key(
    *,
    runbook_id: str | None,
    kind: str,
    title: str,
    summary_md: str,
    source: dict[str, Any] | None,
) -> str:
    """Content-derived dedup key for items that arrive without one."""

    digest = hashlib.sha256()
    for part in (runbook_id or "", kind, title, summary_md):
        digest.update(str(part).encode("utf-8"))
        digest.update(b"|")
    digest.update(json.dumps(source or {}, ensure_ascii=False, separators=(",", ":")).encode())
    return f"auto:{digest.hexdigest()[:24]}"


class TriageRepository:
    """Triage items (deduplicated by ``source_key``) and their feedback trail."""

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

    def create_item(  # noqa: PLR0913
        self,
        *,
        runbook_id: str | None,
        kind: TriageKind,
        title: str,
        summary_md: str = "",
        priority: object = 0,
        confidence_pct: object = None,
        source_key: str | None = None,
        source: dict[str, Any] | None = None,
        chat_id: str | None = None,
    ) -> tuple[TriageItem, bool]:
        """Insert an item unless its ``source_key`` exists.

        Returns ``(item, created)``; for a duplicate key the stored row is
        returned unchanged and ``created`` is ``False``.
        """

        title = str(title or "").strip() or "Untitled"
        summary_md = str(summary_md or "")
        key = str(source_key or "").strip() or default_source_key(
            runbook_id=runbook_id,
            kind=kind.value,
            title=title,
            summary_md=summary_md,
            source=source,
        )
        existing = self.get_item_by_source_key(key)
        if existing is not None:
            return existing, False

        now = to_db_datetime(utc_now())
        row = TriageItemRow(
            id=new_id(),
            runbook_id=runbook_id,
            kind=kind.value,
            status=TriageStatus.OPEN.value,
            title=title,
            summary_md=summary_md,
            priority=clamp_int(priority, PRIORITY_MIN, PRIORITY_MAX),
            confidence_pct=(
                None
                if confidence_pct is None
                else clamp_int(confidence_pct, CONFIDENCE_MIN, CONFIDENCE_MAX)
            ),
            source_key=key,
            source_json=json.dumps(source or {}, ensure_ascii=False),
            chat_id=chat_id,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raced = self.get_item_by_source_key(key)
                if raced is None:
                    raise
                return raced, False
            session.refresh(row)
            return _to_item(row), True

    def get_item(self, item_id: str) -> TriageItem | None:
        with Session(self.engine) as session:
            row = session.get(TriageItemRow, item_id)
            return _to_item(row) if row is not None else None

    def get_item_by_source_key(self, source_key: str) -> TriageItem | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TriageItemRow).where(TriageItemRow.source_key == source_key),
            ).one_or_none()
            return _to_item(row) if row is not None else None

    def list_items(
        self,
        *,
        status: TriageStatus = TriageStatus.OPEN,
        kind: TriageKind | None = None,
        limit: int = 200,
    ) -> list[TriageItem]:
        bounded = max(1, min(MAX_PAGE, int(limit)))
        statement = (
            select(TriageItemRow)
            .where(TriageItemRow.status == status.value)
            .order_by(col(TriageItemRow.updated_at).desc())
            .limit(bounded)
        )
        if kind is not None:
            statement = statement.where(TriageItemRow.kind == kind.value)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_item(row) for row in rows]

    def set_status(self, item_id: str, status: TriageStatus) -> TriageItem | None:
        """Set status; ``completed_at`` is stamped for ``completed`` and cleared otherwise."""

        now = to_db_datetime(utc_now())
        completed_at = now if status is TriageStatus.COMPLETED else None
        return self._update(item_id, status=status.value, updated_at=now, completed_at=completed_at)

    def set_priority(self, item_id: str, priority: object) -> TriageItem | None:
        return self._update(
            item_id,
            priority=clamp_int(priority, PRIORITY_MIN, PRIORITY_MAX),
            updated_at=to_db_datetime(utc_now()),
        )

    def set_confidence(self, item_id: str, confidence_pct: object) -> TriageItem | None:
        return self._update(
            item_id,
            confidence_pct=clamp_int(confidence_pct, CONFIDENCE_MIN, CONFIDENCE_MAX),
            updated_at=to_db_datetime(utc_now()),
        )

    def create_feedback(  # noqa: PLR0913
        self,
        *,
        item_id: str,
        kind: str,
        actor: str = "user",
        reason: str | None = None,
        outcome: str | None = None,
        notes: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> TriageFeedback:
        row = TriageFeedbackRow(
            id=new_id(),
            item_id=item_id,
            kind=str(kind or "").strip(),
            actor=str(actor or "").strip() or "user",
            reason=_strip_or_none(reason),
            outcome=_strip_or_none(outcome),
            notes=_strip_or_none(notes),
            meta_json=json.dumps(meta, ensure_ascii=False) if meta is not None else None,
            created_at=to_db_datetime(utc_now()),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_feedback(row, None)

    def list_recent_feedback(
        self,
        *,
        runbook_id: str | None = None,
        limit: int = 100,
    ) -> list[TriageFeedback]:
        """Feedback joined with its item, newest first."""

        bounded = max(1, min(MAX_PAGE, int(limit)))
        statement = (
            select(TriageFeedbackRow, TriageItemRow)
            .join(TriageItemRow, col(TriageItemRow.id) == col(TriageFeedbackRow.item_id))
            .order_by(col(TriageFeedbackRow.created_at).desc())
            .limit(bounded)
        )
        if runbook_id is not None:
            statement = statement.where(TriageItemRow.runbook_id == runbook_id)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_feedback(feedback, item) for feedback, item in rows]

    def _update(self, item_id: str, **values: object) -> TriageItem | None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TriageItemRow).where(col(TriageItemRow.id) == item_id).values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
        return self.get_item(item_id)


def _strip_or_none(value: str | None) -> str | None:
    return None if value is None else str(value).strip()


def _load_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _to_item(row: TriageItemRow) -> TriageItem:
    return TriageItem(
        id=row.id,
        runbook_id=row.runbook_id,
        kind=TriageKind(row.kind),
        status=TriageStatus(row.status),
        title=row.title,
        summary_md=row.summary_md,
        priority=clamp_int(row.priority, PRIORITY_MIN, PRIORITY_MAX),
        confidence_pct=(
            None
            if row.confidence_pct is None
            else clamp_int(row.confidence_pct, CONFIDENCE_MIN, CONFIDENCE_MAX)
        ),
        source_key=row.source_key,
        source=_load_json_object(row.source_json),
        chat_id=row.chat_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=optional_utc(row.completed_at),
    )


def _to_feedback(row: TriageFeedbackRow, item: TriageItemRow | None) -> TriageFeedback:
    return TriageFeedback(
        id=row.id,
        item_id=row.item_id,
        kind=row.kind,
        actor=row.actor,
        reason=row.reason,
        outcome=row.outcome,
        notes=row.notes,
        meta=_load_json_object(row.meta_json),
        created_at=to_utc_aware_datetime(row.created_at),
        item_title=item.title if item is not None else None,
        item_kind=item.kind if item is not None else None,
        item_status=item.status if item is not None else None,
        runbook_id=item.runbook_id if item is not None else None,
    )
