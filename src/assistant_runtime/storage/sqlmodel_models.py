"""SQLModel ORM tables for the task log, runbook and triage storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "status", "kind", "created_at"),)

    id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    status: str = Field(index=True)
    input_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_events_task_cursor", "task_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    event_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ChatRow(SQLModel, table=True):
    __tablename__ = "chats"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    title: str
    hidden: bool = Field(default=False)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ChatMessageRow(SQLModel, table=True):
    __tablename__ = "chat_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_chat_messages_chat_time", "chat_id", "created_at"),)

    id: str = Field(primary_key=True)
    chat_id: str = Field(
        sa_column=Column(
            ForeignKey("chats.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    role: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    meta_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunbookStateRow(SQLModel, table=True):
    __tablename__ = "runbook_state"  # type: ignore[bad-override]

    runbook_id: str = Field(primary_key=True)
    chat_id: str | None = None
    last_run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_status: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunbookRunRow(SQLModel, table=True):
    __tablename__ = "runbook_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_runbook_runs_runbook_started", "runbook_id", "started_at"),)

    id: str = Field(primary_key=True)
    runbook_id: str
    task_id: str | None = None
    account_key: str | None = None
    status: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunbookCursorRow(SQLModel, table=True):
    __tablename__ = "runbook_cursors"  # type: ignore[bad-override]
    runbook_id: str = Field(primary_key=True)
    account_key: str = Field(primary_key=True)
    cursor_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TriageItemRow(SQLModel, table=True):
    __tablename__ = "triage_items"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_triage_items_status_updated", "status", "updated_at"),)

    id: str = Field(primary_key=True)
    runbook_id: str | None = Field(default=None, index=True)
    kind: str
    status: str
    title: str
    summary_md: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=0)
    confidence_pct: int | None = None
    source_key: str = Field(unique=True)
    source_json: str = Field(sa_column=Column(Text, nullable=False))
    chat_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TriageFeedbackRow(SQLModel, table=True):
    __tablename__ = "triage_feedback"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_triage_feedback_item_time", "item_id", "created_at"),)

    id: str = Field(primary_key=True)
    item_id: str = Field(
        sa_column=Column(
            ForeignKey("triage_items.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    kind: str
    actor: str = Field(default="user")
    reason: str | None = Field(default=None, sa_column=Column(Text))
    outcome: str | None = Field(default=None, sa_column=Column(Text))
    notes: str | None = Field(default=None, sa_column=Column(Text))
    meta_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
