"""Chat and message persistence."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
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
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from assistant_runtime.storage.sqlmodel_models import ChatMessageRow, ChatRow


class ChatNotFoundError(LookupError):
    """Raised when a chat or message id does not exist."""


@dataclass(slots=True)
class ChatMessageView:
    id: str
    chat_id: str
    role: str
    content: str
    meta: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chatId": self.chat_id,
            "role": self.role,
            "content": self.content,
            "meta": dict(self.meta),
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class ChatView:
    id: str
    title: str
    hidden: bool
    created_at: datetime
    updated_at: datetime
    messages: list[ChatMessageView] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "hidden": self.hidden,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "messages": [message.to_payload() for message in self.messages],
        }


class ChatRepository:
    """Chats and their ordered messages."""

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

    def create_chat(self, *, title: str = "New chat", hidden: bool = False) -> ChatView:
        now = to_db_datetime(utc_now())
        row = ChatRow(
            id=new_id(),
            title=(title or "").strip() or "New chat",
            hidden=hidden,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_chat_view(row, [])

    def get_chat(self, chat_id: str, *, with_messages: bool = True) -> ChatView | None:
        with Session(self.engine) as session:
            row = session.get(ChatRow, chat_id)
            if row is None:
                return None
            messages: list[ChatMessageRow] = []
            if with_messages:
                messages = list(
                    session.exec(
                        select(ChatMessageRow)
                        .where(ChatMessageRow.chat_id == chat_id)
                        .order_by(
                            col(ChatMessageRow.created_at).asc(),
                            col(ChatMessageRow.id).asc(),
                        ),
                    ).all(),
                )
            return _to_chat_view(row, messages)

    def append_message(
        self,
        *,
        chat_id: str,
        role: str,
        content: str,
        meta: dict[str, Any] | None = None,
    ) -> ChatMessageView:
        now = to_db_datetime(utc_now())
        row = ChatMessageRow(
            id=new_id(),
            chat_id=chat_id,
            role=role,
            content=content,
            meta_json=json.dumps(meta, ensure_ascii=False) if meta else None,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            if session.get(ChatRow, chat_id) is None:
                raise ChatNotFoundError(f"Chat not found: {chat_id}")
            session.add(row)
            session.exec(
                sa_update(ChatRow).where(col(ChatRow.id) == chat_id).values(updated_at=now),
            )
            session.commit()
            session.refresh(row)
            return _to_message_view(row)

    def update_message(
        self,
        message_id: str,
        *,
        content: str,
        meta: dict[str, Any] | None = None,
    ) -> ChatMessageView:
        """Replace message content; ``meta`` keys are merged into existing meta."""

        with Session(self.engine) as session:
            row = session.get(ChatMessageRow, message_id)
            if row is None:
                raise ChatNotFoundError(f"Message not found: {message_id}")
            merged = _load_meta(row.meta_json)
            if meta:
                merged.update(meta)
            row.content = content
            row.meta_json = json.dumps(merged, ensure_ascii=False) if merged else None
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_message_view(row)


def _load_meta(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _to_message_view(row: ChatMessageRow) -> ChatMessageView:
    return ChatMessageView(
        id=row.id,
        chat_id=row.chat_id,
        role=row.role,
        content=row.content,
        meta=_load_meta(row.meta_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_chat_view(row: ChatRow, messages: list[ChatMessageRow]) -> ChatView:
    return ChatView(
        id=row.id,
        title=row.title,
        hidden=bool(row.hidden),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        messages=[_to_message_view(message) for message in messages],
    )
