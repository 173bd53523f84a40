"""Use-case services shared by the HTTP API and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from assistant_runtime.chats.repository import ChatMessageView, ChatNotFoundError, ChatRepository
from assistant_runtime.runbooks.models import TriageItem, TriageStatus
from assistant_runtime.runbooks.triage import TriageRepository
from assistant_runtime.tasks.models import TaskView
from assistant_runtime.tasks.repository import TaskRepository
from assistant_runtime.tasks.worker import CHAT_RUN_KIND

logger = logging.getLogger(__name__)

_STATUS_FEEDBACK_KINDS = {
    TriageStatus.DISMISSED: "dismissed",
    TriageStatus.COMPLETED: "completed",
    TriageStatus.OPEN: "reopened",
}


@dataclass(slots=True)
class PostChatMessage:
    """High-level command to add a user message and queue its reply."""

    chat_id: str
    content: str


@dataclass(slots=True)
class ChatRunStarted:
    user_message: ChatMessageView
    assistant_message: ChatMessageView
    task: TaskView


class ChatService:
    """Turns a posted user message into a queued ``chat_run`` task."""

    def __init__(self, *, chats: ChatRepository, tasks: TaskRepository) -> None:
        self.chats = chats
        self.tasks = tasks

    def post_message(self, command: PostChatMessage) -> ChatRunStarted:
        if self.chats.get_chat(command.chat_id, with_messages=False) is None:
            raise ChatNotFoundError(f"Chat not found: {command.chat_id}")
        user_message = self.chats.append_message(
            chat_id=command.chat_id,
            role="user",
            content=command.content,
        )
        placeholder = self.chats.append_message(
            chat_id=command.chat_id,
            role="assistant",
            content="",
            meta={"run": {"status": "queued"}},
        )
        task = self.tasks.create_task(
            kind=CHAT_RUN_KIND,
            input={"chatId": command.chat_id, "assistantMessageId": placeholder.id},
        )
        placeholder = self.chats.update_message(
            placeholder.id,
            content="",
            meta={"run": {"taskId": task.id, "status": "queued"}},
        )
        logger.info("Queued chat_run task %s for chat %s", task.id, command.chat_id)
        return ChatRunStarted(user_message=user_message, assistant_message=placeholder, task=task)


@dataclass(slots=True)
class TriageFeedbackInput:
    kind: str = "note"
    reason: str | None = None
    outcome: str | None = None
    notes: str | None = None
    meta: dict[str, Any] | None = None


class TriageService:
    """Item state changes that also leave a feedback record for the next run."""

    def __init__(self, *, triage: TriageRepository) -> None:
        self.triage = triage

    def set_status(
        self,
        item_id: str,
        status: TriageStatus,
        *,
        feedback: TriageFeedbackInput | None = None,
    ) -> TriageItem | None:
        item = self.triage.set_status(item_id, status)
        if item is None:
            return None
        if feedback is not None:
            self.triage.create_feedback(
                item_id=item_id,
                kind=feedback.kind.strip() or "note",
                reason=feedback.reason,
                outcome=feedback.outcome,
                notes=feedback.notes,
                meta=feedback.meta,
            )
        else:
            self.triage.create_feedback(
                item_id=item_id,
                kind=_STATUS_FEEDBACK_KINDS.get(status, "status_set"),
            )
        return item

    def set_priority(self, item_id: str, priority: object) -> TriageItem | None:
        item = self.triage.set_priority(item_id, priority)
        if item is None:
            return None
        self.triage.create_feedback(
            item_id=item_id,
            kind="priority_set",
            meta={"priority": item.priority},
        )
        return item
