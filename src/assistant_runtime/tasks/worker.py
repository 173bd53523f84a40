"""Queue worker that executes ``chat_run`` tasks through the runner."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from assistant_runtime.chats.repository import ChatRepository, ChatView
from assistant_runtime.runner.base import RunnerInvoker
from assistant_runtime.runner.pricing import TokenPricing, estimate_cost_usd
from assistant_runtime.tasks.events import (
    AssistantMessageEvent,
    ErrorEvent,
    StatusEvent,
    TaskEvent,
    UsageEvent,
)
from assistant_runtime.tasks.fanout import EventFanout
from assistant_runtime.tasks.models import TaskView
from assistant_runtime.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)

CHAT_RUN_KIND = "chat_run"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    idle_polls: int = 0


class ChatTaskWorker:
    """Claims queued chat tasks and answers them.

    Safe to run in several processes at once: ``claim_next_queued`` hands each
    task to exactly one worker.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        tasks: TaskRepository,
        chats: ChatRepository,
        runner: RunnerInvoker,
        kinds: tuple[str, ...] = (CHAT_RUN_KIND,),
        pricing: TokenPricing | None = None,
        fanout: EventFanout | None = None,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.tasks = tasks
        self.chats = chats
        self.runner = runner
        self.kinds = kinds
        self.pricing = pricing or TokenPricing()
        self.fanout = fanout
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False

    def request_stop(self) -> None:
        self._stop_requested = True

    async def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        task = await self._claim_task()
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        if await self._execute(task):
            summary.succeeded = 1
        else:
            summary.failed = 1
        return summary

    async def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Poll until stopped, ``max_tasks`` processed or ``max_idle_polls`` empty polls."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        while not self._stop_requested:
            if max_tasks is not None and aggregate.processed >= max_tasks:
                break
            try:
                summary = await self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("Chat worker iteration failed")
                summary = WorkerRunSummary(idle_polls=1)
            aggregate.processed += summary.processed
            aggregate.succeeded += summary.succeeded
            aggregate.failed += summary.failed
            aggregate.idle_polls += summary.idle_polls

            if summary.processed == 0:
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    break
                await self._sleep_with_stop(self.poll_interval_seconds)
                continue
            consecutive_idle = 0
        return aggregate

    async def _claim_task(self) -> TaskView | None:
        for kind in self.kinds:
            task = await asyncio.to_thread(self.tasks.claim_next_queued, kind=kind)
            if task is not None:
                logger.info("Claimed task %s (%s)", task.id, task.kind)
                return task
        return None

    async def _execute(self, task: TaskView) -> bool:
        payload = task.input or {}
        chat_id = payload.get("chatId")
        message_id = payload.get("assistantMessageId")
        if not isinstance(chat_id, str) or not isinstance(message_id, str):
            await self._append(task.id, ErrorEvent(message="invalid chat_run input"))
            await self._finish(task.id, ok=False)
            return False

        try:
            await self._append(task.id, StatusEvent(stage="loading_context"))
            chat = await asyncio.to_thread(self.chats.get_chat, chat_id)
            if chat is None:
                raise LookupError(f"Chat not found: {chat_id}")
            await self._append(task.id, StatusEvent(stage="running"))
            prompt = build_chat_prompt(chat, exclude_message_id=message_id)
            result = await self.runner.invoke(prompt, lambda event: self._relay(task.id, event))
        except Exception as error:  # noqa: BLE001
            message = str(error) or error.__class__.__name__
            logger.warning("Chat task %s failed: %s", task.id, message)
            await asyncio.to_thread(
                self.chats.update_message,
                message_id,
                content=f"Error: {message}",
                meta={"run": {"taskId": task.id, "status": "error"}},
            )
            await self._append(
                task.id,
                AssistantMessageEvent(content=f"Error: {message}", message_id=message_id),
            )
            await self._append(task.id, ErrorEvent(message=message))
            await self._finish(task.id, ok=False)
            return False

        await asyncio.to_thread(
            self.chats.update_message,
            message_id,
            content=result.content,
            meta={"run": {"taskId": task.id, "status": "done"}},
        )
        await self._append(
            task.id,
            AssistantMessageEvent(content=result.content, message_id=message_id),
        )
        if result.usage is not None:
            cost = estimate_cost_usd(result.usage, self.pricing)
            await self._append(task.id, UsageEvent(usage=result.usage, cost_usd=cost))
        await self._finish(task.id, ok=True, exit_code=0)
        return True

    async def _relay(self, task_id: str, event: TaskEvent) -> None:
        if event.terminal:
            return
        await self._append(task_id, event)

    async def _append(self, task_id: str, event: TaskEvent) -> None:
        await asyncio.to_thread(self.tasks.append_event, task_id, event)
        if self.fanout is not None:
            self.fanout.wake(task_id)

    async def _finish(self, task_id: str, *, ok: bool, exit_code: int | None = None) -> None:
        finished = await asyncio.to_thread(
            self.tasks.finish_task,
            task_id,
            ok=ok,
            exit_code=exit_code,
        )
        if not finished:
            logger.info("Task %s was already terminal (canceled?)", task_id)
        if self.fanout is not None:
            self.fanout.wake(task_id)

    async def _sleep_with_stop(self, seconds: float) -> None:
        deadline = asyncio.get_running_loop().time() + seconds
        while not self._stop_requested:
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(0.1, remaining))


def build_chat_prompt(chat: ChatView, *, exclude_message_id: str | None = None) -> str:
    """Plain transcript, one ``Role: content`` block per message."""

    blocks = [
        f"{message.role.capitalize()}: {message.content.strip()}"
        for message in chat.messages
        if message.id != exclude_message_id and message.content.strip()
    ]
    return "\n\n".join(blocks)
