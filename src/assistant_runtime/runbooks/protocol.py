"""One scheduled runbook execution against one account."""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Any

from assistant_runtime.chats.repository import ChatRepository
from assistant_runtime.runbooks.definitions import RunbookDefinition
from assistant_runtime.runbooks.extraction import parse_triage_output
from assistant_runtime.runbooks.models import (
    OUTPUT_PARSE_FAILED,
    RunbookRun,
    RunbookRunStatus,
    TriageKind,
)
from assistant_runtime.runbooks.prompts import build_prompt_envelope, summarize_feedback
from assistant_runtime.runbooks.repository import RunbookRepository
from assistant_runtime.runbooks.triage import TriageRepository, default_source_key
from assistant_runtime.runner.base import RunnerInvoker, RunnerResult
from assistant_runtime.runner.pricing import TokenPricing, estimate_cost_usd
from assistant_runtime.storage.common import utc_now
from assistant_runtime.tasks.events import (
    AssistantMessageEvent,
    ErrorEvent,
    StatusEvent,
    TaskEvent,
    UsageEvent,
)
from assistant_runtime.tasks.fanout import EventFanout
from assistant_runtime.tasks.models import TaskStatus, TaskView
from assistant_runtime.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)

RUNBOOK_RUN_KIND = "runbook_run"
DEFAULT_FEEDBACK_WINDOW = 40
CANCELED_ERROR = "canceled"


@dataclass(slots=True)
class RunbookRunResult:
    ok: bool
    task_id: str | None
    run_id: str | None
    items_created: int = 0
    cursor: dict[str, Any] | None = None
    error: str | None = None


@dataclass(slots=True)
class _RunContext:
    runbook: RunbookDefinition
    account_key: str
    chat_id: str
    task: TaskView
    run: RunbookRun
    assistant_message_id: str
    started_at: str


class RunbookRunProtocol:
    """Run one runbook for one account; every outcome closes the records it opened.

    Repositories are synchronous, so each call is pushed to a worker thread to
    keep the event loop free while SQLite waits on its busy timeout.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        tasks: TaskRepository,
        runbooks: RunbookRepository,
        triage: TriageRepository,
        chats: ChatRepository,
        runner: RunnerInvoker,
        pricing: TokenPricing | None = None,
        fanout: EventFanout | None = None,
        feedback_window: int = DEFAULT_FEEDBACK_WINDOW,
    ) -> None:
        self.tasks = tasks
        self.runbooks = runbooks
        self.triage = triage
        self.chats = chats
        self.runner = runner
        self.pricing = pricing or TokenPricing()
        self.fanout = fanout
        self.feedback_window = feedback_window
        self._chat_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def create_task(self, runbook: RunbookDefinition, account_key: str) -> TaskView:
        """Create the queued task a run will report into (used by run-now)."""

        return self.tasks.create_task(
            kind=RUNBOOK_RUN_KIND,
            input={"runbookId": runbook.id, "accountKey": account_key},
        )

    async def run(
        self,
        runbook: RunbookDefinition,
        account_key: str,
        *,
        task: TaskView | None = None,
    ) -> RunbookRunResult:
        chat_id: str | None = None
        run: RunbookRun | None = None
        try:
            chat_id = await self._runbook_chat(runbook)
            cursor = await asyncio.to_thread(
                self.runbooks.get_cursor,
                runbook_id=runbook.id,
                account_key=account_key,
            )
            feedback_text = await self._feedback_text(runbook.id)
            envelope = build_prompt_envelope(
                runbook=runbook,
                account_key=account_key,
                cursor=cursor or {},
                feedback_text=feedback_text,
            )
            if task is None:
                task = await asyncio.to_thread(self.create_task, runbook, account_key)
            run = await asyncio.to_thread(
                self.runbooks.create_run,
                runbook_id=runbook.id,
                task_id=task.id,
                account_key=account_key,
            )
            logger.info(
                "Runbook run started: runbook=%s account=%s task=%s run=%s",
                runbook.id,
                account_key,
                task.id,
                run.id,
            )
            ctx = await self._start(runbook, account_key, chat_id, task, run, envelope)
        except asyncio.CancelledError:
            await asyncio.shield(
                self._close_unstarted(runbook, task, CANCELED_ERROR, chat_id=chat_id, run=run),
            )
            raise
        except Exception as error:  # noqa: BLE001
            message = str(error) or error.__class__.__name__
            logger.exception("Runbook %s failed before invoking the runner", runbook.id)
            await self._close_unstarted(runbook, task, message, chat_id=chat_id, run=run)
            return RunbookRunResult(
                ok=False,
                task_id=task.id if task is not None else None,
                run_id=run.id if run is not None else None,
                error=message,
            )

        try:
            result = await self.runner.invoke(envelope, lambda event: self._relay(ctx, event))
            return await self._complete(ctx, result)
        except asyncio.CancelledError:
            await asyncio.shield(self._fail(ctx, CANCELED_ERROR, content=None, canceled=True))
            raise
        except Exception as error:  # noqa: BLE001
            message = str(error) or error.__class__.__name__
            logger.warning("Runbook %s run %s failed: %s", runbook.id, ctx.run.id, message)
            await self._fail(ctx, message, content=f"Runbook error: {message}")
            return RunbookRunResult(ok=False, task_id=ctx.task.id, run_id=ctx.run.id, error=message)

    async def _start(  # noqa: PLR0913
        self,
        runbook: RunbookDefinition,
        account_key: str,
        chat_id: str,
        task: TaskView,
        run: RunbookRun,
        envelope: str,
    ) -> _RunContext:
        started_at = utc_now()
        await asyncio.to_thread(
            self.chats.append_message,
            chat_id=chat_id,
            role="user",
            content=envelope,
        )
        placeholder = await asyncio.to_thread(
            self.chats.append_message,
            chat_id=chat_id,
            role="assistant",
            content="Running runbook…",
            meta={
                "run": {
                    "taskId": task.id,
                    "status": "running",
                    "startedAt": started_at.isoformat(),
                },
            },
        )
        if task.status is TaskStatus.QUEUED:
            await asyncio.to_thread(
                self.tasks.set_status,
                task.id,
                TaskStatus.RUNNING,
                started_at=started_at,
            )
        ctx = _RunContext(
            runbook=runbook,
            account_key=account_key,
            chat_id=chat_id,
            task=task,
            run=run,
            assistant_message_id=placeholder.id,
            started_at=started_at.isoformat(),
        )
        await self._append(ctx, StatusEvent(stage="loading_context"))
        await self._append(ctx, StatusEvent(stage="running"))
        return ctx

    async def _complete(self, ctx: _RunContext, result: RunnerResult) -> RunbookRunResult:
        content = result.content or ""
        current = await asyncio.to_thread(self.tasks.get_task, ctx.task.id)
        if current is not None and current.status is TaskStatus.CANCELED:
            await self._fail(ctx, CANCELED_ERROR, content=content, canceled=True)
            return RunbookRunResult(
                ok=False,
                task_id=ctx.task.id,
                run_id=ctx.run.id,
                error=CANCELED_ERROR,
            )

        parsed = parse_triage_output(content)
        if parsed is None:
            logger.warning("Runbook %s output could not be parsed", ctx.runbook.id)
            await self._append(
                ctx,
                AssistantMessageEvent(content=content, message_id=ctx.assistant_message_id),
            )
            await asyncio.to_thread(
                self.chats.append_message,
                chat_id=ctx.chat_id,
                role="assistant",
                content=(
                    f"Runbook error: {OUTPUT_PARSE_FAILED}\n\n"
                    "(See previous message for raw output.)"
                ),
            )
            await self._fail(ctx, OUTPUT_PARSE_FAILED, content=content)
            return RunbookRunResult(
                ok=False,
                task_id=ctx.task.id,
                run_id=ctx.run.id,
                error=OUTPUT_PARSE_FAILED,
            )

        next_cursor = parsed.get("cursor")
        if isinstance(next_cursor, dict):
            await asyncio.to_thread(
                self.runbooks.set_cursor,
                runbook_id=ctx.runbook.id,
                account_key=ctx.account_key,
                cursor=next_cursor,
            )
        else:
            next_cursor = None

        raw_items = parsed.get("items")
        accepted = 0
        for raw_item in raw_items if isinstance(raw_items, list) else []:
            if await asyncio.to_thread(self._ingest_item, ctx.runbook.id, raw_item):
                accepted += 1

        if result.usage is not None:
            cost = estimate_cost_usd(result.usage, self.pricing)
            await self._append(ctx, UsageEvent(usage=result.usage, cost_usd=cost))
        await self._append(
            ctx,
            AssistantMessageEvent(content=content, message_id=ctx.assistant_message_id),
        )

        await asyncio.to_thread(
            self._close,
            ctx,
            status=RunbookRunStatus.OK,
            error=None,
            content=content,
        )
        finished = await asyncio.to_thread(
            self.tasks.finish_task,
            ctx.task.id,
            ok=True,
            exit_code=0,
        )
        self._wake(ctx.task.id)
        if not finished:
            logger.info(
                "Task %s was already finished when runbook %s completed",
                ctx.task.id,
                ctx.runbook.id,
            )
        logger.info(
            "Runbook run finished: runbook=%s account=%s items=%d",
            ctx.runbook.id,
            ctx.account_key,
            accepted,
        )
        return RunbookRunResult(
            ok=True,
            task_id=ctx.task.id,
            run_id=ctx.run.id,
            items_created=accepted,
            cursor=next_cursor,
        )

    def _ingest_item(self, runbook_id: str, raw_item: object) -> bool:
        """Store one well-formed item; ``True`` only when a new row was inserted."""

        if not isinstance(raw_item, dict):
            return False
        kind_raw = str(raw_item.get("kind") or "").strip()
        if kind_raw not in {kind.value for kind in TriageKind}:
            return False
        title = str(raw_item.get("title") or "").strip() or "Untitled"
        summary_md = str(raw_item.get("summary_md") or raw_item.get("summary") or "").strip()
        confidence = raw_item.get("confidence_pct")
        if confidence is None:
            confidence = raw_item.get("confidencePct")
        source = raw_item.get("source") if isinstance(raw_item.get("source"), dict) else {}
        source_key = str(raw_item.get("source_key") or "").strip() or default_source_key(
            runbook_id=runbook_id,
            kind=kind_raw,
            title=title,
            summary_md=summary_md or title,
            source=source,
        )
        if self.triage.get_item_by_source_key(source_key) is not None:
            return False

        item_chat = self.chats.create_chat(title=f"Triage: {title}", hidden=True)
        self.chats.append_message(
            chat_id=item_chat.id,
            role="assistant",
            content=summary_md or title,
        )
        _, created = self.triage.create_item(
            runbook_id=runbook_id,
            kind=TriageKind(kind_raw),
            title=title,
            summary_md=summary_md or title,
            priority=raw_item.get("priority") or 0,
            confidence_pct=confidence,
            source_key=source_key,
            source=source,
            chat_id=item_chat.id,
        )
        return created

    async def _fail(
        self,
        ctx: _RunContext,
        message: str,
        *,
        content: str | None,
        canceled: bool = False,
    ) -> None:
        try:
            await asyncio.to_thread(
                self._close,
                ctx,
                status=RunbookRunStatus.ERROR,
                error=message,
                content=content,
            )
            if canceled:
                await asyncio.to_thread(self.tasks.cancel_task, ctx.task.id, reason=message)
            else:
                await self._append(ctx, ErrorEvent(message=message))
                await asyncio.to_thread(self.tasks.finish_task, ctx.task.id, ok=False)
        finally:
            self._wake(ctx.task.id)

    def _close(
        self,
        ctx: _RunContext,
        *,
        status: RunbookRunStatus,
        error: str | None,
        content: str | None,
    ) -> None:
        completed_at = utc_now()
        if content is not None:
            self.chats.update_message(
                ctx.assistant_message_id,
                content=content,
                meta={
                    "run": {
                        "taskId": ctx.task.id,
                        "status": "done" if status is RunbookRunStatus.OK else "error",
                        "startedAt": ctx.started_at,
                        "completedAt": completed_at.isoformat(),
                    },
                },
            )
            task_input = dict(ctx.task.input or {})
            task_input["result"] = {"content": content, "error": error}
            self.tasks.update_input(ctx.task.id, task_input)
        self.runbooks.finish_run(ctx.run.id, status=status, error=error)
        self.runbooks.upsert_state(
            runbook_id=ctx.runbook.id,
            chat_id=ctx.chat_id,
            last_run_at=completed_at,
            last_status=status.value,
            last_error=error,
        )

    async def _close_unstarted(
        self,
        runbook: RunbookDefinition,
        task: TaskView | None,
        message: str,
        *,
        chat_id: str | None,
        run: RunbookRun | None,
    ) -> None:
        def close() -> None:
            try:
                if run is not None:
                    self.runbooks.finish_run(run.id, status=RunbookRunStatus.ERROR, error=message)
                state = self.runbooks.get_state(runbook.id)
                self.runbooks.upsert_state(
                    runbook_id=runbook.id,
                    chat_id=chat_id or (state.chat_id if state is not None else None),
                    last_run_at=utc_now(),
                    last_status=RunbookRunStatus.ERROR.value,
                    last_error=message,
                )
            finally:
                if task is not None and message == CANCELED_ERROR:
                    self.tasks.cancel_task(task.id, reason=message)
                elif task is not None:
                    self.tasks.append_event(task.id, ErrorEvent(message=message))
                    self.tasks.finish_task(task.id, ok=False)

        try:
            await asyncio.to_thread(close)
        finally:
            if task is not None:
                self._wake(task.id)

    async def _relay(self, ctx: _RunContext, event: TaskEvent) -> None:
        if event.terminal:
            logger.debug("Ignoring terminal %s event from runner", event.type)
            return
        await self._append(ctx, event)

    async def _append(self, ctx: _RunContext, event: TaskEvent) -> None:
        await asyncio.to_thread(self.tasks.append_event, ctx.task.id, event)
        self._wake(ctx.task.id)

    async def _feedback_text(self, runbook_id: str) -> str:
        try:
            recent = await asyncio.to_thread(
                self.triage.list_recent_feedback,
                runbook_id=runbook_id,
                limit=self.feedback_window,
            )
        except Exception:  # noqa: BLE001
            logger.warning("Feedback lookup failed for runbook %s", runbook_id, exc_info=True)
            return ""
        return summarize_feedback(recent)

    async def _runbook_chat(self, runbook: RunbookDefinition) -> str:
        # Accounts of one runbook start together; only one may create the chat.
        lock = self._chat_locks.get(runbook.id)
        if lock is None:
            lock = asyncio.Lock()
            self._chat_locks[runbook.id] = lock
        async with lock:
            return await asyncio.to_thread(self._ensure_runbook_chat, runbook)

    def _ensure_runbook_chat(self, runbook: RunbookDefinition) -> str:
        state = self.runbooks.get_state(runbook.id)
        if state is not None and state.chat_id:
            chat = self.chats.get_chat(state.chat_id, with_messages=False)
            if chat is not None:
                return chat.id
        chat = self.chats.create_chat(title=f"Runbook: {runbook.id}", hidden=True)
        self.runbooks.upsert_state(
            runbook_id=runbook.id,
            chat_id=chat.id,
            last_run_at=state.last_run_at if state is not None else None,
            last_status=state.last_status if state is not None else None,
            last_error=state.last_error if state is not None else None,
        )
        return chat.id

    def _wake(self, task_id: str) -> None:
        if self.fanout is not None:
            self.fanout.wake(task_id)
