"""FastAPI app entrypoint for the assistant runtime."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from assistant_runtime import __version__
from assistant_runtime.chats.repository import ChatNotFoundError
from assistant_runtime.config import Settings
from assistant_runtime.runbooks.definitions import RunbookDefinition, RunbookNotFoundError
from assistant_runtime.runbooks.models import RunbookState, TriageKind, TriageStatus
from assistant_runtime.runbooks.scheduler import RunbookBusyError, next_run_at
from assistant_runtime.runtime import Runtime, build_runtime
from assistant_runtime.services import PostChatMessage, TriageFeedbackInput
from assistant_runtime.tasks.models import TaskNotFoundError

logger = logging.getLogger(__name__)


class CreateChatRequest(BaseModel):
    title: str = "New chat"
    hidden: bool = False


class PostMessageRequest(BaseModel):
    content: str = Field(min_length=1)


class FeedbackRequest(BaseModel):
    kind: str = "note"
    reason: str | None = None
    outcome: str | None = None
    notes: str | None = None
    meta: dict[str, Any] | None = None


class TriageStatusRequest(BaseModel):
    status: str
    feedback: FeedbackRequest | None = None


class TriagePriorityRequest(BaseModel):
    priority: float | None = None


class RunbookPatchRequest(BaseModel):
    enabled: bool | None = None
    everyMinutes: int | None = None  # noqa: N815
    title: str | None = None
    accounts: list[str] | str | None = None


def create_app(
    settings: Settings | None = None,
    *,
    runtime: Runtime | None = None,
    start_scheduler: bool | None = None,
    run_worker: bool = False,
) -> FastAPI:
    """Build the app; the runtime is wired eagerly so tests can reach ``app.state``."""

    active = runtime or build_runtime(settings or Settings.from_env())
    scheduler_enabled = (
        active.settings.scheduler.enabled if start_scheduler is None else start_scheduler
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        worker = active.worker() if run_worker else None
        worker_task: asyncio.Task[Any] | None = None
        if scheduler_enabled:
            await active.scheduler.start()
        if worker is not None:
            worker_task = asyncio.create_task(worker.run_loop(), name="chat-worker")
        try:
            yield
        finally:
            if worker is not None and worker_task is not None:
                worker.request_stop()
                await worker_task
            if scheduler_enabled:
                await active.scheduler.stop()

    app = FastAPI(title="assistant-runtime", version=__version__, lifespan=lifespan)
    app.state.runtime = active

    @app.exception_handler(TaskNotFoundError)
    async def task_not_found(_: Request, error: TaskNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(error)})

    @app.exception_handler(RunbookNotFoundError)
    async def runbook_not_found(_: Request, error: RunbookNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(error)})

    @app.exception_handler(ChatNotFoundError)
    async def chat_not_found(_: Request, error: ChatNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(error)})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": "assistant-runtime", "version": __version__}

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str) -> dict[str, str]:
        return active.tasks.require_task(task_id).summary()

    @app.get("/tasks/{task_id}/events")
    async def task_events(
        task_id: str,
        after: int | None = Query(default=None, ge=0),
        last_event_id: str | None = Header(default=None),
    ) -> StreamingResponse:
        task = await asyncio.to_thread(active.tasks.get_task, task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        cursor = after if after is not None else _parse_event_id(last_event_id)

        async def stream() -> AsyncIterator[str]:
            async for event in active.fanout.subscribe(task_id, after_id=cursor):
                data = json.dumps(event.to_payload(), ensure_ascii=False)
                yield f"id: {event.id}\ndata: {data}\n\n"

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/tasks/{task_id}/cancel")
    async def cancel_task(task_id: str) -> dict[str, bool]:
        canceled = await asyncio.to_thread(active.tasks.cancel_task, task_id, reason="user")
        active.fanout.wake(task_id)
        return {"canceled": canceled}

    @app.post("/chats", status_code=201)
    def create_chat(payload: CreateChatRequest) -> dict[str, Any]:
        chat = active.chats.create_chat(title=payload.title, hidden=payload.hidden)
        return {"chat": chat.to_payload()}

    @app.get("/chats/{chat_id}")
    def get_chat(chat_id: str) -> dict[str, Any]:
        chat = active.chats.get_chat(chat_id)
        if chat is None:
            raise HTTPException(status_code=404, detail="Chat not found")
        return {"chat": chat.to_payload()}

    @app.post("/chats/{chat_id}/messages", status_code=202)
    def post_message(chat_id: str, payload: PostMessageRequest) -> dict[str, Any]:
        started = active.chat_service.post_message(
            PostChatMessage(chat_id=chat_id, content=payload.content),
        )
        return {
            "taskId": started.task.id,
            "messages": [
                started.user_message.to_payload(),
                started.assistant_message.to_payload(),
            ],
        }

    @app.get("/runbooks")
    def list_runbooks() -> dict[str, Any]:
        states = active.runbooks.list_states()
        return {
            "runbooks": [
                _runbook_payload(definition, states.get(definition.id))
                for definition in active.source.list()
            ],
        }

    @app.get("/runbooks/{runbook_id}")
    def get_runbook(runbook_id: str) -> dict[str, Any]:
        definition = active.source.get(runbook_id)
        payload = _runbook_payload(definition, active.runbooks.get_state(definition.id))
        payload["body"] = definition.body
        runs = active.runbooks.list_runs(definition.id, limit=20)
        payload["runs"] = [run.to_payload() for run in runs]
        return {"runbook": payload}

    @app.post("/runbooks/{runbook_id}")
    def patch_runbook(runbook_id: str, payload: RunbookPatchRequest) -> dict[str, Any]:
        patch: dict[str, Any] = {}
        if payload.enabled is not None:
            patch["enabled"] = payload.enabled
        if payload.everyMinutes is not None:
            patch["every_minutes"] = payload.everyMinutes if payload.everyMinutes > 0 else None
        if payload.title is not None:
            patch["title"] = payload.title.strip()
        if payload.accounts is not None:
            patch["accounts"] = payload.accounts
        definition = active.source.update_frontmatter(runbook_id, patch)
        return {"runbook": _runbook_payload(definition, active.runbooks.get_state(definition.id))}

    @app.get("/runbooks/{runbook_id}/runs")
    def list_runbook_runs(runbook_id: str, limit: int = Query(default=50)) -> dict[str, Any]:
        runs = active.runbooks.list_runs(runbook_id, limit=limit)
        return {"runs": [run.to_payload() for run in runs]}

    @app.post("/runbooks/{runbook_id}/run-now", status_code=202)
    async def run_runbook_now(runbook_id: str) -> dict[str, Any]:
        try:
            tasks = await active.scheduler.run_now(runbook_id)
        except RunbookBusyError as error:
            raise HTTPException(status_code=409, detail=str(error)) from error
        return {
            "started": [
                {"accountKey": (task.input or {}).get("accountKey"), "taskId": task.id}
                for task in tasks
            ],
        }

    @app.get("/triage/items")
    def list_triage_items(
        status: str = Query(default="open"),
        kind: str | None = Query(default=None),
        limit: int = Query(default=200),
    ) -> dict[str, Any]:
        items = active.triage.list_items(
            status=_parse_enum(TriageStatus, status, "status"),
            kind=_parse_enum(TriageKind, kind, "kind") if kind else None,
            limit=limit,
        )
        return {"items": [item.to_payload() for item in items]}

    @app.post("/triage/items/{item_id}/status")
    def set_triage_status(item_id: str, payload: TriageStatusRequest) -> dict[str, Any]:
        status = _parse_enum(TriageStatus, payload.status.strip(), "status")
        feedback = None
        if payload.feedback is not None:
            feedback = TriageFeedbackInput(
                kind=payload.feedback.kind,
                reason=payload.feedback.reason,
                outcome=payload.feedback.outcome,
                notes=payload.feedback.notes,
                meta=payload.feedback.meta,
            )
        item = active.triage_service.set_status(item_id, status, feedback=feedback)
        if item is None:
            raise HTTPException(status_code=404, detail="Triage item not found")
        return {"item": item.to_payload()}

    @app.post("/triage/items/{item_id}/priority")
    def set_triage_priority(item_id: str, payload: TriagePriorityRequest) -> dict[str, Any]:
        if payload.priority is None:
            raise HTTPException(status_code=400, detail="missing_priority")
        item = active.triage_service.set_priority(item_id, payload.priority)
        if item is None:
            raise HTTPException(status_code=404, detail="Triage item not found")
        return {"item": item.to_payload()}

    @app.get("/triage/feedback")
    def list_triage_feedback(
        runbookId: str | None = Query(default=None),  # noqa: N803
        limit: int = Query(default=200),
    ) -> dict[str, Any]:
        feedback = active.triage.list_recent_feedback(runbook_id=runbookId, limit=limit)
        return {"feedback": [entry.to_payload() for entry in feedback]}

    return app


def _parse_event_id(raw: str | None) -> int:
    if raw is None or not raw.strip().isdigit():
        return 0
    return int(raw.strip())


def _parse_enum(enum_type: Any, raw: str, name: str) -> Any:
    try:
        return enum_type(raw)
    except ValueError as error:
        raise HTTPException(status_code=400, detail=f"invalid_{name}") from error


def _runbook_payload(definition: RunbookDefinition, state: RunbookState | None) -> dict[str, Any]:
    last_run_at = state.last_run_at if state is not None else None
    upcoming = next_run_at(definition, last_run_at)
    return {
        "id": definition.id,
        "title": definition.display_title,
        "enabled": definition.enabled,
        "everyMinutes": definition.every_minutes,
        "timezone": definition.timezone,
        "accounts": list(definition.accounts),
        "cursorStrategy": definition.cursor_strategy,
        "path": str(definition.path) if definition.path is not None else None,
        "lastRunAt": last_run_at.isoformat() if last_run_at is not None else None,
        "lastStatus": state.last_status if state is not None else None,
        "lastError": state.last_error if state is not None else None,
        "nextRunAt": upcoming.isoformat() if upcoming is not None else None,
    }
