"""CLI controllers for the task runtime, worker and runbooks."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from assistant_runtime.config import Settings
from assistant_runtime.runbooks.definitions import RunbookNotFoundError
from assistant_runtime.runbooks.scheduler import RunbookBusyError, next_run_at
from assistant_runtime.runtime import Runtime, build_runtime
from assistant_runtime.tasks.models import TaskStatus, TaskView


@dataclass(slots=True)
class WorkerCommand:
    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    kind: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    db_path: Path | None
    task_id: str
    after_id: int = 0


@dataclass(slots=True)
class CancelTaskCommand:
    db_path: Path | None
    task_id: str
    reason: str = "user"


@dataclass(slots=True)
class ListRunbooksCommand:
    db_path: Path | None
    runbooks_dir: Path | None


@dataclass(slots=True)
class RunbookRunsCommand:
    db_path: Path | None
    runbook_id: str
    limit: int


@dataclass(slots=True)
class RunNowCommand:
    db_path: Path | None
    runbooks_dir: Path | None
    runbook_id: str


@dataclass(slots=True)
class SchedulerTickCommand:
    db_path: Path | None
    runbooks_dir: Path | None


class RuntimeCliController:
    """Thin adapter from CLI commands to repositories, worker and scheduler."""

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            worker = runtime.worker()
            summary = asyncio.run(
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                ),
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} idle_polls={summary.idle_polls}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status) if command.status else None
        with _runtime(settings) as runtime:
            tasks = runtime.tasks.list_tasks(status=status, kind=command.kind, limit=command.limit)
        if not tasks:
            return ["No tasks found."]
        return [_task_line(task) for task in tasks]

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.tasks.get_task(command.task_id)
            if task is None:
                return [f"Task not found: {command.task_id}"]
            events = runtime.tasks.list_events(command.task_id, after_id=command.after_id)

        lines = [
            f"Task: {task.id}",
            f"Kind: {task.kind}",
            f"Status: {task.status.value}",
            f"Created: {task.created_at.isoformat()}",
            f"Started: {task.started_at.isoformat() if task.started_at else '-'}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(
                f"  #{event.id} {event.created_at.isoformat()} {event.event.type} "
                f"{_event_detail(event.event.to_dict())}",
            )
        return lines

    def cancel_task(self, command: CancelTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.tasks.get_task(command.task_id)
            if task is None:
                return [f"Task not found: {command.task_id}"]
            changed = runtime.tasks.cancel_task(command.task_id, reason=command.reason)
        if not changed:
            return [f"Task already finished: {command.task_id} ({task.status.value})"]
        return [f"Task canceled: {command.task_id}"]

    def list_runbooks(self, command: ListRunbooksCommand) -> list[str]:
        settings = _with_runbooks_dir(Settings.from_env(db_path=command.db_path), command)
        with _runtime(settings) as runtime:
            definitions = runtime.source.list()
            states = runtime.runbooks.list_states()
        if not definitions:
            return [f"No runbooks in {settings.runbooks_dir}"]

        lines: list[str] = []
        for runbook in definitions:
            state = states.get(runbook.id)
            last_run_at = state.last_run_at if state is not None else None
            upcoming = next_run_at(runbook, last_run_at)
            lines.append(
                f"{runbook.id} enabled={runbook.enabled} "
                f"every_minutes={runbook.every_minutes or '-'} "
                f"accounts={','.join(runbook.accounts)} "
                f"last_run={last_run_at.isoformat() if last_run_at else '-'} "
                f"last_status={(state.last_status if state else None) or '-'} "
                f"next_run={upcoming.isoformat() if upcoming else '-'}",
            )
        return lines

    def list_runs(self, command: RunbookRunsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            runs = runtime.runbooks.list_runs(command.runbook_id, limit=command.limit)
        if not runs:
            return [f"No runs recorded for {command.runbook_id}"]
        return [
            f"{run.id} {run.status.value} account={run.account_key or '-'} "
            f"task={run.task_id or '-'} started={run.started_at.isoformat()} "
            f"finished={run.finished_at.isoformat() if run.finished_at else '-'} "
            f"error={run.error or '-'}"
            for run in runs
        ]

    def run_now(self, command: RunNowCommand) -> list[str]:
        """Start a manual run for every account and wait for it to finish."""

        settings = _with_runbooks_dir(Settings.from_env(db_path=command.db_path), command)
        with _runtime(settings) as runtime:
            try:
                tasks = asyncio.run(_run_now_and_wait(runtime, command.runbook_id))
            except RunbookNotFoundError:
                return [f"Runbook not found: {command.runbook_id}"]
            except RunbookBusyError:
                return [f"Runbook already running: {command.runbook_id}"]
            finished = [runtime.tasks.get_task(task.id) or task for task in tasks]
        return [f"Run finished: {_task_line(task)}" for task in finished]

    def tick(self, command: SchedulerTickCommand) -> list[str]:
        """Fire every due runbook once and wait for the runs."""

        settings = _with_runbooks_dir(Settings.from_env(db_path=command.db_path), command)
        with _runtime(settings) as runtime:
            fired = asyncio.run(_tick_and_wait(runtime))
        if not fired:
            return ["No runbooks due."]
        return [f"Fired: {runbook_id}" for runbook_id in fired]


async def _run_now_and_wait(runtime: Runtime, runbook_id: str) -> list[TaskView]:
    tasks = await runtime.scheduler.run_now(runbook_id)
    await runtime.scheduler.wait_idle()
    return tasks


async def _tick_and_wait(runtime: Runtime) -> list[str]:
    fired = await runtime.scheduler.tick()
    await runtime.scheduler.wait_idle()
    return fired


def _with_runbooks_dir(
    settings: Settings,
    command: ListRunbooksCommand | RunNowCommand | SchedulerTickCommand,
) -> Settings:
    if command.runbooks_dir is not None:
        settings.runbooks_dir = command.runbooks_dir
    return settings


def _task_line(task: TaskView) -> str:
    return (
        f"{task.id} {task.kind} {task.status.value} "
        f"created={task.created_at.isoformat()} "
        f"completed={task.completed_at.isoformat() if task.completed_at else '-'}"
    )


def _event_detail(payload: dict[str, object]) -> str:
    details = [f"{key}={value}" for key, value in payload.items() if key != "type"]
    text = " ".join(details)
    return text if len(text) <= 160 else text[:157] + "..."


@contextmanager
def _runtime(settings: Settings) -> Iterator[Runtime]:
    runtime = build_runtime(settings)
    try:
        yield runtime
    finally:
        runtime.close()
