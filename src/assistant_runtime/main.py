"""CLI entrypoint for assistant-runtime."""

import logging
from pathlib import Path

import rich_click as click
import uvicorn

from assistant_runtime import __version__
from assistant_runtime.api.app import create_app
from assistant_runtime.config import Settings
from assistant_runtime.controllers import (
    CancelTaskCommand,
    InspectTaskCommand,
    ListRunbooksCommand,
    ListTasksCommand,
    RunbookRunsCommand,
    RunNowCommand,
    RuntimeCliController,
    SchedulerTickCommand,
    WorkerCommand,
)
from assistant_runtime.tasks.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RuntimeCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="assistant-runtime")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logger level.",
)
def assistant_runtime(log_level: str) -> None:
    """Assistant task runtime CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@assistant_runtime.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--runbooks-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory with runbook markdown files.",
)
@click.option("--host", default=None, help="Bind host. Defaults to ASSISTANT_API_HOST.")
@click.option("--port", type=click.IntRange(1, 65_535), default=None, help="Bind port.")
@click.option(
    "--with-worker/--no-worker",
    default=True,
    show_default=True,
    help="Run the chat worker inside the server process.",
)
@click.option(
    "--scheduler/--no-scheduler",
    "scheduler",
    default=None,
    help="Override ASSISTANT_SCHEDULER_ENABLED.",
)
def serve(  # noqa: PLR0913
    db_path: Path | None,
    runbooks_dir: Path | None,
    host: str | None,
    port: int | None,
    with_worker: bool,
    scheduler: bool | None,
) -> None:
    """Serve the HTTP API with the runbook scheduler and SSE streams."""

    settings = Settings.from_env(db_path=db_path)
    if runbooks_dir is not None:
        settings.runbooks_dir = runbooks_dir
    app = create_app(settings, start_scheduler=scheduler, run_worker=with_worker)
    uvicorn.run(app, host=host or settings.api.host, port=port or settings.api.port)


@assistant_runtime.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, default=False, help="Process at most one task.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many tasks.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many empty polls. Runs until interrupted when omitted.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
) -> None:
    """Claim queued chat tasks and run them."""

    _emit_lines(
        CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@assistant_runtime.group()
def tasks() -> None:
    """Task log commands."""


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Filter by status.",
)
@click.option("--kind", default=None, help="Filter by task kind, for example chat_run.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
)
def tasks_list(db_path: Path | None, status: str | None, kind: str | None, limit: int) -> None:
    """List recent tasks, newest first."""

    _emit_lines(
        CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, status=status, kind=kind, limit=limit),
        ),
    )


@tasks.command("inspect")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--after",
    "after_id",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Only show events with a larger id.",
)
def tasks_inspect(task_id: str, db_path: Path | None, after_id: int) -> None:
    """Show a task and its event log."""

    _emit_lines(
        CONTROLLER.inspect_task(
            InspectTaskCommand(db_path=db_path, task_id=task_id, after_id=after_id),
        ),
    )


@tasks.command("cancel")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default="user", show_default=True, help="Recorded cancel reason.")
def tasks_cancel(task_id: str, db_path: Path | None, reason: str) -> None:
    """Cancel a queued or running task."""

    _emit_lines(
        CONTROLLER.cancel_task(
            CancelTaskCommand(db_path=db_path, task_id=task_id, reason=reason),
        ),
    )


@assistant_runtime.group()
def runbooks() -> None:
    """Runbook commands."""


@runbooks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--runbooks-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory with runbook markdown files.",
)
def runbooks_list(db_path: Path | None, runbooks_dir: Path | None) -> None:
    """List runbooks with their schedule and last run."""

    _emit_lines(
        CONTROLLER.list_runbooks(
            ListRunbooksCommand(db_path=db_path, runbooks_dir=runbooks_dir),
        ),
    )


@runbooks.command("runs")
@click.argument("runbook_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=200),
    default=20,
    show_default=True,
)
def runbooks_runs(runbook_id: str, db_path: Path | None, limit: int) -> None:
    """Show recent run history of one runbook."""

    _emit_lines(
        CONTROLLER.list_runs(
            RunbookRunsCommand(db_path=db_path, runbook_id=runbook_id, limit=limit),
        ),
    )


@runbooks.command("run-now")
@click.argument("runbook_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--runbooks-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory with runbook markdown files.",
)
def runbooks_run_now(runbook_id: str, db_path: Path | None, runbooks_dir: Path | None) -> None:
    """Run a runbook for all of its accounts and wait for the result."""

    _emit_lines(
        CONTROLLER.run_now(
            RunNowCommand(db_path=db_path, runbooks_dir=runbooks_dir, runbook_id=runbook_id),
        ),
    )


@runbooks.command("tick")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--runbooks-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory with runbook markdown files.",
)
def runbooks_tick(db_path: Path | None, runbooks_dir: Path | None) -> None:
    """Run one scheduler tick, for cron-driven deployments."""

    _emit_lines(
        CONTROLLER.tick(
            SchedulerTickCommand(db_path=db_path, runbooks_dir=runbooks_dir),
        ),
    )



def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    assistant_runtime()
