"""Wiring of repositories, runner, fan-out and scheduler from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from assistant_runtime.chats.repository import ChatRepository
from assistant_runtime.config import Settings
from assistant_runtime.runbooks.definitions import FileRunbookSource
from assistant_runtime.runbooks.protocol import RunbookRunProtocol
from assistant_runtime.runbooks.repository import RunbookRepository
from assistant_runtime.runbooks.scheduler import RunbookScheduler
from assistant_runtime.runbooks.triage import TriageRepository
from assistant_runtime.runner.base import RunnerInvoker
from assistant_runtime.runner.cli_runner import CliRunner
from assistant_runtime.runner.echo_runner import EchoRunner
from assistant_runtime.services import ChatService, TriageService
from assistant_runtime.tasks.fanout import EventFanout
from assistant_runtime.tasks.repository import TaskRepository
from assistant_runtime.tasks.worker import ChatTaskWorker

logger = logging.getLogger(__name__)


def build_runner(settings: Settings) -> RunnerInvoker:
    if settings.runner.name == "cli":
        return CliRunner(
            command_template=settings.runner.command_template,
            timeout_seconds=settings.runner.timeout_seconds,
        )
    return EchoRunner()


@dataclass(slots=True)
class Runtime:
    """Every long-lived collaborator of one process."""

    settings: Settings
    tasks: TaskRepository
    chats: ChatRepository
    runbooks: RunbookRepository
    triage: TriageRepository
    source: FileRunbookSource
    runner: RunnerInvoker
    fanout: EventFanout
    protocol: RunbookRunProtocol
    scheduler: RunbookScheduler
    chat_service: ChatService
    triage_service: TriageService

    def worker(self) -> ChatTaskWorker:
        return ChatTaskWorker(
            tasks=self.tasks,
            chats=self.chats,
            runner=self.runner,
            kinds=self.settings.worker.kinds,
            pricing=self.settings.runner.pricing,
            fanout=self.fanout,
            poll_interval_seconds=self.settings.worker.poll_seconds,
        )

    def close(self) -> None:
        for repository in (self.tasks, self.chats, self.runbooks, self.triage):
            repository.close()


def build_runtime(settings: Settings, *, runner: RunnerInvoker | None = None) -> Runtime:
    """Validate settings, migrate the database and wire the runtime."""

    settings.validate()
    tasks = TaskRepository(settings.db_path)
    tasks.init_schema()
    chats = ChatRepository(settings.db_path)
    runbooks = RunbookRepository(settings.db_path)
    triage = TriageRepository(settings.db_path)
    source = FileRunbookSource(settings.runbooks_dir)
    active_runner = runner or build_runner(settings)
    fanout = EventFanout(
        tasks,
        poll_interval_seconds=settings.fanout.poll_seconds,
        batch_limit=settings.fanout.batch_limit,
    )
    protocol = RunbookRunProtocol(
        tasks=tasks,
        runbooks=runbooks,
        triage=triage,
        chats=chats,
        runner=active_runner,
        pricing=settings.runner.pricing,
        fanout=fanout,
        feedback_window=settings.scheduler.feedback_window,
    )
    scheduler = RunbookScheduler(
        source=source,
        runbooks=runbooks,
        runner=protocol,
        tick_seconds=settings.scheduler.tick_seconds,
    )
    logger.debug("Runtime wired for db=%s runner=%s", settings.db_path, settings.runner.name)
    return Runtime(
        settings=settings,
        tasks=tasks,
        chats=chats,
        runbooks=runbooks,
        triage=triage,
        source=source,
        runner=active_runner,
        fanout=fanout,
        protocol=protocol,
        scheduler=scheduler,
        chat_service=ChatService(chats=chats, tasks=tasks),
        triage_service=TriageService(triage=triage),
    )
