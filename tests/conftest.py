"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from assistant_runtime.chats.repository import ChatRepository
from assistant_runtime.config import Settings
from assistant_runtime.runbooks.repository import RunbookRepository
from assistant_runtime.runbooks.triage import TriageRepository
from assistant_runtime.runner.base import EventSink, RunnerResult
from assistant_runtime.tasks.events import LogEvent, Usage
from assistant_runtime.tasks.repository import TaskRepository


class FakeRunner:
    """Scripted runner: returns ``reply`` (or the result of calling it) and records prompts."""

    def __init__(
        self,
        reply: str | Callable[[str], str] = "ok",
        *,
        usage: Usage | None = None,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.reply = reply
        self.usage = usage
        self.error = error
        self.gate = gate
        self.prompts: list[str] = []
        self.started = 0

    async def invoke(self, prompt: str, on_event: EventSink) -> RunnerResult:
        self.prompts.append(prompt)
        self.started += 1
        await on_event(LogEvent(text="fake runner started"))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        content = self.reply(prompt) if callable(self.reply) else self.reply
        return RunnerResult(content=content, usage=self.usage)


@pytest.fixture()
def runner_factory() -> type[FakeRunner]:
    return FakeRunner


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "runtime.db"


@pytest.fixture()
def task_repository(db_path: Path) -> Iterator[TaskRepository]:
    repository = TaskRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def chat_repository(task_repository: TaskRepository) -> Iterator[ChatRepository]:
    repository = ChatRepository(task_repository.db_path)
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def runbook_repository(task_repository: TaskRepository) -> Iterator[RunbookRepository]:
    repository = RunbookRepository(task_repository.db_path)
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def triage_repository(task_repository: TaskRepository) -> Iterator[TriageRepository]:
    repository = TriageRepository(task_repository.db_path)
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def runbooks_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "runbooks"
    directory.mkdir()
    return directory


@pytest.fixture()
def settings(db_path: Path, runbooks_dir: Path, monkeypatch) -> Settings:
    """Settings isolated from the developer environment."""

    for name in (
        "ASSISTANT_RUNNER",
        "ASSISTANT_RUNNER_COMMAND",
        "ASSISTANT_SCHEDULER_ENABLED",
        "ASSISTANT_WORKER_KINDS",
    ):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env(db_path=db_path)
    settings.runbooks_dir = runbooks_dir
    settings.scheduler.enabled = False
    settings.fanout.poll_seconds = 0.05
    settings.worker.poll_seconds = 0.01
    return settings

