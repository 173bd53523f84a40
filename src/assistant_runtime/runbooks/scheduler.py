"""Periodic runbook scheduler with a per-runbook single-flight guard."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Protocol

from assistant_runtime.runbooks.definitions import (
    RunbookDefinition,
    RunbookNotFoundError,
    RunbookSource,
)
from assistant_runtime.runbooks.protocol import RunbookRunResult
from assistant_runtime.runbooks.repository import RunbookRepository
from assistant_runtime.storage.common import utc_now
from assistant_runtime.tasks.models import TaskView

logger = logging.getLogger(__name__)

MIN_TICK_SECONDS = 2.0
DEFAULT_TICK_SECONDS = 15.0


class RunbookBusyError(RuntimeError):
    """Raised by ``run_now`` when the runbook already has a run in flight."""

    def __init__(self, runbook_id: str) -> None:
        super().__init__(f"Runbook already running: {runbook_id}")
        self.runbook_id = runbook_id


class RunbookRunner(Protocol):
    def create_task(self, runbook: RunbookDefinition, account_key: str) -> TaskView: ...

    async def run(
        self,
        runbook: RunbookDefinition,
        account_key: str,
        *,
        task: TaskView | None = None,
    ) -> RunbookRunResult: ...


def is_due(runbook: RunbookDefinition, last_run_at: datetime | None, now: datetime) -> bool:
    """Never-run runbooks are due; otherwise once the interval has elapsed."""

    if not runbook.every_minutes:
        return False
    if last_run_at is None:
        return True
    return now - last_run_at >= timedelta(minutes=runbook.every_minutes)


def next_run_at(runbook: RunbookDefinition, last_run_at: datetime | None) -> datetime | None:
    if last_run_at is None or not runbook.every_minutes:
        return None
    return last_run_at + timedelta(minutes=runbook.every_minutes)


class RunbookScheduler:
    """Fire due runbooks from a periodic tick, never two runs per runbook id.

    The in-flight set lives on the instance, so independent schedulers do not
    share state. It is process-local: two server processes can still start the
    same runbook concurrently, which triage ingestion tolerates because items
    are deduplicated by source key.
    """

    def __init__(
        self,
        *,
        source: RunbookSource,
        runbooks: RunbookRepository,
        runner: RunbookRunner,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
    ) -> None:
        self.source = source
        self.runbooks = runbooks
        self.runner = runner
        self.tick_seconds = max(MIN_TICK_SECONDS, tick_seconds)
        self._running: set[str] = set()
        self._inflight: dict[str, asyncio.Task[list[RunbookRunResult]]] = {}
        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None

    def is_running(self, runbook_id: str) -> bool:
        return runbook_id in self._running

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Evaluate every definition once; return the ids that were fired."""

        current = now or utc_now()
        definitions = await asyncio.to_thread(self.source.list)
        states = await asyncio.to_thread(self.runbooks.list_states)

        fired: list[str] = []
        for runbook in definitions:
            if not runbook.enabled or not runbook.every_minutes:
                continue
            if self.is_running(runbook.id):
                continue
            state = states.get(runbook.id)
            if not is_due(runbook, state.last_run_at if state is not None else None, current):
                continue
            if await self._fire(runbook, tasks=None):
                fired.append(runbook.id)
        if fired:
            logger.info("Scheduler tick fired %d runbook(s): %s", len(fired), ", ".join(fired))
        return fired

    async def run_now(self, runbook_id: str) -> list[TaskView]:
        """Start a manual run for every account; tasks are returned before the runs finish."""

        runbook = await asyncio.to_thread(self._get_definition, runbook_id)
        async with self._lock:
            if runbook.id in self._running:
                raise RunbookBusyError(runbook.id)
            tasks = [
                await asyncio.to_thread(self.runner.create_task, runbook, account)
                for account in runbook.accounts
            ]
            self._start_locked(runbook, tasks)
        return tasks

    async def wait_idle(self) -> None:
        """Wait until every in-flight run has finished."""

        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def start(self) -> None:
        if self._loop_task is not None:
            return
        self._stop.clear()
        self._loop_task = asyncio.create_task(self._loop(), name="runbook-scheduler")
        logger.info("Runbook scheduler started (tick=%.1fs)", self.tick_seconds)

    async def stop(self, *, cancel_runs: bool = True) -> None:
        self._stop.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if cancel_runs:
            for task in list(self._inflight.values()):
                task.cancel()
        await self.wait_idle()
        logger.info("Runbook scheduler stopped")

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.tick_seconds)
            except TimeoutError:
                continue

    async def _fire(self, runbook: RunbookDefinition, *, tasks: list[TaskView] | None) -> bool:
        async with self._lock:
            if runbook.id in self._running:
                return False
            self._start_locked(runbook, tasks)
            return True

    def _start_locked(self, runbook: RunbookDefinition, tasks: list[TaskView] | None) -> None:
        self._running.add(runbook.id)
        task = asyncio.create_task(
            self._execute(runbook, tasks),
            name=f"runbook:{runbook.id}",
        )
        self._inflight[runbook.id] = task
        task.add_done_callback(lambda done: self._release(runbook.id, done))

    def _release(self, runbook_id: str, done: asyncio.Task[list[RunbookRunResult]]) -> None:
        self._running.discard(runbook_id)
        self._inflight.pop(runbook_id, None)
        if done.cancelled():
            logger.info("Runbook %s run was cancelled", runbook_id)
            return
        error = done.exception()
        if error is not None:
            logger.error("Runbook %s run crashed: %s", runbook_id, error, exc_info=error)

    async def _execute(
        self,
        runbook: RunbookDefinition,
        tasks: list[TaskView] | None,
    ) -> list[RunbookRunResult]:
        accounts = runbook.accounts
        prepared = tasks or [None] * len(accounts)
        outcomes = await asyncio.gather(
            *(
                self.runner.run(runbook, account, task=task)
                for account, task in zip(accounts, prepared, strict=True)
            ),
            return_exceptions=True,
        )
        results: list[RunbookRunResult] = []
        for account, outcome in zip(accounts, outcomes, strict=True):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error(
                    "Runbook %s (%s) raised: %s",
                    runbook.id,
                    account,
                    outcome,
                    exc_info=outcome,
                )
                continue
            if not outcome.ok:
                logger.warning(
                    "Runbook %s (%s) finished with error: %s",
                    runbook.id,
                    account,
                    outcome.error,
                )
            results.append(outcome)
        return results

    def _get_definition(self, runbook_id: str) -> RunbookDefinition:
        for definition in self.source.list():
            if definition.id == runbook_id:
                return definition
        raise RunbookNotFoundError(runbook_id)
