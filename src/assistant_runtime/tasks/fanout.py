"""Poll-only delivery of task events to live subscribers.

Every subscriber owns its replay cursor and reads the log through
``TaskRepository.list_events``; catching up and live delivery are the same
loop. Nothing is ever pushed around the log, so a subscriber cannot see an
event twice or miss one between polls.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from assistant_runtime.tasks.models import TaskEventView, TaskNotFoundError
from assistant_runtime.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)


class EventFanout:
    """Registry of subscriber wake-ups plus the replay loop they run."""

    def __init__(
        self,
        repository: TaskRepository,
        *,
        poll_interval_seconds: float = 1.0,
        batch_limit: int = 500,
    ) -> None:
        self.repository = repository
        self.poll_interval_seconds = max(0.01, poll_interval_seconds)
        self.batch_limit = batch_limit
        self._subscribers: dict[str, set[asyncio.Event]] = {}

    def subscriber_count(self, task_id: str | None = None) -> int:
        if task_id is not None:
            return len(self._subscribers.get(task_id, ()))
        return sum(len(wakeups) for wakeups in self._subscribers.values())

    def wake(self, task_id: str) -> None:
        """Cut the poll sleep short for every subscriber of ``task_id``.

        Only the sleep is shortened; events are still read from the log.
        """

        for wakeup in self._subscribers.get(task_id, ()):
            wakeup.set()

    async def subscribe(
        self,
        task_id: str,
        *,
        after_id: int = 0,
    ) -> AsyncIterator[TaskEventView]:
        """Yield events with ``id > after_id`` until the terminal event.

        Raises ``TaskNotFoundError`` before yielding when the task is unknown.
        Closing the generator (client disconnect) only unregisters it.
        """

        task = await asyncio.to_thread(self.repository.get_task, task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        cursor = max(0, after_id)
        wakeup = asyncio.Event()
        self._subscribers.setdefault(task_id, set()).add(wakeup)
        logger.debug("Subscriber attached to task %s after=%s", task_id, cursor)
        try:
            while True:
                wakeup.clear()
                batch = await asyncio.to_thread(
                    self.repository.list_events,
                    task_id,
                    after_id=cursor,
                    limit=self.batch_limit,
                )
                for event in batch:
                    cursor = event.id
                    yield event
                    if event.is_terminal:
                        return
                if len(batch) >= self.batch_limit:
                    continue
                if not batch and await self._finished_without_pending(task_id, cursor):
                    return
                try:
                    await asyncio.wait_for(wakeup.wait(), timeout=self.poll_interval_seconds)
                except TimeoutError:
                    pass
        finally:
            self._unregister(task_id, wakeup)
            logger.debug("Subscriber detached from task %s at cursor=%s", task_id, cursor)

    async def _finished_without_pending(self, task_id: str, cursor: int) -> bool:
        # Reached when the caller resumed past the terminal event.
        task = await asyncio.to_thread(self.repository.get_task, task_id)
        if task is None:
            return True
        if not task.status.is_terminal:
            return False
        remaining = await asyncio.to_thread(
            self.repository.list_events,
            task_id,
            after_id=cursor,
            limit=1,
        )
        return not remaining

    def _unregister(self, task_id: str, wakeup: asyncio.Event) -> None:
        wakeups = self._subscribers.get(task_id)
        if wakeups is None:
            return
        wakeups.discard(wakeup)
        if not wakeups:
            self._subscribers.pop(task_id, None)
