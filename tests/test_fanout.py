from __future__ import annotations

import asyncio

import allure
import pytest

from assistant_runtime.tasks.events import LogEvent, StatusEvent
from assistant_runtime.tasks.fanout import EventFanout
from assistant_runtime.tasks.models import TaskEventView, TaskNotFoundError, TaskStatus
from assistant_runtime.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Runtime"),
    allure.feature("Event Streaming"),
]


async def _collect(fanout: EventFanout, task_id: str, after_id: int = 0) -> list[TaskEventView]:
    return [event async for event in fanout.subscribe(task_id, after_id=after_id)]


def test_replay_of_finished_task_ends_after_terminal(task_repository: TaskRepository) -> None:
    task = task_repository.create_task(kind="chat_run", status=TaskStatus.RUNNING)
    task_repository.append_event(task.id, StatusEvent(stage="running"))
    task_repository.append_event(task.id, LogEvent(text="working"))
    task_repository.finish_task(task.id, ok=True, exit_code=0)
    fanout = EventFanout(task_repository, poll_interval_seconds=0.05)

    events = asyncio.run(asyncio.wait_for(_collect(fanout, task.id), timeout=5))

    assert [event.event.type for event in events] == ["status", "log", "done"]
    assert fanout.subscriber_count() == 0


def test_resume_past_terminal_yields_nothing(task_repository: TaskRepository) -> None:
    task = task_repository.create_task(kind="chat_run", status=TaskStatus.RUNNING)
    task_repository.append_event(task.id, LogEvent(text="one"))
    task_repository.cancel_task(task.id, reason="user")
    last_id = task_repository.list_events(task.id)[-1].id
    fanout = EventFanout(task_repository, poll_interval_seconds=0.05)

    events = asyncio.run(asyncio.wait_for(_collect(fanout, task.id, after_id=last_id), timeout=5))

    assert events == []


def test_live_subscriber_receives_every_event_once(task_repository: TaskRepository) -> None:
    task = task_repository.create_task(kind="chat_run", status=TaskStatus.RUNNING)
    first = task_repository.append_event(task.id, LogEvent(text="before subscribe"))
    assert first is not None
    fanout = EventFanout(task_repository, poll_interval_seconds=0.05, batch_limit=2)

    async def scenario() -> list[TaskEventView]:
        consumer = asyncio.create_task(_collect(fanout, task.id))
        await asyncio.sleep(0.1)
        for index in range(5):
            await asyncio.to_thread(
                task_repository.append_event,
                task.id,
                LogEvent(text=f"live {index}"),
            )
            fanout.wake(task.id)
        await asyncio.to_thread(task_repository.finish_task, task.id, ok=True)
        fanout.wake(task.id)
        return await asyncio.wait_for(consumer, timeout=5)

    events = asyncio.run(scenario())

    texts = [event.event.to_dict().get("text") for event in events[:-1]]
    assert texts == ["before subscribe", *[f"live {index}" for index in range(5)]]
    assert events[-1].event.type == "done"
    ids = [event.id for event in events]
    assert ids == sorted(set(ids))


def test_closing_subscriber_unregisters(task_repository: TaskRepository) -> None:
    task = task_repository.create_task(kind="chat_run", status=TaskStatus.RUNNING)
    task_repository.append_event(task.id, LogEvent(text="only"))
    fanout = EventFanout(task_repository, poll_interval_seconds=0.05)

    async def scenario() -> int:
        stream = fanout.subscribe(task.id)
        await anext(stream)
        attached = fanout.subscriber_count(task.id)
        await stream.aclose()
        return attached

    assert asyncio.run(scenario()) == 1
    assert fanout.subscriber_count(task.id) == 0


def test_unknown_task_is_rejected(task_repository: TaskRepository) -> None:
    fanout = EventFanout(task_repository)

    with pytest.raises(TaskNotFoundError):
        asyncio.run(_collect(fanout, "missing"))
