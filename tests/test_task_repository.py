from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from assistant_runtime.tasks.events import (
    AssistantMessageEvent,
    DoneEvent,
    LogEvent,
    StatusEvent,
)
from assistant_runtime.tasks.models import (
    InvalidTaskTransitionError,
    TaskNotFoundError,
    TaskStatus,
)
from assistant_runtime.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Runtime"),
    allure.feature("Task Log"),
]


def test_events_replay_in_order_without_gaps(task_repository: TaskRepository) -> None:
    task = task_repository.create_task(kind="chat_run", input={"chatId": "c1"})
    appended = [
        task_repository.append_event(task.id, StatusEvent(stage="loading_context")),
        task_repository.append_event(task.id, LogEvent(text="hello")),
        task_repository.append_event(task.id, AssistantMessageEvent(content="hi")),
    ]
    assert all(view is not None for view in appended)
    assert task_repository.finish_task(task.id, ok=True, exit_code=0) is True

    events = task_repository.list_events(task.id)
    assert [event.event.type for event in events] == [
        "status",
        "log",
        "assistant_message",
        "done",
    ]
    ids = [event.id for event in events]
    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)

    resumed = task_repository.list_events(task.id, after_id=ids[1])
    assert [event.id for event in resumed] == ids[2:]
    assert resumed[-1].is_terminal


def test_list_events_respects_limit_and_cursor(task_repository: TaskRepository) -> None:
    task = task_repository.create_task(kind="chat_run")
    for index in range(5):
        task_repository.append_event(task.id, LogEvent(text=f"line {index}"))

    first_page = task_repository.list_events(task.id, limit=2)
    second_page = task_repository.list_events(task.id, after_id=first_page[-1].id, limit=2)
    third_page = task_repository.list_events(task.id, after_id=second_page[-1].id, limit=2)

    texts = [event.event.text for event in (*first_page, *second_page, *third_page)]
    assert texts == [f"line {index}" for index in range(5)]


def test_create_running_task_sets_started_at(task_repository: TaskRepository) -> None:
    queued = task_repository.create_task(kind="chat_run")
    running = task_repository.create_task(kind="chat_run", status=TaskStatus.RUNNING)

    assert queued.status is TaskStatus.QUEUED
    assert queued.started_at is None
    assert running.status is TaskStatus.RUNNING
    assert running.started_at is not None
    with pytest.raises(InvalidTaskTransitionError):
        task_repository.create_task(kind="chat_run", status=TaskStatus.OK)


def test_terminal_transition_is_idempotent(task_repository: TaskRepository) -> None:
    task = task_repository.create_task(kind="chat_run", status=TaskStatus.RUNNING)

    assert task_repository.cancel_task(task.id, reason="user") is True
    assert task_repository.finish_task(task.id, ok=True) is False
    assert task_repository.cancel_task(task.id) is False

    stored = task_repository.require_task(task.id)
    assert stored.status is TaskStatus.CANCELED
    assert stored.completed_at is not None
    terminal = [event for event in task_repository.list_events(task.id) if event.is_terminal]
    assert len(terminal) == 1
    assert terminal[0].event.type == "canceled"
    assert terminal[0].event.reason == "user"


def test_append_after_terminal_is_dropped(task_repository: TaskRepository) -> None:
    task = task_repository.create_task(kind="chat_run", status=TaskStatus.RUNNING)
    task_repository.finish_task(task.id, ok=False)

    assert task_repository.append_event(task.id, LogEvent(text="late")) is None

    events = task_repository.list_events(task.id)
    assert events[-1].event.type == "done"
    assert events[-1].event.ok is False


def test_terminal_events_cannot_be_appended_directly(task_repository: TaskRepository) -> None:
    task = task_repository.create_task(kind="chat_run")

    with pytest.raises(ValueError, match="finish_task"):
        task_repository.append_event(task.id, DoneEvent(ok=True))


def test_unknown_task_raises_not_found(task_repository: TaskRepository) -> None:
    with pytest.raises(TaskNotFoundError):
        task_repository.append_event("missing", LogEvent(text="x"))
    with pytest.raises(TaskNotFoundError):
        task_repository.finish_task("missing", ok=True)
    with pytest.raises(TaskNotFoundError):
        task_repository.set_status("missing", TaskStatus.RUNNING)
    assert task_repository.get_task("missing") is None
    assert task_repository.list_events("missing") == []


def test_set_status_is_noop_after_terminal(task_repository: TaskRepository) -> None:
    task = task_repository.create_task(kind="runbook_run")
    running = task_repository.set_status(task.id, TaskStatus.RUNNING)
    assert running.status is TaskStatus.RUNNING

    with pytest.raises(InvalidTaskTransitionError):
        task_repository.set_status(task.id, TaskStatus.QUEUED)

    task_repository.finish_task(task.id, ok=True)
    unchanged = task_repository.set_status(task.id, TaskStatus.RUNNING)
    assert unchanged.status is TaskStatus.OK


def test_update_input_and_list_filters(task_repository: TaskRepository) -> None:
    chat_task = task_repository.create_task(kind="chat_run", input={"chatId": "c1"})
    task_repository.create_task(kind="runbook_run", input={"runbookId": "r1"})

    updated = task_repository.update_input(chat_task.id, {"chatId": "c1", "result": {"ok": 1}})
    assert updated.input == {"chatId": "c1", "result": {"ok": 1}}

    chat_tasks = task_repository.list_tasks(kind="chat_run")
    assert [task.id for task in chat_tasks] == [chat_task.id]
    assert task_repository.list_tasks(status=TaskStatus.RUNNING) == []


def test_claim_next_queued_is_exclusive_across_connections(db_path: Path) -> None:
    setup = TaskRepository(db_path)
    setup.init_schema()
    task_ids = {setup.create_task(kind="chat_run").id for _ in range(6)}
    setup.create_task(kind="runbook_run")

    claims: list[str] = []
    errors: list[BaseException] = []
    lock = threading.Lock()
    start = threading.Event()

    def claim_all() -> None:
        repository = TaskRepository(db_path)
        try:
            start.wait(timeout=5)
            while True:
                claimed = repository.claim_next_queued(kind="chat_run")
                if claimed is None:
                    return
                with lock:
                    claims.append(claimed.id)
        except BaseException as error:  # noqa: BLE001
            with lock:
                errors.append(error)
        finally:
            repository.close()

    threads = [threading.Thread(target=claim_all) for _ in range(4)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert sorted(claims) == sorted(task_ids)
    assert all(
        setup.require_task(task_id).status is TaskStatus.RUNNING for task_id in task_ids
    )
    assert [task.kind for task in setup.list_tasks(status=TaskStatus.QUEUED)] == ["runbook_run"]
    setup.close()
