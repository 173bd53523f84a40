from __future__ import annotations

import json
import time
from pathlib import Path

import allure
import pytest
from fastapi.testclient import TestClient

from assistant_runtime.api.app import create_app
from assistant_runtime.config import Settings
from assistant_runtime.runbooks.models import TriageKind
from assistant_runtime.tasks.events import LogEvent, StatusEvent
from assistant_runtime.tasks.models import TaskStatus

pytestmark = [
    allure.epic("Task Runtime"),
    allure.feature("HTTP API"),
]


def _sse_events(body: str) -> list[tuple[int, dict[str, object]]]:
    events: list[tuple[int, dict[str, object]]] = []
    for block in body.strip().split("\n\n"):
        fields = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((int(fields["id"]), json.loads(fields["data"])))
    return events


def _wait_for_status(client: TestClient, task_id: str, *statuses: str) -> dict[str, str]:
    deadline = time.monotonic() + 10
    while True:
        payload = client.get(f"/tasks/{task_id}").json()
        if payload["status"] in statuses or time.monotonic() > deadline:
            return payload
        time.sleep(0.02)


@pytest.fixture()
def client(settings: Settings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client
    app.state.runtime.close()


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_task_events_stream_replays_and_resumes(client: TestClient) -> None:
    tasks = client.app.state.runtime.tasks  # type: ignore[attr-defined]
    task = tasks.create_task(kind="chat_run", status=TaskStatus.RUNNING)
    tasks.append_event(task.id, StatusEvent(stage="running"))
    tasks.append_event(task.id, LogEvent(text="step"))
    tasks.finish_task(task.id, ok=True, exit_code=0)

    response = client.get(f"/tasks/{task.id}/events")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(response.text)
    assert [payload["event"]["type"] for _, payload in events] == ["status", "log", "done"]
    assert all(payload["taskId"] == task.id for _, payload in events)
    assert [event_id for event_id, _ in events] == [payload["id"] for _, payload in events]

    resumed = client.get(
        f"/tasks/{task.id}/events",
        headers={"Last-Event-ID": str(events[0][0])},
    )
    assert [payload["event"]["type"] for _, payload in _sse_events(resumed.text)] == [
        "log",
        "done",
    ]
    by_query = client.get(f"/tasks/{task.id}/events", params={"after": events[1][0]})
    assert [payload["event"]["type"] for _, payload in _sse_events(by_query.text)] == ["done"]


def test_unknown_task_is_404(client: TestClient) -> None:
    assert client.get("/tasks/missing").status_code == 404
    assert client.get("/tasks/missing/events").status_code == 404
    assert client.post("/tasks/missing/cancel").status_code == 404


def test_posted_message_can_be_canceled(client: TestClient) -> None:
    chat = client.post("/chats", json={"title": "Errands"}).json()["chat"]

    posted = client.post(f"/chats/{chat['id']}/messages", json={"content": "Book a table"})

    assert posted.status_code == 202
    task_id = posted.json()["taskId"]
    roles = [message["role"] for message in posted.json()["messages"]]
    assert roles == ["user", "assistant"]
    assert client.get(f"/tasks/{task_id}").json() == {
        "id": task_id,
        "kind": "chat_run",
        "status": "queued",
    }

    assert client.post(f"/tasks/{task_id}/cancel").json() == {"canceled": True}
    assert client.post(f"/tasks/{task_id}/cancel").json() == {"canceled": False}
    events = _sse_events(client.get(f"/tasks/{task_id}/events").text)
    assert [payload["event"] for _, payload in events] == [
        {"type": "canceled", "reason": "user"},
    ]
    assert client.post("/chats/missing/messages", json={"content": "x"}).status_code == 404
    assert client.get("/chats/missing").status_code == 404


def test_chat_message_is_answered_by_in_process_worker(settings: Settings) -> None:
    app = create_app(settings, run_worker=True)
    with TestClient(app) as client:
        chat = client.post("/chats", json={}).json()["chat"]
        task_id = client.post(
            f"/chats/{chat['id']}/messages",
            json={"content": "Ping"},
        ).json()["taskId"]

        events = _sse_events(client.get(f"/tasks/{task_id}/events").text)
        messages = client.get(f"/chats/{chat['id']}").json()["chat"]["messages"]

    app.state.runtime.close()
    types = [payload["event"]["type"] for _, payload in events]
    assert types[0] == "status"
    assert types[-1] == "done"
    assert events[-1][1]["event"]["ok"] is True
    assert "assistant_message" in types
    assert messages[-1]["content"] == "Echo: User: Ping"


def test_runbook_listing_patch_and_run_now(client: TestClient, runbooks_dir: Path) -> None:
    (runbooks_dir / "inbox.md").write_text(
        "---\nid: inbox\ntitle: Inbox\naccounts: [work]\n---\nCheck unread mail.\n",
        "utf-8",
    )

    listed = client.get("/runbooks").json()["runbooks"]
    assert [(entry["id"], entry["everyMinutes"], entry["accounts"]) for entry in listed] == [
        ("inbox", None, ["work"]),
    ]

    patched = client.post("/runbooks/inbox", json={"everyMinutes": 15, "enabled": False})
    assert patched.status_code == 200
    assert patched.json()["runbook"]["everyMinutes"] == 15
    assert patched.json()["runbook"]["enabled"] is False

    started = client.post("/runbooks/inbox/run-now")
    assert started.status_code == 202
    [entry] = started.json()["started"]
    assert entry["accountKey"] == "work"
    finished = _wait_for_status(client, entry["taskId"], "ok", "error")
    assert finished["status"] == "ok"

    detail = client.get("/runbooks/inbox").json()["runbook"]
    assert detail["body"] == "Check unread mail.\n"
    assert detail["lastStatus"] == "ok"
    assert detail["nextRunAt"] is not None
    assert [run["status"] for run in detail["runs"]] == ["ok"]
    runs = client.get("/runbooks/inbox/runs").json()["runs"]
    assert runs[0]["taskId"] == entry["taskId"]
    assert client.post("/runbooks/missing/run-now").status_code == 404
    assert client.get("/runbooks/missing").status_code == 404


def test_triage_endpoints_record_feedback(client: TestClient) -> None:
    triage = client.app.state.runtime.triage  # type: ignore[attr-defined]
    item, _ = triage.create_item(
        runbook_id="inbox",
        kind=TriageKind.NEXT_ACTION,
        title="Renew passport",
        source_key="passport",
    )

    listed = client.get("/triage/items").json()["items"]
    assert [entry["id"] for entry in listed] == [item.id]
    assert client.get("/triage/items", params={"status": "bogus"}).status_code == 400

    priority = client.post(f"/triage/items/{item.id}/priority", json={"priority": 42})
    assert priority.json()["item"]["priority"] == 10
    assert client.post(f"/triage/items/{item.id}/priority", json={}).status_code == 400

    completed = client.post(
        f"/triage/items/{item.id}/status",
        json={"status": "completed", "feedback": {"kind": "done", "outcome": "booked"}},
    )
    assert completed.status_code == 200
    assert completed.json()["item"]["status"] == "completed"
    assert client.get("/triage/items").json()["items"] == []
    assert client.post("/triage/items/missing/status", json={"status": "open"}).status_code == 404

    feedback = client.get("/triage/feedback", params={"runbookId": "inbox"}).json()["feedback"]
    assert sorted(entry["kind"] for entry in feedback) == ["done", "priority_set"]
