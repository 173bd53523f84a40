from __future__ import annotations

import allure
import pytest

from assistant_runtime.runbooks.models import TriageKind, TriageStatus
from assistant_runtime.runbooks.triage import TriageRepository, clamp_int, default_source_key
from assistant_runtime.services import TriageFeedbackInput, TriageService

pytestmark = [
    allure.epic("Runbooks"),
    allure.feature("Triage Inbox"),
]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (-5, 0),
        (99, 10),
        (2.5, 3),
        ("7", 7),
        ("urgent", 0),
        (None, 0),
        (float("nan"), 0),
    ],
)
def test_clamp_int_rounds_and_bounds(value: object, expected: int) -> None:
    assert clamp_int(value, 0, 10) == expected


def test_create_item_is_idempotent_by_source_key(triage_repository: TriageRepository) -> None:
    first, created = triage_repository.create_item(
        runbook_id="inbox",
        kind=TriageKind.NEXT_ACTION,
        title="Reply to Sam",
        priority=2,
        source_key="gmail:work:m1",
    )
    second, created_again = triage_repository.create_item(
        runbook_id="inbox",
        kind=TriageKind.QUICK_READ,
        title="Different title",
        priority=9,
        source_key="gmail:work:m1",
    )

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert second.title == "Reply to Sam"
    assert second.priority == 2
    assert len(triage_repository.list_items()) == 1


def test_create_item_clamps_priority_and_confidence(
    triage_repository: TriageRepository,
) -> None:
    low, _ = triage_repository.create_item(
        runbook_id="inbox",
        kind=TriageKind.NEXT_ACTION,
        title="Low",
        priority=-5,
        confidence_pct=150,
        source_key="k-low",
    )
    high, _ = triage_repository.create_item(
        runbook_id="inbox",
        kind=TriageKind.QUICK_READ,
        title="High",
        priority=99,
        source_key="k-high",
    )

    assert low.priority == 0
    assert low.confidence_pct == 100
    assert high.priority == 10
    assert high.confidence_pct is None


def test_missing_source_key_is_derived_from_content(
    triage_repository: TriageRepository,
) -> None:
    item, _ = triage_repository.create_item(
        runbook_id="inbox",
        kind=TriageKind.QUICK_READ,
        title="Newsletter",
        summary_md="Weekly digest",
    )
    duplicate, created = triage_repository.create_item(
        runbook_id="inbox",
        kind=TriageKind.QUICK_READ,
        title="Newsletter",
        summary_md="Weekly digest",
    )

    assert item.source_key == default_source_key(
        runbook_id="inbox",
        kind="quick_read",
        title="Newsletter",
        summary_md="Weekly digest",
        source=None,
    )
    assert item.source_key.startswith("auto:")
    assert created is False
    assert duplicate.id == item.id


def test_status_changes_stamp_completion(triage_repository: TriageRepository) -> None:
    item, _ = triage_repository.create_item(
        runbook_id="inbox",
        kind=TriageKind.NEXT_ACTION,
        title="Pay invoice",
        source_key="invoice-1",
    )

    completed = triage_repository.set_status(item.id, TriageStatus.COMPLETED)
    assert completed is not None
    assert completed.status is TriageStatus.COMPLETED
    assert completed.completed_at is not None

    reopened = triage_repository.set_status(item.id, TriageStatus.OPEN)
    assert reopened is not None
    assert reopened.completed_at is None
    assert triage_repository.set_status("missing", TriageStatus.DISMISSED) is None


def test_service_records_feedback_for_next_run(triage_repository: TriageRepository) -> None:
    service = TriageService(triage=triage_repository)
    dismissed, _ = triage_repository.create_item(
        runbook_id="inbox",
        kind=TriageKind.QUICK_READ,
        title="Promo mail",
        source_key="promo",
    )
    explained, _ = triage_repository.create_item(
        runbook_id="inbox",
        kind=TriageKind.NEXT_ACTION,
        title="Book flights",
        source_key="flights",
    )
    other, _ = triage_repository.create_item(
        runbook_id="calendar",
        kind=TriageKind.NEXT_ACTION,
        title="Other runbook",
        source_key="other",
    )

    service.set_status(dismissed.id, TriageStatus.DISMISSED)
    service.set_status(
        explained.id,
        TriageStatus.COMPLETED,
        feedback=TriageFeedbackInput(kind="done_elsewhere", reason="already booked"),
    )
    service.set_priority(other.id, 42)

    feedback = triage_repository.list_recent_feedback(runbook_id="inbox")
    assert {entry.kind for entry in feedback} == {"dismissed", "done_elsewhere"}
    by_kind = {entry.kind: entry for entry in feedback}
    assert by_kind["done_elsewhere"].reason == "already booked"
    assert by_kind["done_elsewhere"].item_title == "Book flights"
    assert by_kind["dismissed"].runbook_id == "inbox"

    calendar = triage_repository.list_recent_feedback(runbook_id="calendar")
    assert [entry.kind for entry in calendar] == ["priority_set"]
    assert calendar[0].meta == {"priority": 10}


def test_list_items_filters_by_status_and_kind(triage_repository: TriageRepository) -> None:
    quick, _ = triage_repository.create_item(
        runbook_id="inbox",
        kind=TriageKind.QUICK_READ,
        title="Read me",
        source_key="read",
    )
    action, _ = triage_repository.create_item(
        runbook_id="inbox",
        kind=TriageKind.NEXT_ACTION,
        title="Do me",
        source_key="do",
    )
    triage_repository.set_status(action.id, TriageStatus.DISMISSED)

    assert [item.id for item in triage_repository.list_items()] == [quick.id]
    assert triage_repository.list_items(kind=TriageKind.NEXT_ACTION) == []
    dismissed = triage_repository.list_items(status=TriageStatus.DISMISSED)
    assert [item.id for item in dismissed] == [action.id]
