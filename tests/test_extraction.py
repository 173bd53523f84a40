from __future__ import annotations

from datetime import UTC, datetime

import allure

from assistant_runtime.runbooks.definitions import RunbookDefinition
from assistant_runtime.runbooks.extraction import extract_first_json_object, parse_triage_output
from assistant_runtime.runbooks.models import TriageFeedback
from assistant_runtime.runbooks.prompts import build_prompt_envelope, summarize_feedback

pytestmark = [
    allure.epic("Runbooks"),
    allure.feature("Runner Output Contract"),
]


def test_triage_fence_is_parsed() -> None:
    text = (
        "Here you go.\n"
        '```triage\n{"cursor":{"historyId":"42"},"items":[{"kind":"next_action",'
        '"priority":5,"title":"Reply","source_key":"k1"}]}\n```\n'
    )

    parsed = parse_triage_output(text)

    assert parsed == {
        "cursor": {"historyId": "42"},
        "items": [{"kind": "next_action", "priority": 5, "title": "Reply", "source_key": "k1"}],
    }


def test_triage_fence_wins_over_json_fence() -> None:
    text = '```json\n{"cursor": {"a": 1}}\n```\n```triage\n{"cursor": {"a": 2}}\n```'

    assert parse_triage_output(text) == {"cursor": {"a": 2}}


def test_bare_object_and_trailing_text_are_recovered() -> None:
    assert parse_triage_output('{"items": []}') == {"items": []}
    fenced = '```\nresult: {"items": [], "note": "brace } in string"} trailing\n```'
    assert parse_triage_output(fenced) == {"items": [], "note": "brace } in string"}


def test_separators_and_bom_are_sanitized() -> None:
    text = '\ufeff```triage\n{"items": [],\u2028"cursor": {}}\n```'

    assert parse_triage_output(text) == {"items": [], "cursor": {}}


def test_unparseable_output_returns_none() -> None:
    assert parse_triage_output("I could not access the mailbox.") is None
    assert parse_triage_output("```triage\nnot json at all\n```") is None
    assert parse_triage_output("```json\n[1, 2, 3]\n```") is None
    assert parse_triage_output("") is None


def test_extract_first_json_object_handles_nesting() -> None:
    assert extract_first_json_object('x {"a": {"b": "}"}} y {"c": 1}') == '{"a": {"b": "}"}}'
    assert extract_first_json_object("no braces") is None
    assert extract_first_json_object('{"open": ') is None


def _feedback(kind: str, title: str, reason: str | None = None) -> TriageFeedback:
    return TriageFeedback(
        id=f"fb-{kind}-{title}",
        item_id="item",
        kind=kind,
        actor="user",
        reason=reason,
        outcome=None,
        notes=None,
        meta={},
        created_at=datetime(2026, 10, 1, tzinfo=UTC),
        item_title=title,
    )


def test_feedback_summary_counts_and_examples() -> None:
    feedback = [
        _feedback("dismissed", "Promo", reason="spam"),
        _feedback("dismissed", "Sale"),
        _feedback("completed", "Invoice"),
    ]

    summary = summarize_feedback(feedback)

    head, examples = summary.split("\n\nExamples:\n")
    assert head.splitlines() == ["- dismissed: 2", "- completed: 1"]
    assert examples.splitlines()[0] == "- dismissed · “Promo” · reason=spam"
    assert len(examples.splitlines()) == 3
    assert summarize_feedback([]) == ""


def test_prompt_envelope_is_deterministic() -> None:
    runbook = RunbookDefinition(id="inbox", body="  Check unread mail.  ")

    envelope = build_prompt_envelope(
        runbook=runbook,
        account_key="work",
        cursor={"historyId": "7"},
        feedback_text="- dismissed: 1",
    )

    assert envelope.startswith(
        'Runbook: inbox\nAccount: work\nCursor (json): {"historyId":"7"}\n\n'
        "Recent user feedback (for learning):\n- dismissed: 1\n\n"
        "Instructions (markdown):\n\nCheck unread mail.\n\n---\n\n",
    )
    assert "```triage" not in envelope
    assert "fenced code block tagged `triage`" in envelope
    assert envelope == build_prompt_envelope(
        runbook=runbook,
        account_key="work",
        cursor={"historyId": "7"},
        feedback_text="- dismissed: 1",
    )
    without_feedback = build_prompt_envelope(runbook=runbook, account_key="work", cursor=None)
    assert "Recent user feedback" not in without_feedback
    assert "Cursor (json): {}\n" in without_feedback
