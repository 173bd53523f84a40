from __future__ import annotations

import asyncio

import allure
import pytest

from assistant_runtime.runner.echo_runner import EchoRunner
from assistant_runtime.runner.pricing import TokenPricing, estimate_cost_usd, parse_rate
from assistant_runtime.runner.usage import extract_usage, usage_from_json_event
from assistant_runtime.runbooks.extraction import parse_triage_output
from assistant_runtime.tasks.events import TaskEvent, Usage

pytestmark = [
    allure.epic("Runners"),
    allure.feature("Usage & Cost"),
]


def test_estimate_cost_bills_cached_tokens_at_cached_rate() -> None:
    pricing = TokenPricing(input_per_1k=2.0, output_per_1k=4.0, cached_input_per_1k=0.5)
    usage = Usage(input_tokens=3_000, cached_input_tokens=1_000, output_tokens=500)

    assert estimate_cost_usd(usage, pricing) == pytest.approx(4.0 + 0.5 + 2.0)


def test_estimate_cost_without_rates_or_usage_is_unknown() -> None:
    usage = Usage(input_tokens=10)

    assert estimate_cost_usd(usage, TokenPricing()) is None
    assert estimate_cost_usd(None, TokenPricing(input_per_1k=1.0)) is None
    assert estimate_cost_usd(usage, TokenPricing(output_per_1k=1.0)) == 0.0


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("0.25", 0.25), (" 3 ", 3.0), ("", None), (None, None), ("cheap", None), ("inf", None)],
)
def test_parse_rate(raw: str | None, expected: float | None) -> None:
    assert parse_rate(raw) == expected


def test_usage_from_json_event_accepts_both_naming_styles() -> None:
    codex = usage_from_json_event(
        {"type": "turn.completed", "usage": {"input_tokens": 5, "cached_input_tokens": 1}},
    )
    openai = usage_from_json_event({"usage": {"prompt_tokens": 8, "completion_tokens": 2}})

    assert codex == Usage(input_tokens=5, cached_input_tokens=1, output_tokens=0)
    assert openai == Usage(input_tokens=8, cached_input_tokens=0, output_tokens=2)
    assert usage_from_json_event({"usage": "n/a"}) is None


def test_extract_usage_prefers_json_then_text() -> None:
    json_usage = extract_usage(
        stdout='noise\n{"usage": {"input_tokens": 40, "output_tokens": 4}}\n',
        stderr="input tokens: 999",
    )
    text_usage = extract_usage(
        stdout="done",
        stderr="cached_input_tokens=1,000 input_tokens: 3,500 output tokens = 120",
    )

    assert json_usage == Usage(input_tokens=40, output_tokens=4)
    assert text_usage == Usage(input_tokens=3_500, cached_input_tokens=1_000, output_tokens=120)
    assert extract_usage(stdout="nothing", stderr="") is None


def test_usage_round_trips_camel_case_payload() -> None:
    usage = Usage(input_tokens=1, cached_input_tokens=2, output_tokens=3)

    assert usage.to_dict() == {"inputTokens": 1, "cachedInputTokens": 2, "outputTokens": 3}
    assert Usage.from_dict(usage.to_dict()) == usage


def test_echo_runner_answers_runbook_envelope_with_empty_triage() -> None:
    events: list[TaskEvent] = []

    async def sink(event: TaskEvent) -> None:
        events.append(event)

    runbook = asyncio.run(
        EchoRunner().invoke('Runbook: inbox\nAccount: work\nCursor (json): {"h":"1"}\n', sink),
    )
    chat = asyncio.run(EchoRunner().invoke("User: hi\n\nUser: plan my week", sink))

    assert parse_triage_output(runbook.content) == {"cursor": {"h": "1"}, "items": []}
    assert chat.content == "Echo: User: plan my week"
    assert [event.type for event in events] == ["log", "log"]
