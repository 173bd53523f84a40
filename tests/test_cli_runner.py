from __future__ import annotations

import asyncio
import shlex
import sys
from pathlib import Path

import allure
import pytest

from assistant_runtime.runner.base import RunnerError
from assistant_runtime.runner.cli_runner import CliRunner, build_run_args, parse_device_info
from assistant_runtime.tasks.events import DeviceEvent, LogEvent, TaskEvent

pytestmark = [
    allure.epic("Runners"),
    allure.feature("CLI Runner"),
]

_AGENT_SCRIPT = """\
import json
import sys

prompt = sys.stdin.read()
print("Visit https://example.com/device and enter ABCD-12345", file=sys.stderr)
print("working", file=sys.stderr)
last = prompt.strip().splitlines()[-1]
print(json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": last}}))
usage = {"input_tokens": 12, "cached_input_tokens": 2, "output_tokens": 3}
print(json.dumps({"type": "turn.completed", "usage": usage}))
"""

_FAILING_SCRIPT = """\
import sys

sys.stdin.read()
print("model quota exceeded", file=sys.stderr)
sys.exit(3)
"""

_PLAIN_SCRIPT = """\
import sys

print("plain answer")
print("output_tokens: 7", file=sys.stderr)
"""

_SLOW_SCRIPT = """\
import time

time.sleep(30)
"""


def _template(tmp_path: Path, name: str, source: str) -> str:
    script = tmp_path / f"{name}.py"
    script.write_text(source, "utf-8")
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"


def _invoke(runner: CliRunner, prompt: str) -> tuple[object, list[TaskEvent]]:
    events: list[TaskEvent] = []

    async def sink(event: TaskEvent) -> None:
        events.append(event)

    result = asyncio.run(runner.invoke(prompt, sink))
    return result, events


def test_agent_message_usage_and_device_events(tmp_path: Path) -> None:
    runner = CliRunner(command_template=_template(tmp_path, "agent", _AGENT_SCRIPT))

    result, events = _invoke(runner, "context\nWhat changed today?")

    assert result.content == "What changed today?"  # type: ignore[attr-defined]
    usage = result.usage  # type: ignore[attr-defined]
    assert (usage.input_tokens, usage.cached_input_tokens, usage.output_tokens) == (12, 2, 3)
    logs = [event.text for event in events if isinstance(event, LogEvent)]
    assert logs[-1] == "working"
    assert all(
        event.stream == "stderr" for event in events if isinstance(event, LogEvent)
    )
    devices = [event for event in events if isinstance(event, DeviceEvent)]
    assert devices == [DeviceEvent(url="https://example.com/device", code="ABCD-12345")]


def test_plain_stdout_is_the_answer(tmp_path: Path) -> None:
    runner = CliRunner(command_template=_template(tmp_path, "plain", _PLAIN_SCRIPT))

    result, _ = _invoke(runner, "ignored prompt")

    assert result.content == "plain answer"  # type: ignore[attr-defined]
    assert result.usage.output_tokens == 7  # type: ignore[attr-defined]


def test_non_zero_exit_raises_with_stderr_tail(tmp_path: Path) -> None:
    runner = CliRunner(command_template=_template(tmp_path, "failing", _FAILING_SCRIPT))

    with pytest.raises(RunnerError, match="model quota exceeded") as error:
        _invoke(runner, "prompt")
    assert error.value.transient is False


def test_timeout_terminates_process(tmp_path: Path) -> None:
    runner = CliRunner(
        command_template=_template(tmp_path, "slow", _SLOW_SCRIPT),
        timeout_seconds=0.5,
    )

    with pytest.raises(RunnerError, match="timed out") as error:
        _invoke(runner, "prompt")
    assert error.value.transient is True


def test_missing_command_is_permanent_error() -> None:
    runner = CliRunner(command_template="assistant-runtime-no-such-binary --json")

    with pytest.raises(RunnerError, match="not found") as error:
        _invoke(runner, "prompt")
    assert error.value.transient is False


def test_build_run_args_quotes_placeholders(tmp_path: Path) -> None:
    prompt_file = tmp_path / "my prompt.txt"

    argv = build_run_args(
        command_template="agent exec --file {prompt_file} --text {prompt}",
        prompt="it's \"quoted\"",
        prompt_file=prompt_file,
    )

    assert argv == ["agent", "exec", "--file", str(prompt_file), "--text", "it's \"quoted\""]
    with pytest.raises(RunnerError):
        build_run_args(command_template="  ", prompt="x", prompt_file=prompt_file)
    with pytest.raises(RunnerError, match="placeholder"):
        build_run_args(command_template="agent {model}", prompt="x", prompt_file=prompt_file)


def test_parse_device_info_needs_url_and_code() -> None:
    assert parse_device_info("open https://login.example/device code WXYZ-98765") == DeviceEvent(
        url="https://login.example/device",
        code="WXYZ-98765",
    )
    assert parse_device_info("no device login here") is None
