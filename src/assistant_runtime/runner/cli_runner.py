"""Subprocess-based runner for CLI agents."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
import tempfile
from pathlib import Path

from assistant_runtime.runner.base import EventSink, RunnerError, RunnerResult
from assistant_runtime.runner.usage import extract_usage, usage_from_json_event
from assistant_runtime.tasks.events import DeviceEvent, LogEvent, Usage

logger = logging.getLogger(__name__)

_URL = re.compile(r"https?://\S+")
_DEVICE_CODE = re.compile(r"\b[A-Z0-9]{4}-[A-Z0-9]{5}\b")
_ANSI = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_TAIL_LINES = 20
_STREAM_LIMIT_BYTES = 16 * 1024 * 1024


class CliRunner:
    """Run a command template per prompt and read its JSON-lines stdout.

    The prompt is written to stdin and, when the template asks for it, to a
    temp file substituted as ``{prompt_file}``. Each stdout line that parses as
    JSON is treated as an agent event: ``item.completed`` agent messages carry
    the answer and ``turn.completed`` carries usage. Plain stdout is the answer
    when no agent message was seen.
    """

    def __init__(self, *, command_template: str, timeout_seconds: float = 600.0) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    async def invoke(self, prompt: str, on_event: EventSink) -> RunnerResult:
        with tempfile.TemporaryDirectory(prefix="assistant-runner-") as workdir:
            prompt_file = Path(workdir) / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            argv = build_run_args(
                command_template=self.command_template,
                prompt=prompt,
                prompt_file=prompt_file,
            )
            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=os.environ.copy(),
                    limit=_STREAM_LIMIT_BYTES,
                )
            except FileNotFoundError as error:
                raise RunnerError(
                    f"Runner command not found: {argv[0]}",
                    transient=False,
                ) from error
            except OSError as error:
                raise RunnerError(f"Runner failed to start: {error}", transient=True) from error

            try:
                return await asyncio.wait_for(
                    self._communicate(process, prompt, on_event),
                    timeout=self.timeout_seconds,
                )
            except TimeoutError as error:
                await _terminate(process)
                raise RunnerError(
                    f"Runner timed out after {self.timeout_seconds:g}s",
                    transient=True,
                ) from error
            except asyncio.CancelledError:
                await _terminate(process)
                raise

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        prompt: str,
        on_event: EventSink,
    ) -> RunnerResult:
        assert process.stdin is not None
        assert process.stdout is not None
        assert process.stderr is not None

        state = _StreamState()
        await asyncio.gather(
            _write_stdin(process.stdin, prompt),
            _read_stdout(process.stdout, state),
            _read_stderr(process.stderr, state, on_event),
        )
        returncode = await process.wait()

        if returncode != 0:
            stderr_tail = _strip_ansi("\n".join(state.stderr_lines[-_TAIL_LINES:])).strip()
            stdout_tail = _strip_ansi("\n".join(state.plain_lines[-_TAIL_LINES:])).strip()
            message = (
                stderr_tail or state.agent_error or stdout_tail or f"runner exited ({returncode})"
            )
            raise RunnerError(message, transient=False)

        content = state.agent_text
        if content is None:
            content = "\n".join(state.plain_lines)
        usage = state.usage or extract_usage(
            stdout="\n".join(state.plain_lines),
            stderr="\n".join(state.stderr_lines),
        )
        return RunnerResult(content=content.strip(), usage=usage)


class _StreamState:
    def __init__(self) -> None:
        self.agent_text: str | None = None
        self.agent_error: str | None = None
        self.usage: Usage | None = None
        self.plain_lines: list[str] = []
        self.stderr_lines: list[str] = []
        self.device_sent = False


def build_run_args(*, command_template: str, prompt: str, prompt_file: Path) -> list[str]:
    """Render the command template into argv (POSIX quoting)."""

    stripped = command_template.strip()
    if not stripped:
        raise RunnerError("Runner command template is empty.", transient=False)
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise RunnerError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise RunnerError("Runner command template rendered empty command.", transient=False)
    return argv


def parse_device_info(text: str) -> DeviceEvent | None:
    """Find a device-login verification url and user code in runner output."""

    url_match = _URL.search(text)
    code_match = _DEVICE_CODE.search(text)
    if url_match is None or code_match is None:
        return None
    return DeviceEvent(url=url_match.group(0), code=code_match.group(0))


async def _write_stdin(stream: asyncio.StreamWriter, prompt: str) -> None:
    try:
        stream.write(prompt.encode("utf-8"))
        await stream.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Runner closed stdin before reading the whole prompt")
    finally:
        stream.close()


async def _read_stdout(stream: asyncio.StreamReader, state: _StreamState) -> None:
    async for raw in stream:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            state.plain_lines.append(line)
            continue
        if not isinstance(payload, dict):
            state.plain_lines.append(line)
            continue
        _apply_agent_event(payload, state)


def _apply_agent_event(payload: dict[str, object], state: _StreamState) -> None:
    event_type = payload.get("type")
    item = payload.get("item")
    if event_type == "item.completed" and isinstance(item, dict):
        if item.get("type") == "agent_message":
            state.agent_text = str(item.get("text") or "")
    elif event_type == "error" and isinstance(payload.get("message"), str):
        state.agent_error = str(payload["message"]).strip() or state.agent_error
    elif event_type == "turn.failed" and isinstance(payload.get("error"), dict):
        message = payload["error"].get("message")  # type: ignore[union-attr]
        if isinstance(message, str) and message.strip():
            state.agent_error = message.strip()
    elif event_type == "turn.completed":
        usage = usage_from_json_event(payload)
        if usage is not None:
            state.usage = usage


async def _read_stderr(
    stream: asyncio.StreamReader,
    state: _StreamState,
    on_event: EventSink,
) -> None:
    async for raw in stream:
        line = _strip_ansi(raw.decode("utf-8", errors="replace")).rstrip()
        if not line:
            continue
        state.stderr_lines.append(line)
        await on_event(LogEvent(text=line, stream="stderr"))
        if not state.device_sent:
            device = parse_device_info("\n".join(state.stderr_lines[-_TAIL_LINES:]))
            if device is not None:
                state.device_sent = True
                await on_event(device)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=2)
    except TimeoutError:
        logger.warning("Runner process %s ignored SIGTERM; killing", process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


def _strip_ansi(text: str) -> str:
    return _ANSI.sub("", text)
