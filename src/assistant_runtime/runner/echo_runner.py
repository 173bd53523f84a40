"""Deterministic runner for local development and tests."""

from __future__ import annotations

import json
import re

from assistant_runtime.runner.base import EventSink, RunnerResult
from assistant_runtime.tasks.events import LogEvent, Usage

_CURSOR_LINE = re.compile(r"^Cursor \(json\):\s*(.*)$", re.MULTILINE)


class EchoRunner:
    """Echo the prompt back without calling any model.

    Runbook envelopes get an empty ``triage`` block that keeps the current
    cursor, so scheduled runs complete successfully and change nothing.
    """

    async def invoke(self, prompt: str, on_event: EventSink) -> RunnerResult:
        await on_event(LogEvent(text=f"echo runner received {len(prompt)} chars"))
        usage = Usage(input_tokens=len(prompt.split()), output_tokens=0)

        cursor_match = _CURSOR_LINE.search(prompt)
        if prompt.startswith("Runbook:") and cursor_match is not None:
            try:
                cursor = json.loads(cursor_match.group(1) or "{}")
            except json.JSONDecodeError:
                cursor = {}
            body = json.dumps({"cursor": cursor, "items": []}, sort_keys=True)
            return RunnerResult(content=f"No new items.\n\n```triage\n{body}\n```", usage=usage)

        last_line = next(
            (line.strip() for line in reversed(prompt.splitlines()) if line.strip()),
            "",
        )
        return RunnerResult(content=f"Echo: {last_line}", usage=usage)
