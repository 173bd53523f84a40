"""Usage extraction helpers for runner output streams."""

from __future__ import annotations

import json
import re
from typing import Any

from assistant_runtime.tasks.events import Usage

_INPUT_TOKENS = re.compile(r"(?:input|prompt)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_CACHED_INPUT_TOKENS = re.compile(r"cached[_ ]input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)


def usage_from_json_event(event: dict[str, Any]) -> Usage | None:
    """Read usage from a ``turn.completed``-style JSON line, if present."""

    raw = event.get("usage")
    if not isinstance(raw, dict):
        return None
    input_tokens = _coerce_int(raw.get("input_tokens", raw.get("prompt_tokens")))
    output_tokens = _coerce_int(raw.get("output_tokens", raw.get("completion_tokens")))
    cached = _coerce_int(raw.get("cached_input_tokens"))
    if input_tokens is None and output_tokens is None and cached is None:
        return None
    return Usage(
        input_tokens=input_tokens or 0,
        cached_input_tokens=cached or 0,
        output_tokens=output_tokens or 0,
    )


def extract_usage(*, stdout: str, stderr: str) -> Usage | None:
    """Best-effort usage extraction from JSON lines first, then plain text."""

    for text in (stdout, stderr):
        for line in text.splitlines():
            stripped = line.strip()
            if not stripped.startswith("{"):
                continue
            try:
                payload = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                usage = usage_from_json_event(payload)
                if usage is not None:
                    return usage

    input_tokens: int | None = None
    cached: int | None = None
    output_tokens: int | None = None
    for text in (stderr, stdout):
        if cached is None:
            cached = _extract_int(_CACHED_INPUT_TOKENS, text)
        if input_tokens is None:
            input_tokens = _extract_int(_INPUT_TOKENS, _strip_cached(text))
        if output_tokens is None:
            output_tokens = _extract_int(_OUTPUT_TOKENS, text)

    if input_tokens is None and output_tokens is None and cached is None:
        return None
    return Usage(
        input_tokens=input_tokens or 0,
        cached_input_tokens=cached or 0,
        output_tokens=output_tokens or 0,
    )


def _strip_cached(text: str) -> str:
    return _CACHED_INPUT_TOKENS.sub("", text)


def _coerce_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float):
        return max(0, int(value))
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)
