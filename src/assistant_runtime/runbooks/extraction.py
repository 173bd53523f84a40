"""Best-effort recovery of the structured triage result from runner text."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCES = (
    re.compile(r"```triage\s*(.*?)```", re.DOTALL | re.IGNORECASE),
    re.compile(r"```json\s*(.*?)```", re.DOTALL | re.IGNORECASE),
    re.compile(r"```\s*(.*?)```", re.DOTALL),
)


def sanitize_json_text(text: str) -> str:
    """Drop BOMs and turn JS line/paragraph separators into newlines."""

    return text.replace("\ufeff", "").replace("\u2028", "\n").replace("\u2029", "\n").strip()


def parse_triage_output(text: str) -> dict[str, Any] | None:
    """Return the JSON object the runner produced, or ``None``.

    The candidate is the first ``triage`` fence, else the first ``json`` fence,
    else any fence, else the whole text when it starts with ``{``. A candidate
    that is not valid JSON is retried on its first balanced ``{...}`` span.
    """

    sanitized = sanitize_json_text(text or "")
    candidate: str | None = None
    for pattern in _FENCES:
        match = pattern.search(sanitized)
        if match is not None:
            candidate = match.group(1)
            break
    if candidate is None and sanitized.startswith("{"):
        candidate = sanitized
    if candidate is None:
        return None

    raw = sanitize_json_text(candidate)
    if not raw:
        return None
    parsed = _try_load_dict(raw)
    if parsed is not None:
        return parsed
    extracted = extract_first_json_object(raw)
    if extracted is None:
        return None
    return _try_load_dict(extracted)


def extract_first_json_object(text: str) -> str | None:
    """Slice out the first brace-balanced object, ignoring braces in strings."""

    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1].strip()
    return None


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
