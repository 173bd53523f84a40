"""Prompt envelope for scheduled runbook runs."""

from __future__ import annotations

import json
from collections import Counter
from typing import Any

from assistant_runtime.runbooks.definitions import RunbookDefinition
from assistant_runtime.runbooks.models import TriageFeedback

FEEDBACK_TOP_KINDS = 6
FEEDBACK_EXAMPLES = 8

_OUTPUT_CONTRACT = """\
You are running as a scheduled background job.
- Do NOT perform side-effect actions.
- You MAY read/query external data.
- If the runbook includes commands to query data, you MUST run them (do not just describe them).
- Produce triage items as ONE item per actionable thing.

Output ONLY a fenced code block tagged `triage` with JSON shaped exactly like:
{
  "cursor": { ... },
  "items": [
    {
      "kind": "quick_read" | "next_action",
      "priority": 0,
      "confidence_pct": 0,
      "title": "short title",
      "summary_md": "markdown body",
      "source_key": "stable unique key",
      "source": { "gmail": { "account": "work|personal", "messageId": "...", "threadId": "..." } }
    }
  ]
}

Guidance:
- `priority`: perceived urgency/importance (0=low, 1=normal, 2=high, 3=urgent).
- `confidence_pct`: how sure you are this is exactly what the user would do next.

If there is nothing to triage, output items: [] and still update cursor if available.
"""


def summarize_feedback(feedback: list[TriageFeedback]) -> str:
    """Counts by kind (most common first) followed by a few literal examples.

    ``feedback`` is expected newest first; an empty list yields ``""``.
    """

    if not feedback:
        return ""
    counts = Counter(entry.kind for entry in feedback)
    head = "\n".join(f"- {kind}: {count}" for kind, count in counts.most_common(FEEDBACK_TOP_KINDS))

    examples: list[str] = []
    for entry in feedback[:FEEDBACK_EXAMPLES]:
        title = (entry.item_title or "").strip()
        reason = (entry.reason or "").strip()
        outcome = (entry.outcome or "").strip()
        bits = [
            entry.kind.strip(),
            f"“{title}”" if title else "",
            f"reason={reason}" if reason else "",
            f"outcome={outcome}" if outcome else "",
        ]
        examples.append("- " + " · ".join(bit for bit in bits if bit))
    return f"{head}\n\nExamples:\n" + "\n".join(examples)


def build_prompt_envelope(
    *,
    runbook: RunbookDefinition,
    account_key: str,
    cursor: dict[str, Any] | None,
    feedback_text: str = "",
) -> str:
    """Deterministic envelope: header, feedback, instructions, output contract."""

    cursor_json = json.dumps(cursor or {}, ensure_ascii=False, separators=(",", ":"))
    parts = [
        f"Runbook: {runbook.id}\n",
        f"Account: {account_key}\n",
        f"Cursor (json): {cursor_json}\n\n",
    ]
    if feedback_text.strip():
        parts.append(f"Recent user feedback (for learning):\n{feedback_text.strip()}\n\n")
    parts.append("Instructions (markdown):\n\n")
    parts.append(runbook.body.strip())
    parts.append("\n\n---\n\n")
    parts.append(_OUTPUT_CONTRACT)
    return "".join(parts)
