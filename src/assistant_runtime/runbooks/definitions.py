"""File-backed runbook definitions.

A runbook is a markdown file with an optional ``---`` frontmatter header::

    ---
    id: inbox-sweep
    every_minutes: 30
    accounts: [work]
    ---
    Look for emails that need a reply...

The header is YAML; a header that does not parse to a mapping is ignored.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/London"
DEFAULT_ACCOUNTS = ("work", "personal")
DEFAULT_CURSOR_STRATEGY = "gmail_history_id"


class RunbookNotFoundError(LookupError):
    """Raised when a runbook id is not present in the definition source."""

    def __init__(self, runbook_id: str) -> None:
        super().__init__(f"Runbook not found: {runbook_id}")
        self.runbook_id = runbook_id


@dataclass(slots=True)
class RunbookDefinition:
    """Normalized runbook definition; read-only input to the scheduler."""

    id: str
    body: str
    enabled: bool = True
    every_minutes: int | None = None
    accounts: list[str] = field(default_factory=lambda: list(DEFAULT_ACCOUNTS))
    timezone: str = DEFAULT_TIMEZONE
    cursor_strategy: str = DEFAULT_CURSOR_STRATEGY
    title: str = ""
    path: Path | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def display_title(self) -> str:
        return self.title or self.id


class RunbookSource(Protocol):
    def list(self) -> list[RunbookDefinition]: ...


class FileRunbookSource:
    """Load ``*.md`` runbooks from one directory, sorted by file name."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def list(self) -> list[RunbookDefinition]:
        if not self.directory.is_dir():
            return []
        definitions: list[RunbookDefinition] = []
        for path in sorted(self.directory.glob("*.md"), key=lambda item: item.name):
            try:
                raw = path.read_text("utf-8")
            except OSError as error:
                logger.warning("Skipping unreadable runbook %s: %s", path, error)
                continue
            definitions.append(load_definition(raw, fallback_id=path.stem, path=path))
        return definitions

    def get(self, runbook_id: str) -> RunbookDefinition:
        for definition in self.list():
            if definition.id == runbook_id:
                return definition
        raise RunbookNotFoundError(runbook_id)

    def update_frontmatter(self, runbook_id: str, patch: dict[str, Any]) -> RunbookDefinition:
        """Merge ``patch`` into the runbook's header and rewrite the file."""

        definition = self.get(runbook_id)
        if definition.path is None:
            raise RunbookNotFoundError(runbook_id)
        raw = definition.path.read_text("utf-8")
        updated = update_frontmatter(raw, patch)
        definition.path.write_text(updated, "utf-8")
        return load_definition(updated, fallback_id=definition.path.stem, path=definition.path)


def load_definition(raw: str, *, fallback_id: str, path: Path | None = None) -> RunbookDefinition:
    meta, body = parse_runbook_markdown(raw)
    runbook_id = str(meta.get("id") or fallback_id).strip() or fallback_id
    return RunbookDefinition(
        id=runbook_id,
        body=body,
        enabled=_normalize_bool(meta.get("enabled"), fallback=True),
        every_minutes=_normalize_positive_int(
            _first_present(meta, "every_minutes", "everyMinutes", "every"),
        ),
        accounts=normalize_accounts(_first_present(meta, "accounts", "account")),
        timezone=str(meta.get("timezone") or "").strip() or DEFAULT_TIMEZONE,
        cursor_strategy=str(meta.get("cursor_strategy") or "").strip() or DEFAULT_CURSOR_STRATEGY,
        title=str(meta.get("title") or "").strip(),
        path=path,
        meta=meta,
    )


def parse_runbook_markdown(text: str) -> tuple[dict[str, Any], str]:
    """Split ``text`` into (frontmatter dict, body)."""

    if not (text.startswith("---\n") or text.startswith("---\r\n")):
        return {}, text
    end = text.find("\n---", 3)
    if end == -1:
        return {}, text
    after = text.find("\n", end + 1)
    if after == -1:
        return parse_frontmatter(text[4:end].strip()), ""
    return parse_frontmatter(text[4:end].strip()), text[after + 1 :]


def parse_frontmatter(text: str) -> dict[str, Any]:
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as error:
        logger.warning("Ignoring malformed runbook frontmatter: %s", error)
        return {}
    if not isinstance(loaded, dict):
        return {}
    return {str(key): value for key, value in loaded.items()}


def update_frontmatter(raw: str, patch: dict[str, Any]) -> str:
    """Return ``raw`` with its header replaced by the merged, key-sorted header.

    Keys patched to ``None`` are dropped from the header.
    """

    meta, body = parse_runbook_markdown(raw)
    merged = {
        key: list(value) if isinstance(value, tuple) else value
        for key, value in {**meta, **patch}.items()
        if value is not None
    }
    header = yaml.safe_dump(merged, sort_keys=True, allow_unicode=True, default_flow_style=False)
    return f"---\n{header}---\n{body}"


def normalize_accounts(value: Any) -> list[str]:
    """Lower-case account keys; ``both``/``all`` expand to work + personal."""

    if value is None or value == "":
        return list(DEFAULT_ACCOUNTS)
    items = value if isinstance(value, list) else [value]
    accounts: list[str] = []
    for item in items:
        key = str(item or "").strip().lower()
        expanded = list(DEFAULT_ACCOUNTS) if key in {"both", "all"} else [key]
        for account in expanded:
            if account in DEFAULT_ACCOUNTS and account not in accounts:
                accounts.append(account)
    return accounts or list(DEFAULT_ACCOUNTS)


def _first_present(meta: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if meta.get(key) is not None:
            return meta[key]
    return None


def _normalize_bool(value: Any, *, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value if value is not None else "").strip().lower()
    if text == "true":
        return True
    if text == "false":
        return False
    return fallback


def _normalize_positive_int(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return int(number)
