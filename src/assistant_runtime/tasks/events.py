"""Tagged task-event payloads.

Each variant serializes to a JSON object whose ``type`` key names the variant;
``parse_event`` is the inverse.  Unknown ``type`` values survive a round trip
as :class:`ExtensionEvent` so newer producers do not break older readers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


@dataclass(frozen=True, slots=True)
class StatusEvent:
    stage: str

    type: ClassVar[str] = "status"
    terminal: ClassVar[bool] = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "stage": self.stage}


@dataclass(frozen=True, slots=True)
class LogEvent:
    text: str
    stream: str = "stdout"

    type: ClassVar[str] = "log"
    terminal: ClassVar[bool] = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "stream": self.stream, "text": self.text}


@dataclass(frozen=True, slots=True)
class DeviceEvent:
    """Device-login prompt (verification url + user code)."""

    url: str
    code: str

    type: ClassVar[str] = "device"
    terminal: ClassVar[bool] = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "url": self.url, "code": self.code}


@dataclass(frozen=True, slots=True)
class Usage:
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "cachedInputTokens": self.cached_input_tokens,
            "outputTokens": self.output_tokens,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Usage:
        return cls(
            input_tokens=_as_int(payload.get("inputTokens")),
            cached_input_tokens=_as_int(payload.get("cachedInputTokens")),
            output_tokens=_as_int(payload.get("outputTokens")),
        )


@dataclass(frozen=True, slots=True)
class UsageEvent:
    usage: Usage
    cost_usd: float | None = None

    type: ClassVar[str] = "usage"
    terminal: ClassVar[bool] = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "usage": self.usage.to_dict(), "costUsd": self.cost_usd}


@dataclass(frozen=True, slots=True)
class AssistantMessageEvent:
    content: str
    message_id: str | None = None
    role: str = "assistant"
    meta: dict[str, Any] = field(default_factory=dict)

    type: ClassVar[str] = "assistant_message"
    terminal: ClassVar[bool] = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": {
                "id": self.message_id,
                "role": self.role,
                "content": self.content,
                "meta": dict(self.meta),
            },
        }


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str

    type: ClassVar[str] = "error"
    terminal: ClassVar[bool] = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message}


@dataclass(frozen=True, slots=True)
class DoneEvent:
    ok: bool
    exit_code: int | None = None

    type: ClassVar[str] = "done"
    terminal: ClassVar[bool] = True

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "ok": self.ok, "exitCode": self.exit_code}


@dataclass(frozen=True, slots=True)
class CanceledEvent:
    reason: str = "canceled"

    type: ClassVar[str] = "canceled"
    terminal: ClassVar[bool] = True

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "reason": self.reason}


@dataclass(frozen=True, slots=True)
class ExtensionEvent:
    """Event kind this module does not model; payload kept verbatim."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)

    terminal: ClassVar[bool] = False

    @property
    def type(self) -> str:
        return self.kind

    def to_dict(self) -> dict[str, Any]:
        return {**self.payload, "type": self.kind}


TaskEvent = (
    StatusEvent
    | LogEvent
    | DeviceEvent
    | UsageEvent
    | AssistantMessageEvent
    | ErrorEvent
    | DoneEvent
    | CanceledEvent
    | ExtensionEvent
)


def parse_event(payload: dict[str, Any]) -> TaskEvent:  # noqa: PLR0911
    """Rebuild a typed event from its JSON object form."""

    kind = str(payload.get("type") or "").strip()
    if kind == StatusEvent.type:
        return StatusEvent(stage=str(payload.get("stage") or ""))
    if kind == LogEvent.type:
        return LogEvent(
            text=str(payload.get("text") or ""),
            stream=str(payload.get("stream") or "stdout"),
        )
    if kind == DeviceEvent.type:
        return DeviceEvent(url=str(payload.get("url") or ""), code=str(payload.get("code") or ""))
    if kind == UsageEvent.type:
        raw_usage = payload.get("usage")
        cost = payload.get("costUsd")
        return UsageEvent(
            usage=Usage.from_dict(raw_usage if isinstance(raw_usage, dict) else {}),
            cost_usd=float(cost) if isinstance(cost, int | float) else None,
        )
    if kind == AssistantMessageEvent.type:
        message = payload.get("message")
        message = message if isinstance(message, dict) else {}
        meta = message.get("meta")
        return AssistantMessageEvent(
            content=str(message.get("content") or ""),
            message_id=message.get("id"),
            role=str(message.get("role") or "assistant"),
            meta=meta if isinstance(meta, dict) else {},
        )
    if kind == ErrorEvent.type:
        return ErrorEvent(message=str(payload.get("message") or ""))
    if kind == DoneEvent.type:
        exit_code = payload.get("exitCode")
        return DoneEvent(
            ok=bool(payload.get("ok")),
            exit_code=exit_code if isinstance(exit_code, int) else None,
        )
    if kind == CanceledEvent.type:
        return CanceledEvent(reason=str(payload.get("reason") or "canceled"))
    extra = {key: value for key, value in payload.items() if key != "type"}
    return ExtensionEvent(kind=kind or "unknown", payload=extra)


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0
