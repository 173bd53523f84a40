"""Runner invoker protocol and shared result types."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from assistant_runtime.tasks.events import TaskEvent, Usage

EventSink = Callable[[TaskEvent], Awaitable[None]]


class RunnerError(RuntimeError):
    """Runner execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class RunnerResult:
    """Final assistant text plus token usage, when the runner reported it."""

    content: str
    usage: Usage | None = None


class RunnerInvoker(Protocol):
    """Produces assistant output for one prompt.

    Intermediate events (logs, device-login prompts) are handed to ``on_event``
    while the call is in flight; the caller decides where they are stored.
    """

    async def invoke(self, prompt: str, on_event: EventSink) -> RunnerResult: ...
