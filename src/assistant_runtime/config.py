"""Runtime configuration for the task runtime, scheduler and API."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from assistant_runtime.runner.pricing import TokenPricing, parse_rate

RUNNER_NAMES = ("echo", "cli")


@dataclass(slots=True)
class SchedulerSettings:
    """Runbook scheduler settings."""

    enabled: bool = True
    tick_seconds: float = 15.0
    feedback_window: int = 40


@dataclass(slots=True)
class RunnerSettings:
    """Which runner answers prompts and how it is invoked."""

    name: str = "echo"
    command_template: str = ""
    timeout_seconds: float = 600.0
    pricing: TokenPricing = field(default_factory=TokenPricing)


@dataclass(slots=True)
class FanoutSettings:
    """Server-sent events delivery settings."""

    poll_seconds: float = 1.0
    batch_limit: int = 500


@dataclass(slots=True)
class WorkerSettings:
    """Chat worker settings."""

    poll_seconds: float = 1.0
    kinds: tuple[str, ...] = ("chat_run",)


@dataclass(slots=True)
class ApiSettings:
    host: str = "127.0.0.1"
    port: int = 8787


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".assistant_runtime.db")
    runbooks_dir: Path = Path("runbooks")
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    fanout: FanoutSettings = field(default_factory=FanoutSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("ASSISTANT_DB_PATH", ".assistant_runtime.db")),
            runbooks_dir=Path(os.getenv("ASSISTANT_RUNBOOKS_DIR", "runbooks")),
            scheduler=SchedulerSettings(
                enabled=_env_bool("ASSISTANT_SCHEDULER_ENABLED", default=True),
                tick_seconds=float(os.getenv("ASSISTANT_SCHEDULER_TICK_SECONDS", "15")),
                feedback_window=int(os.getenv("ASSISTANT_FEEDBACK_WINDOW", "40")),
            ),
            runner=RunnerSettings(
                name=os.getenv("ASSISTANT_RUNNER", "echo").strip().lower(),
                command_template=os.getenv("ASSISTANT_RUNNER_COMMAND", ""),
                timeout_seconds=float(os.getenv("ASSISTANT_RUNNER_TIMEOUT_SECONDS", "600")),
                pricing=TokenPricing(
                    input_per_1k=parse_rate(os.getenv("ASSISTANT_USD_PER_1K_INPUT")),
                    output_per_1k=parse_rate(os.getenv("ASSISTANT_USD_PER_1K_OUTPUT")),
                    cached_input_per_1k=parse_rate(
                        os.getenv("ASSISTANT_USD_PER_1K_CACHED_INPUT"),
                    ),
                ),
            ),
            fanout=FanoutSettings(
                poll_seconds=float(os.getenv("ASSISTANT_SSE_POLL_SECONDS", "1.0")),
                batch_limit=int(os.getenv("ASSISTANT_SSE_BATCH_LIMIT", "500")),
            ),
            worker=WorkerSettings(
                poll_seconds=float(os.getenv("ASSISTANT_WORKER_POLL_SECONDS", "1.0")),
                kinds=_env_csv("ASSISTANT_WORKER_KINDS", default=("chat_run",)),
            ),
            api=ApiSettings(
                host=os.getenv("ASSISTANT_API_HOST", "127.0.0.1"),
                port=int(os.getenv("ASSISTANT_API_PORT", "8787")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot use."""

        if self.scheduler.tick_seconds <= 0:
            raise ValueError("ASSISTANT_SCHEDULER_TICK_SECONDS must be > 0.")
        if self.scheduler.feedback_window <= 0:
            raise ValueError("ASSISTANT_FEEDBACK_WINDOW must be > 0.")
        if self.runner.name not in RUNNER_NAMES:
            raise ValueError(
                f"ASSISTANT_RUNNER must be one of {', '.join(RUNNER_NAMES)}; "
                f"got {self.runner.name!r}.",
            )
        if self.runner.name == "cli" and not self.runner.command_template.strip():
            raise ValueError("ASSISTANT_RUNNER_COMMAND is required when ASSISTANT_RUNNER=cli.")
        if self.runner.timeout_seconds <= 0:
            raise ValueError("ASSISTANT_RUNNER_TIMEOUT_SECONDS must be > 0.")
        if self.fanout.poll_seconds <= 0:
            raise ValueError("ASSISTANT_SSE_POLL_SECONDS must be > 0.")
        if not 1 <= self.fanout.batch_limit <= 2_000:
            raise ValueError("ASSISTANT_SSE_BATCH_LIMIT must be between 1 and 2000.")
        if self.worker.poll_seconds <= 0:
            raise ValueError("ASSISTANT_WORKER_POLL_SECONDS must be > 0.")
        if not self.worker.kinds:
            raise ValueError("ASSISTANT_WORKER_KINDS must name at least one task kind.")
        if not 0 < self.api.port < 65_536:
            raise ValueError("ASSISTANT_API_PORT must be a valid TCP port.")


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
