"""Token cost estimation for runner usage reports."""

from __future__ import annotations

import math
from dataclasses import dataclass

from assistant_runtime.tasks.events import Usage


@dataclass(slots=True)
class TokenPricing:
    """USD per 1K tokens; ``None`` means the rate is not configured."""

    input_per_1k: float | None = None
    output_per_1k: float | None = None
    cached_input_per_1k: float | None = None

    @property
    def configured(self) -> bool:
        return any(
            rate is not None
            for rate in (self.input_per_1k, self.output_per_1k, self.cached_input_per_1k)
        )


def estimate_cost_usd(usage: Usage | None, pricing: TokenPricing) -> float | None:
    """Estimate cost in USD; ``None`` when no rate is configured.

    Cached input tokens are part of the reported input count, so they are
    billed at the cached rate and subtracted from the uncached remainder.
    """

    if usage is None or not pricing.configured:
        return None

    cached = max(0, usage.cached_input_tokens)
    uncached = max(0, usage.input_tokens - cached)
    cost = 0.0
    if pricing.input_per_1k is not None:
        cost += (uncached / 1000) * pricing.input_per_1k
    if pricing.cached_input_per_1k is not None:
        cost += (cached / 1000) * pricing.cached_input_per_1k
    if pricing.output_per_1k is not None:
        cost += (max(0, usage.output_tokens) / 1000) * pricing.output_per_1k
    return cost


def parse_rate(raw: str | None) -> float | None:
    """Parse one ``USD per 1K`` env value; blank or invalid means unset."""

    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None
