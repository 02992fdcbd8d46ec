"""Configuration record accepted by every bulk operation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kvbulk.core.errors import ConfigError
from kvbulk.core.settings import BulkSettings, get_settings
from kvbulk.execution.generation import StepPolicy
from kvbulk.execution.retry import ExponentialBackoff, RetryPolicy


@dataclass
class BulkOptions:
    """Per-call tuning of a bulk operation.

    ``None`` means "use the value from :class:`BulkSettings`".

    Attributes:
        initial_step: Items in the first generation
        min_step: Step floor
        max_step: Step ceiling
        batch_count: Fixed step override; disables growth past this value
        max_batch_bytes: Byte cap for one write/insert chunk
        progress: Called with the cumulative item count after each committed
            generation (and once with 0 before the first)
        cooldown_min: Cooldown floor, seconds
        cooldown_max: Cooldown ceiling, seconds
        generation_budget: Target duration of one generation, seconds
        max_retries: Internal retry budget per generation
        idempotent: Declare that effects may safely be applied twice, which
            allows retrying commits with an unknown outcome
    """

    initial_step: int | None = None
    min_step: int | None = None
    max_step: int | None = None
    batch_count: int | None = None
    max_batch_bytes: int | None = None
    progress: Callable[[int], Any] | None = None
    cooldown_min: float | None = None
    cooldown_max: float | None = None
    generation_budget: float | None = None
    max_retries: int | None = None
    idempotent: bool = False

    def __post_init__(self) -> None:
        if self.batch_count is not None and self.batch_count < 1:
            raise ConfigError("batch_count must be >= 1")
        if self.max_batch_bytes is not None and self.max_batch_bytes < 1:
            raise ConfigError("max_batch_bytes must be >= 1")

    @classmethod
    def from_settings(cls, settings: BulkSettings | None = None, **overrides: Any) -> BulkOptions:
        """Options with every tunable filled from ``settings``."""
        settings = settings or get_settings()
        values = {
            "initial_step": settings.initial_step,
            "min_step": settings.min_step,
            "max_step": settings.max_step,
            "max_batch_bytes": settings.max_batch_bytes,
            "cooldown_min": settings.cooldown_min,
            "cooldown_max": settings.cooldown_max,
            "generation_budget": settings.generation_budget,
            "max_retries": settings.max_retries,
        }
        values.update(overrides)
        return cls(**values)

    def step_policy(self, settings: BulkSettings | None = None) -> StepPolicy:
        settings = settings or get_settings()
        base = StepPolicy.from_settings(settings)
        max_step = self.max_step if self.max_step is not None else base.max_step
        initial = self.initial_step if self.initial_step is not None else min(base.initial_step, max_step)
        min_step = self.min_step if self.min_step is not None else min(base.min_step, initial)
        cooldown_min = self.cooldown_min if self.cooldown_min is not None else base.cooldown_min
        cooldown_max = self.cooldown_max if self.cooldown_max is not None else max(base.cooldown_max, cooldown_min)
        policy = StepPolicy(
            initial_step=initial,
            min_step=min_step,
            max_step=max_step,
            grow_factor=base.grow_factor,
            shrink_factor=base.shrink_factor,
            generation_budget=(
                self.generation_budget if self.generation_budget is not None else base.generation_budget
            ),
            cooldown_min=cooldown_min,
            cooldown_base=base.cooldown_base,
            cooldown_max=cooldown_max,
            max_shrink_retries=base.max_shrink_retries,
        )
        if self.batch_count is not None:
            policy = policy.pinned(self.batch_count)
        return policy

    def retry_policy(self, settings: BulkSettings | None = None) -> RetryPolicy:
        settings = settings or get_settings()
        return RetryPolicy(
            strategy=ExponentialBackoff(
                max_retries=self.max_retries if self.max_retries is not None else settings.max_retries,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            max_elapsed=settings.max_retry_elapsed,
        )

    def batch_bytes(self, settings: BulkSettings | None = None) -> int:
        if self.max_batch_bytes is not None:
            return self.max_batch_bytes
        return (settings or get_settings()).max_batch_bytes


__all__ = ["BulkOptions"]
