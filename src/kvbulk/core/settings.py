"""
Centralized settings for kvbulk.

Manifesto:
    The adaptive factors that drive bulk operations (initial step, step
    bounds, cooldown bounds, retry budget) are tuning knobs, not constants.
    ``BulkSettings`` gathers them in one validated, cached object that can be
    driven from ``KVBULK_*`` environment variables or a ``.env`` file, and
    every ``BulkOptions`` record starts from it.

Examples:
    >>> from kvbulk.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.initial_step
    100

    Overriding through the environment::

        KVBULK_MAX_STEP=2000 KVBULK_COOLDOWN_MAX=0.5 kvbulk bench

Tags:
    kvbulk, configuration, settings, pydantic, caching, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BulkSettings(BaseSettings):
    """kvbulk centralized configuration.

    All fields can be set via ``KVBULK_*`` environment variables (e.g.
    ``KVBULK_INITIAL_STEP=500``) or through a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="KVBULK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Step sizing ──────────────────────────────────────────────
    initial_step: int = Field(default=100, ge=1, description="Items in the first generation")
    min_step: int = Field(default=1, ge=1, description="Smallest step the controller shrinks to")
    max_step: int = Field(default=10_000, ge=1, description="Largest step the controller grows to")
    grow_factor: float = Field(default=2.0, gt=1.0)
    shrink_factor: float = Field(default=0.5, gt=0.0, lt=1.0)
    generation_budget: float = Field(
        default=5.0, gt=0.0, description="Target duration ceiling of one generation, in seconds"
    )
    max_shrink_retries: int = Field(
        default=16, ge=1, description="Consecutive size/duration failures tolerated on one chunk"
    )

    # ── Write batching ───────────────────────────────────────────
    max_batch_bytes: int = Field(
        default=1_000_000, ge=1, description="Byte cap for one write/insert chunk"
    )

    # ── Cooldown between generations ─────────────────────────────
    cooldown_min: float = Field(default=0.0, ge=0.0)
    cooldown_base: float = Field(default=0.01, gt=0.0)
    cooldown_max: float = Field(default=1.0, ge=0.0)

    # ── Transaction retries ──────────────────────────────────────
    max_retries: int = Field(default=100, ge=0)
    max_retry_elapsed: float | None = Field(default=None, gt=0.0)
    retry_base_delay: float = Field(default=0.01, ge=0.0)
    retry_max_delay: float = Field(default=1.0, ge=0.0)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @model_validator(mode="after")
    def _validate_bounds(self) -> BulkSettings:
        if not self.min_step <= self.initial_step <= self.max_step:
            raise ValueError(
                f"step bounds must satisfy min_step <= initial_step <= max_step "
                f"(got {self.min_step}, {self.initial_step}, {self.max_step})"
            )
        if self.cooldown_min > self.cooldown_max:
            raise ValueError("cooldown_min must not exceed cooldown_max")
        return self


@lru_cache(maxsize=1)
def get_settings() -> BulkSettings:
    """Return the cached process-wide settings."""
    return BulkSettings()


def reset_settings() -> None:
    """Drop the cached settings (tests, reconfiguration)."""
    get_settings.cache_clear()


__all__ = ["BulkSettings", "get_settings", "reset_settings"]
