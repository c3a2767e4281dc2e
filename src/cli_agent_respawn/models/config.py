"""Respawn configuration snapshot."""

from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


class ConfigUpdateError(ValueError):
    """Raised when a configuration update is rejected."""

    pass


class RespawnConfig(BaseModel):
    """Immutable configuration snapshot for one respawn controller.

    A controller reads one snapshot per cycle. Updates never mutate a snapshot;
    ``apply_update`` returns a new one with ``version`` bumped, so a cycle that
    is already running keeps the values it started with.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: int = 0
    enabled: bool = True

    # Timing (milliseconds)
    idle_timeout_ms: int = Field(2000, ge=100, le=600000)
    completion_confirm_ms: int = Field(10000, ge=100, le=60000)
    no_output_timeout_ms: int = Field(30000, ge=1000, le=600000)
    inter_step_delay_ms: int = Field(1000, ge=0, le=60000)
    clear_fallback_ms: int = Field(10000, ge=1000, le=600000)
    init_fallback_ms: Optional[int] = Field(120000, ge=1000, le=3600000)
    init_monitor_ms: int = Field(3000, ge=100, le=60000)

    # Step payloads
    update_prompt: str = Field(
        "update all the docs and CLAUDE.md, then continue with the next task",
        max_length=10000,
    )
    clear_command: Optional[str] = Field("/clear", max_length=200)
    init_command: Optional[str] = Field("/init", max_length=200)
    kickstart_prompt: Optional[str] = Field(None, max_length=10000)
    send_clear: bool = True
    send_init: bool = True

    # Verifiers
    idle_verifier_enabled: bool = True
    idle_verifier_cooldown_ms: int = Field(180000, ge=0, le=3600000)
    idle_verifier_timeout_ms: int = Field(90000, ge=1000, le=300000)
    plan_verifier_enabled: bool = True
    plan_verifier_cooldown_ms: int = Field(30000, ge=0, le=3600000)
    plan_verifier_timeout_ms: int = Field(60000, ge=1000, le=300000)
    max_consecutive_verifier_errors: int = Field(3, ge=1, le=100)

    # Plan mode auto-accept
    auto_accept_prompts: bool = True
    auto_accept_delay_ms: int = Field(8000, ge=100, le=60000)

    # Skip /clear while the context is still small
    skip_clear_when_low_context: bool = False
    skip_clear_threshold_tokens: int = Field(50000, ge=0)

    # Adaptive idle confirmation window, learned from recent cycles
    adaptive_timing_enabled: bool = False
    adaptive_min_confirm_ms: int = Field(5000, ge=100, le=60000)
    adaptive_max_confirm_ms: int = Field(30000, ge=100, le=60000)

    @model_validator(mode="after")
    def check_adaptive_bounds(self) -> "RespawnConfig":
        if self.adaptive_min_confirm_ms > self.adaptive_max_confirm_ms:
            raise ValueError("adaptive_min_confirm_ms must not exceed adaptive_max_confirm_ms")
        return self

    @classmethod
    def updatable_fields(cls) -> set:
        """Fields accepted by ``apply_update``."""
        return set(cls.model_fields) - {"version"}

    def apply_update(self, update: Mapping[str, Any]) -> "RespawnConfig":
        """Return a new snapshot with ``update`` applied.

        Omitted fields keep their previous value. Unknown fields and values
        that fail validation raise ConfigUpdateError.
        """
        unknown = set(update) - self.updatable_fields()
        if unknown:
            raise ConfigUpdateError(f"Unknown config fields: {', '.join(sorted(unknown))}")

        merged = self.model_dump()
        merged.update(update)
        merged["version"] = self.version + 1
        try:
            return RespawnConfig.model_validate(merged)
        except ValidationError as e:
            raise ConfigUpdateError(f"Invalid config update: {e}") from e
