"""
Configuration management using Pydantic Settings.
Every field can be overridden with a ``TASKGRID_`` environment variable.
"""
import logging
import math
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskgrid.exceptions import CircuitBreakerConfig, RetryConfig
from taskgrid.interfaces.worker import CostTier


class Settings(BaseSettings):
    """Orchestrator settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="TASKGRID_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Budget
    budget_ceiling: float = Field(default=100.0, ge=0.0, allow_inf_nan=False, description="Budget ceiling per orchestrator")
    allow_budget_overage: bool = Field(default=False, description="Allow reservations past the ceiling")
    tier_costs: Dict[CostTier, float] = Field(
        default_factory=lambda: {CostTier.LOW: 1.0, CostTier.MEDIUM: 5.0, CostTier.HIGH: 20.0},
        description="Default estimated cost per tier",
    )

    # Dispatch
    default_timeout: float = Field(default=300.0, gt=0.0, description="Timeout for tasks without one")
    grace_period: float = Field(default=5.0, ge=0.0, description="Seconds a cancelled worker gets to stop")
    idle_poll_interval: float = Field(default=0.5, gt=0.0, description="Max wait between scheduler cycles")
    max_global_concurrency: Optional[int] = Field(default=None, ge=1, description="Cap on in-flight dispatches")
    starvation_timeout_cycles: Optional[int] = Field(
        default=None, ge=1, description="Cycles a ready task may wait for a worker"
    )
    fail_fast: bool = Field(default=False, description="End the run on the first permanent task failure")

    # Retry
    max_retries: int = Field(default=3, ge=0, description="Retries for tasks without their own limit")
    retry_initial_delay_ms: int = Field(default=100, ge=0, description="First backoff delay")
    retry_max_delay_ms: int = Field(default=10000, ge=0, description="Backoff cap")
    retry_exponential_base: float = Field(default=2.0, ge=1.0, description="Backoff growth factor")
    retry_jitter: bool = Field(default=True, description="Add up to 25% random jitter to backoff")

    # Events
    event_buffer_size: int = Field(default=1000, ge=1, description="Recent events kept in memory")
    event_queue_size: int = Field(default=256, ge=1, description="Per-subscriber queue bound")

    # Circuit Breaker
    circuit_breaker_enabled: bool = Field(default=True, description="Enable per-worker circuit breakers")
    circuit_breaker_failure_threshold: int = Field(default=5, ge=1, description="Failures before opening")
    circuit_breaker_recovery_timeout: float = Field(default=60.0, gt=0.0, description="Seconds before half-open")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("tier_costs")
    @classmethod
    def validate_tier_costs(cls, v: Dict[CostTier, float]) -> Dict[CostTier, float]:
        """Every tier cost must be a finite, non-negative number."""
        for tier, cost in v.items():
            if not math.isfinite(cost) or cost < 0:
                raise ValueError(f"Tier cost for {tier.value} must be finite and non-negative")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        allowed = ["json", "text"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v_lower

    def get_log_level(self) -> int:
        """Get logging level as integer."""
        return getattr(logging, self.log_level)

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay_ms=self.retry_initial_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            exponential_base=self.retry_exponential_base,
            jitter=self.retry_jitter,
        )

    def circuit_breaker_config(self) -> Optional[CircuitBreakerConfig]:
        """Breaker config for the registry, or None when breakers are off."""
        if not self.circuit_breaker_enabled:
            return None
        return CircuitBreakerConfig(
            failure_threshold=self.circuit_breaker_failure_threshold,
            recovery_timeout_sec=self.circuit_breaker_recovery_timeout,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Orchestrator settings
    """
    return Settings()
