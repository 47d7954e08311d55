"""
Type-safe configuration for Blockflow using Pydantic Settings.

This module provides a centralized, type-safe configuration system
that loads from environment variables and .env files.

Usage:
    from shared.config import config

    if config.failure_policy == FailurePolicy.abort:
        ...
"""
from enum import Enum
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FailurePolicy(str, Enum):
    """What happens to sibling branches when a top-level block fails."""

    drain = "drain"
    abort = "abort"


class BlockflowConfig(BaseSettings):
    """
    Central configuration for Blockflow.

    All configuration is loaded from environment variables (prefixed with
    ``BLOCKFLOW_``) or a .env file. Executors receive an instance explicitly;
    the module-level ``config`` is only the process default.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="BLOCKFLOW_",
        extra="ignore",
        case_sensitive=False,
    )

    # ============================================================================
    # Container defaults
    # ============================================================================

    default_loop_iterations: int = Field(default=5, ge=1, description="Iterations for a 'for' loop without a count")
    default_while_iterations: int = Field(default=1000, ge=1, description="Safety cap for while loops without an explicit cap")
    default_parallel_count: int = Field(default=5, ge=1, description="Branch count for a 'count' parallel without a count")

    loop_max_concurrency_limit: int = Field(default=10, ge=1, description="Upper bound for a loop's maxConcurrency")
    loop_default_concurrency: int = Field(default=1, ge=1, description="Loop maxConcurrency when unset (serial)")
    parallel_max_concurrency_limit: int = Field(default=50, ge=1, description="Upper bound for a parallel's maxConcurrency")
    parallel_default_concurrency: int = Field(default=10, ge=1, description="Parallel maxConcurrency when unset")
    parallel_max_count: int = Field(default=100, ge=1, description="Upper bound for a 'count' parallel's branch count")

    # ============================================================================
    # Execution
    # ============================================================================

    failure_policy: FailurePolicy = Field(
        default=FailurePolicy.drain,
        description="'drain' lets concurrently running siblings finish after a failure; 'abort' stops launching new work",
    )
    execution_timeout_seconds: Optional[float] = Field(
        default=None,
        description="Cancel a top-level run after this many seconds (None disables the timeout)",
    )
    max_wait_seconds: float = Field(default=300.0, ge=0, description="Longest pause a wait block may request")
    strict_references: bool = Field(
        default=False,
        description="Raise on unresolved <block.path>/{{ENV}}/<variable.x> references instead of substituting ''",
    )

    # ============================================================================
    # Logging
    # ============================================================================

    log_level: str = Field(default="INFO", description="Log level for blockflow loggers")

    @model_validator(mode="after")
    def _check_concurrency_defaults(self) -> "BlockflowConfig":
        if self.loop_default_concurrency > self.loop_max_concurrency_limit:
            raise ValueError("loop_default_concurrency cannot exceed loop_max_concurrency_limit")
        if self.parallel_default_concurrency > self.parallel_max_concurrency_limit:
            raise ValueError("parallel_default_concurrency cannot exceed parallel_max_concurrency_limit")
        return self

    @property
    def is_abort_on_failure(self) -> bool:
        """Check whether a failure stops all new work."""
        return self.failure_policy == FailurePolicy.abort

    @property
    def has_timeout(self) -> bool:
        """Check if top-level runs are time limited."""
        return self.execution_timeout_seconds is not None and self.execution_timeout_seconds > 0


# ============================================================================
# Global Config Instance
# ============================================================================

config = BlockflowConfig()
