"""
Shared exception hierarchy for the block graph compiler and executor.
"""

from __future__ import annotations

from typing import Optional


class BlockflowError(Exception):
    """Base class for all compiler and runtime errors."""


class ValidationError(BlockflowError):
    """Raised when the workflow graph fails structural checks before execution."""

    def __init__(
        self,
        message: str,
        *,
        block_id: Optional[str] = None,
        block_type: Optional[str] = None,
        block_name: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.block_id = block_id
        self.block_type = block_type
        self.block_name = block_name


class ResolutionError(BlockflowError):
    """Raised when a variable, environment or tag reference cannot be resolved."""

    def __init__(self, message: str, *, reference: Optional[str] = None) -> None:
        super().__init__(message)
        self.reference = reference


class BlockExecutionError(BlockflowError):
    """Raised when a block behavior fails at runtime."""

    def __init__(
        self,
        message: str,
        *,
        block_id: str,
        container_id: Optional[str] = None,
        iteration: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.block_id = block_id
        self.container_id = container_id
        self.iteration = iteration


class InfrastructureError(BlockflowError):
    """Raised when a load-bearing collaborator (e.g. secret decryption) fails."""


class UsageLimitExceededError(BlockflowError):
    """Raised when the billing collaborator reports the user is over their limit."""


class ExecutionCancelledError(BlockflowError):
    """A run stopped by cancel() or by its timeout."""

    def __init__(self, message: str = "Workflow execution was cancelled") -> None:
        super().__init__(message)
