"""
Collaborators the runtime calls at its extension points: decrypted
environment variables, usage limits and the logging session.

Collaborator methods may be plain functions or coroutines; the runtime awaits
whatever they return when it is awaitable.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    Union,
    runtime_checkable,
)

from blockflow.schema.models import BlockLog, ExecutionResult
from shared.logger import get_logger

if TYPE_CHECKING:
    from blockflow.runtime.executor import Executor

logger = get_logger("blockflow.runtime.services")

MaybeAwaitable = Union[Any, Awaitable[Any]]


@dataclass(frozen=True)
class UsageCheck:
    is_exceeded: bool
    message: str = ""


@runtime_checkable
class EnvironmentProvider(Protocol):
    def get_decrypted_environment_variables(self, user_id: str) -> MaybeAwaitable:
        ...


@runtime_checkable
class UsageLimiter(Protocol):
    def check_usage_limits(self, user_id: str) -> MaybeAwaitable:
        ...


@runtime_checkable
class LoggingSession(Protocol):
    def start(self, *, execution_id: str, workflow_id: Optional[str], user_id: Optional[str], trigger: str) -> MaybeAwaitable:
        ...

    def setup_executor(self, executor: "Executor") -> MaybeAwaitable:
        ...

    def record_block(self, log: BlockLog) -> MaybeAwaitable:
        ...

    def complete(self, result: ExecutionResult) -> MaybeAwaitable:
        ...

    def complete_with_error(self, error: str, result: Optional[ExecutionResult] = None) -> MaybeAwaitable:
        ...


class NullLoggingSession:
    """Logging session that records nothing."""

    def start(self, **kwargs: Any) -> None:
        return None

    def setup_executor(self, executor: "Executor") -> None:
        return None

    def record_block(self, log: BlockLog) -> None:
        return None

    def complete(self, result: ExecutionResult) -> None:
        return None

    def complete_with_error(self, error: str, result: Optional[ExecutionResult] = None) -> None:
        return None


@dataclass
class InMemoryLoggingSession:
    """Keeps every session call in memory; handy for tests and the CLI."""

    started: Optional[Dict[str, Any]] = None
    block_logs: List[BlockLog] = field(default_factory=list)
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None
    executor_attached: bool = False

    def start(self, **kwargs: Any) -> None:
        self.started = dict(kwargs)

    def setup_executor(self, executor: "Executor") -> None:
        self.executor_attached = True

    def record_block(self, log: BlockLog) -> None:
        self.block_logs.append(log)

    def complete(self, result: ExecutionResult) -> None:
        self.result = result

    def complete_with_error(self, error: str, result: Optional[ExecutionResult] = None) -> None:
        self.error = error
        self.result = result


@dataclass(frozen=True)
class StaticEnvironmentProvider:
    """Serves environment variables from a mapping of user id → variables."""

    variables_by_user: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    def get_decrypted_environment_variables(self, user_id: str) -> Dict[str, str]:
        return dict(self.variables_by_user.get(user_id, {}))


class UnlimitedUsage:
    def check_usage_limits(self, user_id: str) -> UsageCheck:
        return UsageCheck(is_exceeded=False)


async def maybe_await(value: MaybeAwaitable) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def call_safely(description: str, fn: Callable[..., MaybeAwaitable], *args: Any, **kwargs: Any) -> Tuple[bool, Any]:
    """
    Call an observability collaborator. Failures are logged and reported as
    ``(False, None)``; they never reach the caller.
    """

    try:
        return True, await maybe_await(fn(*args, **kwargs))
    except Exception:
        logger.exception("Logging session %s failed; continuing without it", description)
        return False, None

