"""
Run orchestration: everything that happens around a single Executor run.

``run_workflow`` checks usage limits, decrypts environment variables, opens
the logging session, compiles the persisted workflow state and executes it.
Callers always get an ExecutionResult back; refusals and compile errors come
back as failed results rather than exceptions.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional
import uuid

from blockflow.compiler.merge import merge_subblock_state
from blockflow.compiler.parse import parse_workflow_state
from blockflow.compiler.serializer import serialize
from blockflow.errors import BlockflowError, InfrastructureError, UsageLimitExceededError, ValidationError
from blockflow.registry.behavior_registry import BehaviorRegistry
from blockflow.registry.block_registry import BlockConfigRegistry
from blockflow.runtime.context import utcnow
from blockflow.runtime.executor import Executor
from blockflow.runtime.services import (
    EnvironmentProvider,
    NullLoggingSession,
    UnlimitedUsage,
    UsageCheck,
    UsageLimiter,
    call_safely,
    maybe_await,
)
from blockflow.schema.models import ExecutionMetadata, ExecutionResult
from shared.config import BlockflowConfig, config
from shared.error_handling import describe_exception
from shared.logger import get_logger

logger = get_logger("blockflow.runtime.execution")


def failed_result(
    error: str,
    *,
    execution_id: str,
    workflow_id: Optional[str] = None,
    started_at=None,
) -> ExecutionResult:
    """A result for a run that never reached block execution."""
    started_at = started_at or utcnow()
    ended_at = utcnow()
    return ExecutionResult(
        success=False,
        error=error,
        total_duration_ms=max((ended_at - started_at).total_seconds() * 1000.0, 0.0),
        metadata=ExecutionMetadata(
            workflow_id=workflow_id,
            execution_id=execution_id,
            started_at=started_at,
            ended_at=ended_at,
        ),
    )


async def check_usage(usage_limiter: UsageLimiter, user_id: str) -> None:
    check = await maybe_await(usage_limiter.check_usage_limits(user_id))
    if isinstance(check, Mapping):
        check = UsageCheck(is_exceeded=bool(check.get("isExceeded")), message=str(check.get("message") or ""))
    if check.is_exceeded:
        raise UsageLimitExceededError(check.message or "Usage limit exceeded")


async def load_environment(environment_provider: Optional[EnvironmentProvider], user_id: str) -> dict:
    if environment_provider is None:
        return {}
    try:
        variables = await maybe_await(environment_provider.get_decrypted_environment_variables(user_id))
    except Exception as exc:
        raise InfrastructureError(f"Failed to decrypt environment variables: {describe_exception(exc)}") from exc
    return dict(variables or {})


async def run_workflow(
    workflow_state: Any,
    *,
    user_id: str,
    initial_input: Any = None,
    workflow_id: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    workflow_variables: Optional[Mapping[str, Any]] = None,
    start_block_id: Optional[str] = None,
    trigger: str = "manual",
    environment_provider: Optional[EnvironmentProvider] = None,
    usage_limiter: Optional[UsageLimiter] = None,
    logging_session: Any = None,
    block_registry: Optional[BlockConfigRegistry] = None,
    behavior_registry: Optional[BehaviorRegistry] = None,
    settings: Optional[BlockflowConfig] = None,
) -> ExecutionResult:
    """
    Compile and execute a persisted workflow for ``user_id``.

    Args:
        workflow_state: WorkflowGraph, mapping or JSON string with ``blocks``/``edges``
        user_id: Owner of the run; used for usage limits and environment variables
        overrides: Run-specific sub-block values (block id → sub-block id → value)
        trigger: Recorded on the logging session ("manual", "api", "schedule", ...)

    Returns:
        ExecutionResult; never raises for refusals, compile errors or block failures.
    """

    settings = settings or config
    execution_id = str(uuid.uuid4())
    started_at = utcnow()
    session = logging_session or NullLoggingSession()

    def refuse(error: BlockflowError) -> ExecutionResult:
        return failed_result(str(error), execution_id=execution_id, workflow_id=workflow_id, started_at=started_at)

    try:
        await check_usage(usage_limiter or UnlimitedUsage(), user_id)
    except UsageLimitExceededError as exc:
        logger.warning("Refusing run for user %s: %s", user_id, exc)
        return refuse(exc)

    try:
        environment_variables = await load_environment(environment_provider, user_id)
    except InfrastructureError as exc:
        logger.error("Aborting run %s before execution: %s", execution_id, exc)
        return refuse(exc)

    await call_safely(
        "start",
        session.start,
        execution_id=execution_id,
        workflow_id=workflow_id,
        user_id=user_id,
        trigger=trigger,
    )

    try:
        graph = parse_workflow_state(workflow_state)
        blocks = merge_subblock_state(graph.blocks, overrides)
        plan = serialize(
            blocks,
            graph.edges,
            graph.loops,
            graph.parallels,
            validate=True,
            whiles=graph.whiles,
            registry=block_registry,
            settings=settings,
        )
        executor = Executor(
            plan,
            behavior_registry=behavior_registry,
            settings=settings,
            logging_session=session,
        )
        result = await executor.execute(
            initial_input,
            environment_variables=environment_variables,
            workflow_variables=workflow_variables,
            start_block_id=start_block_id,
            workflow_id=workflow_id,
            execution_id=execution_id,
        )
    except ValidationError as exc:
        logger.warning("Workflow %s failed validation: %s", workflow_id or "<inline>", exc)
        result = refuse(exc)
        await call_safely("complete_with_error", session.complete_with_error, str(exc), result)
        return result

    if result.success:
        await call_safely("complete", session.complete, result)
    else:
        await call_safely("complete_with_error", session.complete_with_error, result.error or "", result)
    return result
