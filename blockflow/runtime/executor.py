"""
Async executor for compiled execution plans.

Each graph walk (the top level, or one container iteration) schedules blocks
as asyncio tasks. A block becomes eligible once every incoming edge has
settled and at least one of them is live; when all of them settle dead the
block is skipped and the skip propagates downstream. Containers are the
schedulable unit at the top level and run their children as nested walks.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import traceback
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
import uuid

from blockflow.errors import BlockExecutionError, ExecutionCancelledError, ValidationError
from blockflow.expr.evaluator import evaluate_condition
from blockflow.expr.resolver import ContainerFrame, build_block_aliases, render_template, resolve_value
from blockflow.registry.behavior_registry import BehaviorRegistry, BlockInvocation
from blockflow.runtime.containers import (
    ContainerFailure,
    ContainerOutcome,
    IterationOutcome,
    normalize_collection,
    run_bounded,
)
from blockflow.runtime.context import BlockScope, ExecutionContext, utcnow
from blockflow.runtime.paths import (
    COMPLETED,
    FAILED,
    SKIPPED,
    TERMINAL_STATES,
    GraphView,
    build_container_view,
    build_top_level_view,
    enabled_block_index,
    is_container,
    is_link_live,
)
from blockflow.runtime.services import NullLoggingSession, call_safely
from blockflow.runtime.trace_spans import build_trace_spans
from blockflow.schema.jsonschema_adapter import first_validation_error
from blockflow.schema.models import (
    LOOP_BLOCK_TYPE,
    PARALLEL_BLOCK_TYPE,
    BlockLog,
    ExecutionEvent,
    ExecutionMetadata,
    ExecutionPlan,
    ExecutionResult,
    SerializedBlock,
)
from shared.config import BlockflowConfig, config
from shared.error_handling import describe_exception
from shared.logger import get_logger

logger = get_logger("blockflow.runtime.executor")

CANCELLED_MESSAGE = str(ExecutionCancelledError())
STARTER_BLOCK_TYPE = "starter"

PENDING = "pending"
RUNNING = "running"

_STATUS_TO_LOG = {COMPLETED: "success", FAILED: "error", SKIPPED: "skipped"}


@dataclass
class WalkResult:
    status: Dict[str, str] = field(default_factory=dict)
    completion_order: List[str] = field(default_factory=list)
    failure: Optional[BlockExecutionError] = None

    def terminal_output(self, view: GraphView, scope: BlockScope) -> Any:
        sinks = set(view.sinks())
        completed_sinks = [node for node in self.completion_order if node in sinks]
        if len(completed_sinks) == 1:
            return scope.outputs.get(completed_sinks[0])
        if completed_sinks:
            return {node: scope.outputs.get(node) for node in completed_sinks}
        if self.completion_order:
            return scope.outputs.get(self.completion_order[-1])
        return None


class Executor:
    """
    Runs an ExecutionPlan. One executor may serve several sequential runs; the
    per-run state lives in the ExecutionContext created by each call.
    """

    def __init__(
        self,
        plan: ExecutionPlan,
        *,
        behavior_registry: Optional[BehaviorRegistry] = None,
        settings: Optional[BlockflowConfig] = None,
        logging_session: Any = None,
    ) -> None:
        if behavior_registry is None:
            from blockflow.handlers import default_behavior_registry

            behavior_registry = default_behavior_registry()
        self.plan = plan
        self.behavior_registry = behavior_registry
        self.settings = settings or config
        self.logging_session = logging_session or NullLoggingSession()
        self._blocks: Dict[str, SerializedBlock] = enabled_block_index(plan)
        self._context: Optional[ExecutionContext] = None
        self._event_queue: Optional["asyncio.Queue[ExecutionEvent]"] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def cancel(self) -> None:
        """Stop starting new blocks and iterations; in-flight behaviors finish."""
        if self._context is not None and not self._context.cancelled:
            logger.info("Cancelling execution %s", self._context.execution_id)
            self._context.cancel_event.set()

    async def execute(
        self,
        initial_input: Any = None,
        *,
        environment_variables: Optional[Mapping[str, str]] = None,
        workflow_variables: Optional[Mapping[str, Any]] = None,
        start_block_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> ExecutionResult:
        self._check_connections()
        top_view = build_top_level_view(self.plan, self._blocks)
        entries, start_id = self._select_entries(top_view, start_block_id)
        top_view.entries.update(entries)

        ctx = ExecutionContext(
            plan=self.plan,
            execution_id=execution_id or str(uuid.uuid4()),
            settings=self.settings,
            initial_input=initial_input,
            workflow_id=workflow_id,
            environment_variables=dict(environment_variables or {}),
            workflow_variables=dict(workflow_variables or {}),
            block_aliases=build_block_aliases({block.id: block.name for block in self.plan.blocks}),
            start_block_id=start_id,
            events=self._event_queue,
        )
        self._context = ctx
        logger.info(
            "Starting execution %s (%d blocks, entries=%s)",
            ctx.execution_id,
            len(self._blocks),
            entries,
        )
        await call_safely("setup_executor", self.logging_session.setup_executor, self)

        timer: Optional[asyncio.TimerHandle] = None
        if self.settings.has_timeout:
            timer = asyncio.get_running_loop().call_later(self.settings.execution_timeout_seconds, self.cancel)
        top_scope = BlockScope()
        try:
            walk = await self._walk(ctx, top_view, top_scope, in_iteration=False)
        finally:
            if timer is not None:
                timer.cancel()

        result = self._build_result(ctx, top_view, top_scope, walk)
        logger.info(
            "Execution %s finished success=%s duration=%.1fms",
            ctx.execution_id,
            result.success,
            result.total_duration_ms,
        )
        ctx.emit("execution_completed", result=result)
        return result

    async def stream(self, initial_input: Any = None, **kwargs: Any) -> AsyncIterator[ExecutionEvent]:
        """
        Run the plan and yield ExecutionEvents as blocks transition. The last
        event is ``execution_completed`` carrying the ExecutionResult.
        """

        queue: "asyncio.Queue[ExecutionEvent]" = asyncio.Queue()
        self._event_queue = queue
        task = asyncio.create_task(self.execute(initial_input, **kwargs))
        try:
            while True:
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    event = getter.result()
                    yield event
                    if event.type == "execution_completed":
                        break
                    continue
                getter.cancel()
                while not queue.empty():
                    yield queue.get_nowait()
                task.result()
                break
        finally:
            self._event_queue = None
            if not task.done():
                self.cancel()
                await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Contract checks
    # ------------------------------------------------------------------
    def _check_connections(self) -> None:
        known = {block.id for block in self.plan.blocks}
        for connection in self.plan.connections:
            for endpoint in (connection.source, connection.target):
                if endpoint not in known:
                    raise ValidationError(
                        f"Connection {connection.source}->{connection.target} references missing block '{endpoint}'",
                        block_id=endpoint,
                    )

    def _select_entries(self, view: GraphView, start_block_id: Optional[str]) -> Tuple[List[str], Optional[str]]:
        if start_block_id:
            block = self.plan.get_block(start_block_id)
            if block is None:
                raise ValidationError(f"Start block '{start_block_id}' does not exist", block_id=start_block_id)
            if not block.enabled:
                raise ValidationError(f"Start block '{start_block_id}' is disabled", block_id=start_block_id)
            if start_block_id not in view.nodes:
                raise ValidationError(
                    f"Start block '{start_block_id}' is nested inside a container",
                    block_id=start_block_id,
                )
            return [start_block_id], start_block_id

        starters = [node for node in view.nodes if self._blocks[node].type == STARTER_BLOCK_TYPE]
        if starters:
            return starters[:1], starters[0]

        triggers = [
            node
            for node in view.nodes
            if self._blocks[node].trigger_mode or self._blocks[node].category == "triggers"
        ]
        if triggers:
            return triggers, triggers[0]

        roots = [node for node in view.nodes if not view.incoming.get(node)]
        return roots, None

    # ------------------------------------------------------------------
    # Graph walk
    # ------------------------------------------------------------------
    def _readiness(self, node: str, view: GraphView, status: Mapping[str, str], scope: BlockScope) -> str:
        if node in view.entries:
            return "ready"
        links = view.incoming.get(node)
        if not links:
            return "never"
        if any(status.get(link.source) not in TERMINAL_STATES for link in links):
            return "wait"
        live = any(
            is_link_live(
                link,
                status[link.source],
                scope.outputs.get(link.source),
                self._blocks[link.source].type,
            )
            for link in links
        )
        return "ready" if live else "skip"

    async def _walk(
        self,
        ctx: ExecutionContext,
        view: GraphView,
        scope: BlockScope,
        *,
        in_iteration: bool,
    ) -> WalkResult:
        result = WalkResult(status={node: PENDING for node in view.nodes})
        running: Dict["asyncio.Task[Tuple[str, Optional[BlockExecutionError]]]", str] = {}
        stopped = False

        while True:
            progressed = True
            while progressed:
                progressed = False
                for node in view.nodes:
                    if result.status[node] != PENDING:
                        continue
                    readiness = self._readiness(node, view, result.status, scope)
                    if readiness == "skip":
                        result.status[node] = SKIPPED
                        await self._record_skip(ctx, node, scope)
                        progressed = True
                    elif readiness == "ready" and not (stopped or ctx.should_stop()):
                        result.status[node] = RUNNING
                        task = asyncio.create_task(self._execute_node(ctx, node, view, scope))
                        running[task] = node

            if not running:
                break

            done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                node = running.pop(task)
                node_status, failure = task.result()
                result.status[node] = node_status
                if node_status == COMPLETED:
                    result.completion_order.append(node)
                if failure is not None and result.failure is None:
                    result.failure = failure
                    if in_iteration:
                        stopped = True

        return result

    # ------------------------------------------------------------------
    # Single block
    # ------------------------------------------------------------------
    async def _execute_node(
        self,
        ctx: ExecutionContext,
        node: str,
        view: GraphView,
        scope: BlockScope,
    ) -> Tuple[str, Optional[BlockExecutionError]]:
        block = self._blocks[node]
        started_at = utcnow()
        ctx.emit(
            "block_started",
            block_id=block.id,
            container_id=scope.container_id,
            iteration=scope.iteration,
        )
        inputs: Dict[str, Any] = {}

        try:
            if is_container(block):
                output = await self._run_container(ctx, block, scope)
            else:
                inputs, output = await self._invoke_behavior(ctx, block, scope)
        except Exception as exc:
            error = self._as_block_error(exc, block, scope)
            output = exc.partial_output if isinstance(exc, ContainerFailure) else {"error": str(error)}
            scope.outputs[block.id] = output
            stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            handled = view.has_error_path(block.id)
            logger.warning(
                "Block %s (%s) failed%s: %s",
                block.id,
                block.type,
                " (handled by error path)" if handled else "",
                error,
            )
            await self._record_log(ctx, block, scope, FAILED, started_at, inputs, output, str(error), stack)
            ctx.emit(
                "block_failed",
                block_id=block.id,
                container_id=scope.container_id,
                iteration=scope.iteration,
                error=str(error),
            )
            if handled:
                return FAILED, None
            if scope.container_id is None:
                ctx.record_failure(error, output)
            return FAILED, error

        scope.outputs[block.id] = output
        await self._record_log(ctx, block, scope, COMPLETED, started_at, inputs, output)
        ctx.emit(
            "block_completed",
            block_id=block.id,
            container_id=scope.container_id,
            iteration=scope.iteration,
            output=output,
        )
        return COMPLETED, None

    def _as_block_error(self, exc: Exception, block: SerializedBlock, scope: BlockScope) -> BlockExecutionError:
        if isinstance(exc, BlockExecutionError):
            return exc
        message = describe_exception(exc)
        if scope.iteration is not None:
            text = (
                f"Block '{block.id}' failed in iteration {scope.iteration} "
                f"of container '{scope.container_id}': {message}"
            )
        else:
            text = f"Block '{block.id}' failed: {message}"
        return BlockExecutionError(
            text,
            block_id=block.id,
            container_id=scope.container_id,
            iteration=scope.iteration,
        )

    async def _invoke_behavior(
        self,
        ctx: ExecutionContext,
        block: SerializedBlock,
        scope: BlockScope,
    ) -> Tuple[Dict[str, Any], Any]:
        behavior = self.behavior_registry.maybe_get(block.type)
        if behavior is None:
            raise LookupError(f"No behavior registered for block type '{block.type}'")
        resolution = ctx.resolution_for(block, scope)
        params = dict(block.params)
        inputs = resolve_value(resolution, params) if behavior.resolve_inputs else params

        invocation = BlockInvocation(
            block=block,
            execution_id=ctx.execution_id,
            environment_variables=ctx.environment_variables,
            workflow_variables=ctx.workflow_variables,
            initial_input=ctx.initial_input,
            container_id=scope.container_id,
            iteration=scope.iteration,
            settings=ctx.settings,
            resolution=resolution,
        )
        if behavior.async_handler is not None:
            output = await behavior.async_handler(inputs, invocation)
        else:
            output = await asyncio.to_thread(behavior.handler, inputs, invocation)

        if behavior.output_schema:
            problem = first_validation_error(behavior.output_schema, output)
            if problem:
                raise ValueError(f"Output does not match the declared schema: {problem}")
        return inputs, output

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------
    async def _run_container(self, ctx: ExecutionContext, block: SerializedBlock, scope: BlockScope) -> Any:
        view = build_container_view(self.plan, block.id, self._blocks)

        async def run_iteration(frame: ContainerFrame) -> Tuple[IterationOutcome, BlockScope]:
            child_scope = scope.child(frame=frame)
            ctx.emit("iteration_started", block_id=block.id, container_id=block.id, iteration=frame.index)
            walk = await self._walk(ctx, view, child_scope, in_iteration=True)
            if walk.failure is not None:
                return IterationOutcome(frame.index, error=walk.failure), child_scope
            return IterationOutcome(frame.index, output=walk.terminal_output(view, child_scope)), child_scope

        if block.id in self.plan.whiles:
            outcome = await self._run_while(ctx, block, scope, run_iteration)
        else:
            kind, count, items, max_concurrency = self._iteration_plan(ctx, block, scope)
            logger.debug(
                "Container %s (%s) running %d iterations, maxConcurrency=%d",
                block.id,
                kind,
                count,
                max_concurrency,
            )

            async def bounded_iteration(index: int) -> IterationOutcome:
                frame = ContainerFrame(
                    kind=kind,
                    container_id=block.id,
                    index=index,
                    current_item=items[index] if items is not None else None,
                    items=items,
                )
                iteration_outcome, _ = await run_iteration(frame)
                return iteration_outcome

            outcome = await run_bounded(count, max_concurrency, bounded_iteration, ctx.should_stop)

        if outcome.failure is not None:
            raise ContainerFailure(outcome.failure, container_id=block.id, partial_output=outcome.as_output())
        return outcome.as_output()

    def _iteration_plan(
        self, ctx: ExecutionContext, block: SerializedBlock, scope: BlockScope
    ) -> Tuple[str, int, Optional[List[Any]], int]:
        loop = self.plan.loops.get(block.id)
        if loop is not None:
            cap = min(loop.max_concurrency, self.settings.loop_max_concurrency_limit)
            if loop.loop_type == "for":
                return LOOP_BLOCK_TYPE, loop.iterations, None, cap
            items = self._resolve_collection(ctx, block, scope, loop.for_each_items)
            return LOOP_BLOCK_TYPE, len(items), items, cap

        parallel = self.plan.parallels.get(block.id)
        if parallel is None:
            raise ValueError(f"Container '{block.id}' has no loop, parallel or while descriptor")
        cap = min(parallel.max_concurrency, self.settings.parallel_max_concurrency_limit)
        if parallel.parallel_type == "count":
            return PARALLEL_BLOCK_TYPE, min(parallel.count, self.settings.parallel_max_count), None, cap
        items = self._resolve_collection(ctx, block, scope, parallel.distribution)
        return PARALLEL_BLOCK_TYPE, len(items), items, cap

    def _resolve_collection(
        self, ctx: ExecutionContext, block: SerializedBlock, scope: BlockScope, raw: Any
    ) -> List[Any]:
        if isinstance(raw, str):
            raw = render_template(ctx.resolution_for(block, scope), raw)
        return normalize_collection(raw)

    async def _run_while(
        self,
        ctx: ExecutionContext,
        block: SerializedBlock,
        scope: BlockScope,
        run_iteration: Callable[[ContainerFrame], Awaitable[Tuple[IterationOutcome, BlockScope]]],
    ) -> ContainerOutcome:
        descriptor = self.plan.whiles[block.id]
        outcome = ContainerOutcome()
        previous_outputs: Dict[str, Any] = {}

        def condition_holds(frame: ContainerFrame, outputs: Dict[str, Any]) -> bool:
            check_scope = BlockScope(
                outputs=outputs,
                parent=scope,
                frame=frame,
                container_id=block.id,
                iteration=frame.index,
            )
            resolution = ctx.resolution_for(block, check_scope).for_block(None)
            return evaluate_condition(resolution, descriptor.condition)

        index = 0
        while index < descriptor.iterations and not ctx.should_stop():
            frame = ContainerFrame(kind="while", container_id=block.id, index=index)
            if descriptor.while_type == "while" and not condition_holds(frame, previous_outputs):
                break
            iteration_outcome, child_scope = await run_iteration(frame)
            outcome.outcomes[index] = iteration_outcome
            if iteration_outcome.error is not None:
                outcome.failure = iteration_outcome.error
                break
            previous_outputs = child_scope.outputs
            index += 1
            if descriptor.while_type == "doWhile" and not condition_holds(
                ContainerFrame(kind="while", container_id=block.id, index=index), previous_outputs
            ):
                break
        return outcome

    # ------------------------------------------------------------------
    # Logs and results
    # ------------------------------------------------------------------
    async def _record_log(
        self,
        ctx: ExecutionContext,
        block: SerializedBlock,
        scope: BlockScope,
        status: str,
        started_at,
        inputs: Dict[str, Any],
        output: Any,
        error: Optional[str] = None,
        stack: Optional[str] = None,
    ) -> None:
        ended_at = utcnow()
        log = BlockLog(
            block_id=block.id,
            block_name=block.display_name,
            block_type=block.type,
            started_at=started_at,
            ended_at=ended_at,
            duration_ms=max((ended_at - started_at).total_seconds() * 1000.0, 0.0),
            status=_STATUS_TO_LOG[status],
            input=inputs if isinstance(inputs, dict) else {},
            output=output,
            error=error,
            stack=stack,
            container_id=scope.container_id,
            iteration=scope.iteration,
        )
        ctx.logs.append(log)
        await call_safely("record_block", self.logging_session.record_block, log)

    async def _record_skip(self, ctx: ExecutionContext, node: str, scope: BlockScope) -> None:
        block = self._blocks[node]
        now = utcnow()
        await self._record_log(ctx, block, scope, SKIPPED, now, {}, None)
        ctx.emit("block_skipped", block_id=node, container_id=scope.container_id, iteration=scope.iteration)

    def _build_result(
        self, ctx: ExecutionContext, view: GraphView, scope: BlockScope, walk: WalkResult
    ) -> ExecutionResult:
        ended_at = utcnow()
        sinks = set(view.sinks())
        completed_sinks = [node for node in walk.completion_order if node in sinks]
        if completed_sinks:
            output = scope.outputs.get(completed_sinks[-1])
        elif walk.completion_order:
            output = scope.outputs.get(walk.completion_order[-1])
        else:
            output = None

        error: Optional[str] = None
        if ctx.cancelled:
            cancelled = ExecutionCancelledError()
            logger.warning("Execution %s stopped: %s", ctx.execution_id, cancelled)
            error = str(cancelled)
        elif ctx.failures:
            error = str(ctx.failures[0])
            output = ctx.failed_output if ctx.failed_output is not None else output

        return ExecutionResult(
            success=error is None,
            output=output,
            error=error,
            logs=list(ctx.logs),
            trace_spans=build_trace_spans(ctx.logs),
            total_duration_ms=max((ended_at - ctx.started_at).total_seconds() * 1000.0, 0.0),
            metadata=ExecutionMetadata(
                workflow_id=ctx.workflow_id,
                execution_id=ctx.execution_id,
                started_at=ctx.started_at,
                ended_at=ended_at,
                cancelled=ctx.cancelled,
                executed_block_count=sum(1 for log in ctx.logs if log.status != "skipped"),
            ),
        )


async def execute(
    plan: ExecutionPlan,
    initial_input: Any = None,
    environment_variables: Optional[Mapping[str, str]] = None,
    workflow_variables: Optional[Mapping[str, Any]] = None,
    start_block_id: Optional[str] = None,
    *,
    behavior_registry: Optional[BehaviorRegistry] = None,
    settings: Optional[BlockflowConfig] = None,
    logging_session: Any = None,
    workflow_id: Optional[str] = None,
) -> ExecutionResult:
    """
    Run ``plan`` to completion and return its ExecutionResult.
    """

    executor = Executor(
        plan,
        behavior_registry=behavior_registry,
        settings=settings,
        logging_session=logging_session,
    )
    return await executor.execute(
        initial_input,
        environment_variables=environment_variables,
        workflow_variables=workflow_variables,
        start_block_id=start_block_id,
        workflow_id=workflow_id,
    )
