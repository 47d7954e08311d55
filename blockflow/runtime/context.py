"""
Per-run mutable state. One ExecutionContext is owned by exactly one top-level
run; container iterations get their own BlockScope so concurrent iterations
never write into each other's output slots.
"""

from __future__ import annotations

import asyncio
from collections import ChainMap
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from blockflow.errors import BlockExecutionError
from blockflow.expr.resolver import ContainerFrame, ResolutionContext
from blockflow.schema.models import BlockLog, ExecutionEvent, ExecutionPlan, SerializedBlock
from shared.config import BlockflowConfig


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BlockScope:
    """Outputs visible to the blocks of one graph walk (top level or one iteration)."""

    outputs: Dict[str, Any] = field(default_factory=dict)
    parent: Optional["BlockScope"] = None
    frame: Optional[ContainerFrame] = None
    container_id: Optional[str] = None
    iteration: Optional[int] = None

    def child(self, *, frame: ContainerFrame) -> "BlockScope":
        return BlockScope(
            parent=self,
            frame=frame,
            container_id=frame.container_id,
            iteration=frame.index,
        )

    def visible_outputs(self) -> Mapping[str, Any]:
        maps: List[Dict[str, Any]] = []
        scope: Optional[BlockScope] = self
        while scope is not None:
            maps.append(scope.outputs)
            scope = scope.parent
        return ChainMap(*maps)


@dataclass
class ExecutionContext:
    plan: ExecutionPlan
    execution_id: str
    settings: BlockflowConfig
    initial_input: Any = None
    workflow_id: Optional[str] = None
    environment_variables: Dict[str, str] = field(default_factory=dict)
    workflow_variables: Dict[str, Any] = field(default_factory=dict)
    block_aliases: Dict[str, str] = field(default_factory=dict)
    start_block_id: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)

    logs: List[BlockLog] = field(default_factory=list)
    failures: List[BlockExecutionError] = field(default_factory=list)
    failed_output: Any = None
    halted: bool = False
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    events: Optional["asyncio.Queue[ExecutionEvent]"] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def should_stop(self) -> bool:
        """No new blocks or iterations may start once this is true."""
        return self.cancelled or self.halted

    def record_failure(self, error: BlockExecutionError, output: Any = None) -> None:
        if not self.failures:
            self.failed_output = output
        self.failures.append(error)
        if self.settings.is_abort_on_failure:
            self.halted = True

    def resolution_for(self, block: SerializedBlock, scope: BlockScope) -> ResolutionContext:
        return ResolutionContext(
            block_outputs=scope.visible_outputs(),
            block_aliases=self.block_aliases,
            environment_variables=self.environment_variables,
            workflow_variables=self.workflow_variables,
            accessible_blocks=self.plan.accessible_blocks.get(block.id),
            start_block_id=self.start_block_id,
            frame=scope.frame,
            strict=self.settings.strict_references,
        )

    def emit(self, event_type: str, **payload: Any) -> None:
        if self.events is None:
            return
        self.events.put_nowait(ExecutionEvent(type=event_type, timestamp=utcnow(), **payload))
