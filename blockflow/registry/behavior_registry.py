"""
Simple in-memory block behavior registry.

The executor dispatches every block by its ``type`` string through this
registry. A behavior may provide a synchronous ``handler`` (run in a worker
thread), an ``async_handler`` (awaited directly) or both; the async variant is
preferred when present.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, MutableMapping, Optional

from blockflow.expr.resolver import ResolutionContext
from blockflow.schema.jsonschema_adapter import ensure_valid_output_schema
from blockflow.schema.models import JsonSchema, SerializedBlock


@dataclass(frozen=True)
class BlockInvocation:
    """Everything a behavior may know about the block run it was called for."""

    block: SerializedBlock
    execution_id: str
    environment_variables: Mapping[str, str] = field(default_factory=dict)
    workflow_variables: Mapping[str, Any] = field(default_factory=dict)
    initial_input: Any = None
    container_id: Optional[str] = None
    iteration: Optional[int] = None
    settings: Any = None
    resolution: Optional[ResolutionContext] = None


BehaviorCallable = Callable[[Dict[str, Any], BlockInvocation], Any]
AsyncBehaviorCallable = Callable[[Dict[str, Any], BlockInvocation], Awaitable[Any]]


@dataclass
class BehaviorDefinition:
    block_type: str
    handler: Optional[BehaviorCallable] = None
    async_handler: Optional[AsyncBehaviorCallable] = None
    output_schema: Optional[JsonSchema] = None
    resolve_inputs: bool = True

    def __post_init__(self) -> None:
        if self.handler is None and self.async_handler is None:
            raise ValueError(f"Behavior '{self.block_type}' needs a handler or an async_handler")


class BehaviorNotFoundError(KeyError):
    """Raised when attempting to access an unknown block behavior."""


class BehaviorRegistry:
    """
    Stores block behaviors keyed by block type.
    """

    def __init__(self, initial: MutableMapping[str, BehaviorDefinition] | None = None) -> None:
        self._behaviors: Dict[str, BehaviorDefinition] = dict(initial or {})

    def register(self, behavior: BehaviorDefinition) -> None:
        if behavior.output_schema:
            ensure_valid_output_schema(behavior.block_type, behavior.output_schema)
        self._behaviors[behavior.block_type] = behavior

    def get(self, block_type: str) -> BehaviorDefinition:
        try:
            return self._behaviors[block_type]
        except KeyError as exc:
            raise BehaviorNotFoundError(f"No behavior registered for block type '{block_type}'") from exc

    def maybe_get(self, block_type: str) -> Optional[BehaviorDefinition]:
        return self._behaviors.get(block_type)

    def __contains__(self, block_type: object) -> bool:
        return block_type in self._behaviors
