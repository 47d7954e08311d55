"""
Pydantic models describing the block graph, its container descriptors, the
compiled execution plan and the execution result.

Wire payloads use camelCase (``subBlocks``, ``parentId``, ``sourceHandle``);
every model also accepts the snake_case field names so Python callers can
construct them directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


JSONPrimitive = Union[str, int, float, bool, None]
JSONValue = Union[JSONPrimitive, Dict[str, Any], List[Any]]
JsonSchema = Dict[str, Any]

LoopType = Literal["for", "forEach"]
ParallelType = Literal["count", "collection"]
WhileType = Literal["while", "doWhile"]
BlockStatus = Literal["success", "error", "skipped"]

LOOP_BLOCK_TYPE = "loop"
PARALLEL_BLOCK_TYPE = "parallel"
WHILE_BLOCK_TYPE = "while"
CONTAINER_BLOCK_TYPES = frozenset({LOOP_BLOCK_TYPE, PARALLEL_BLOCK_TYPE, WHILE_BLOCK_TYPE})


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class FrozenWireModel(WireModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


# -----------------------------
# Graph model (UI state, read-only to the core)
# -----------------------------
class SubBlockState(WireModel):
    id: Optional[str] = None
    type: Optional[str] = None
    value: Any = None


class BlockData(WireModel):
    """
    Free-form block data. Container membership and container configuration
    live here; unknown keys are preserved.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    parent_id: Optional[str] = None
    extent: Optional[str] = None
    collection: Any = None
    count: Any = None
    iterations: Any = None
    loop_type: Optional[str] = None
    parallel_type: Optional[str] = None
    while_type: Optional[str] = None
    condition: Optional[str] = None
    max_concurrency: Any = None


class BlockState(WireModel):
    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    name: str = ""
    enabled: bool = True
    advanced_mode: bool = False
    trigger_mode: bool = False
    sub_blocks: Dict[str, SubBlockState] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    data: BlockData = Field(default_factory=BlockData)

    @field_validator("data", mode="before")
    @classmethod
    def _none_data_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def parent_id(self) -> Optional[str]:
        return self.data.parent_id

    @property
    def is_container(self) -> bool:
        return self.type in CONTAINER_BLOCK_TYPES

    def value_of(self, sub_block_id: str) -> Any:
        sub_block = self.sub_blocks.get(sub_block_id)
        return sub_block.value if sub_block is not None else None


class Edge(WireModel):
    id: Optional[str] = None
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None


# -----------------------------
# Container descriptors
# -----------------------------
class Loop(FrozenWireModel):
    id: str
    nodes: List[str] = Field(default_factory=list)
    iterations: int = Field(default=5, ge=1)
    loop_type: LoopType = "for"
    for_each_items: Any = ""
    max_concurrency: int = Field(default=1, ge=1)


class Parallel(FrozenWireModel):
    id: str
    nodes: List[str] = Field(default_factory=list)
    distribution: Any = ""
    count: int = Field(default=5, ge=1)
    parallel_type: ParallelType = "collection"
    max_concurrency: int = Field(default=10, ge=1)


class While(FrozenWireModel):
    id: str
    nodes: List[str] = Field(default_factory=list)
    iterations: int = Field(default=1000, ge=1)
    while_type: WhileType = "while"
    condition: str = ""


class WorkflowGraph(WireModel):
    """
    Parsed workflow state: the blocks/edges the UI persisted plus optional
    pre-computed container maps. Missing container maps are derived from the
    block data by the container resolver.
    """

    blocks: Dict[str, BlockState] = Field(default_factory=dict)
    edges: List[Edge] = Field(default_factory=list)
    loops: Optional[Dict[str, Loop]] = None
    parallels: Optional[Dict[str, Parallel]] = None
    whiles: Optional[Dict[str, While]] = None

    @field_validator("blocks", mode="before")
    @classmethod
    def _index_blocks(cls, value: Any) -> Any:
        if isinstance(value, list):
            return {item["id"]: item for item in value if isinstance(item, dict) and "id" in item}
        if isinstance(value, dict):
            indexed = {}
            for key, item in value.items():
                if isinstance(item, dict) and "id" not in item:
                    item = {**item, "id": key}
                indexed[key] = item
            return indexed
        return value

    @field_validator("edges", mode="before")
    @classmethod
    def _none_edges_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


# -----------------------------
# Execution plan (serializer output, never mutated)
# -----------------------------
class SerializedBlock(FrozenWireModel):
    id: str
    type: str
    name: str = ""
    enabled: bool = True
    params: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    parent_id: Optional[str] = None
    trigger_mode: bool = False
    category: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


class SerializedConnection(FrozenWireModel):
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None


class ExecutionPlan(FrozenWireModel):
    version: str = "1.0"
    blocks: List[SerializedBlock] = Field(default_factory=list)
    connections: List[SerializedConnection] = Field(default_factory=list)
    loops: Dict[str, Loop] = Field(default_factory=dict)
    parallels: Dict[str, Parallel] = Field(default_factory=dict)
    whiles: Dict[str, While] = Field(default_factory=dict)
    accessible_blocks: Dict[str, List[str]] = Field(default_factory=dict)
    validated: bool = False

    def get_block(self, block_id: str) -> Optional[SerializedBlock]:
        for block in self.blocks:
            if block.id == block_id:
                return block
        return None


# -----------------------------
# Execution output
# -----------------------------
class BlockLog(FrozenWireModel):
    block_id: str
    block_name: str = ""
    block_type: str = ""
    started_at: datetime
    ended_at: datetime
    duration_ms: float = 0.0
    status: BlockStatus = "success"
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    stack: Optional[str] = None
    container_id: Optional[str] = None
    iteration: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == "success"


class TraceSpan(FrozenWireModel):
    id: str
    name: str
    type: str
    block_id: Optional[str] = None
    status: BlockStatus = "success"
    started_at: datetime
    ended_at: datetime
    duration_ms: float = 0.0
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    stack: Optional[str] = None
    iteration: Optional[int] = None
    children: List["TraceSpan"] = Field(default_factory=list)


class ExecutionMetadata(FrozenWireModel):
    workflow_id: Optional[str] = None
    execution_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    cancelled: bool = False
    executed_block_count: int = 0


class ExecutionResult(FrozenWireModel):
    success: bool
    output: Any = None
    error: Optional[str] = None
    logs: List[BlockLog] = Field(default_factory=list)
    trace_spans: List[TraceSpan] = Field(default_factory=list)
    total_duration_ms: float = 0.0
    metadata: ExecutionMetadata

    @model_validator(mode="after")
    def _error_requires_failure(self) -> "ExecutionResult":
        if self.success and self.error:
            raise ValueError("ExecutionResult: a successful result cannot carry an error")
        return self


ExecutionEventType = Literal[
    "block_started",
    "block_completed",
    "block_failed",
    "block_skipped",
    "iteration_started",
    "execution_completed",
]


class ExecutionEvent(FrozenWireModel):
    type: ExecutionEventType
    block_id: Optional[str] = None
    container_id: Optional[str] = None
    iteration: Optional[int] = None
    output: Any = None
    error: Optional[str] = None
    timestamp: datetime
    result: Optional[ExecutionResult] = None


TraceSpan.model_rebuild()
