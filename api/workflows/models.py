from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from blockflow.schema.models import ExecutionPlan, ExecutionResult, WorkflowGraph


class ProblemError(BaseModel):
    code: str
    message: str
    block_id: Optional[str] = None
    block_type: Optional[str] = None


class ProblemDetails(BaseModel):
    type: str
    title: str
    status: int
    detail: str
    errors: List[ProblemError] = Field(default_factory=list)


class SubBlockDescriptor(BaseModel):
    id: str
    title: str
    type: str
    mode: str
    required: bool = False


class BlockTypeDescriptor(BaseModel):
    type: str
    name: str
    description: str
    category: str
    sub_blocks: List[SubBlockDescriptor]
    outputs: Dict[str, Any] = Field(default_factory=dict)


class BlockTypeResponse(BaseModel):
    block_types: List[BlockTypeDescriptor]


class SerializeRequest(BaseModel):
    workflow: WorkflowGraph
    overrides: Dict[str, Any] = Field(default_factory=dict)
    validate_graph: bool = Field(default=True, alias="validate")

    model_config = {"populate_by_name": True}


class SerializeResponse(BaseModel):
    plan: ExecutionPlan


class RunRequest(BaseModel):
    workflow: WorkflowGraph
    user_id: str = "anonymous"
    workflow_id: Optional[str] = None
    input: Any = None
    overrides: Dict[str, Any] = Field(default_factory=dict)
    workflow_variables: Dict[str, Any] = Field(default_factory=dict)
    start_block_id: Optional[str] = None


class RunResponse(BaseModel):
    result: ExecutionResult
