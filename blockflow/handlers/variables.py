"""Variables block: publishes named values for downstream blocks."""

from __future__ import annotations

from typing import Any, Dict

from blockflow.registry.behavior_registry import BehaviorDefinition, BlockInvocation
from blockflow.schema.block_config import BlockConfig, SubBlockConfig

BLOCK_TYPE = "variables"

BLOCK_CONFIG = BlockConfig(
    type=BLOCK_TYPE,
    name="Variables",
    description="Assign named values",
    sub_blocks=[
        SubBlockConfig(id="variables", title="Variable Assignments", type="variables-input"),
    ],
)


def run_variables(params: Dict[str, Any], invocation: BlockInvocation) -> Dict[str, Any]:
    assignments = params.get("variables") or []
    if isinstance(assignments, dict):
        return dict(assignments)

    output: Dict[str, Any] = {}
    for row in assignments:
        if not isinstance(row, dict):
            raise ValueError("Each variable assignment must be an object")
        name = row.get("variableName") or row.get("name")
        if not name:
            raise ValueError("Variable assignment is missing a name")
        output[str(name)] = row.get("value")
    return output


BEHAVIOR = BehaviorDefinition(block_type=BLOCK_TYPE, handler=run_variables)
