"""Starter block: exposes the run's initial input to downstream blocks."""

from __future__ import annotations

from typing import Any, Dict, Mapping

from blockflow.registry.behavior_registry import BehaviorDefinition, BlockInvocation
from blockflow.schema.block_config import BlockConfig, SubBlockConfig

BLOCK_TYPE = "starter"

BLOCK_CONFIG = BlockConfig(
    type=BLOCK_TYPE,
    name="Start",
    description="Entry point of a workflow run",
    sub_blocks=[
        SubBlockConfig(id="startWorkflow", title="Start Workflow", type="dropdown", value="manual"),
        SubBlockConfig(id="inputFormat", title="Input Format", type="input-format", mode="advanced"),
    ],
    outputs={"input": "json"},
)


def run_starter(params: Dict[str, Any], invocation: BlockInvocation) -> Dict[str, Any]:
    initial_input = invocation.initial_input
    output: Dict[str, Any] = {"input": initial_input}

    if isinstance(initial_input, Mapping):
        output.update(initial_input)

    for field in params.get("inputFormat") or []:
        name = field.get("name") if isinstance(field, Mapping) else None
        if name and name not in output:
            output[name] = None
    return output


BEHAVIOR = BehaviorDefinition(block_type=BLOCK_TYPE, handler=run_starter)
