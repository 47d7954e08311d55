"""Router block: forwards control to exactly one of its targets."""

from __future__ import annotations

from typing import Any, Dict

from blockflow.expr.parser import normalize_block_name
from blockflow.registry.behavior_registry import BehaviorDefinition, BlockInvocation
from blockflow.schema.block_config import BlockConfig, SubBlockConfig

BLOCK_TYPE = "router"

BLOCK_CONFIG = BlockConfig(
    type=BLOCK_TYPE,
    name="Router",
    description="Route to the block named by the resolved route value",
    sub_blocks=[
        SubBlockConfig(id="route", title="Route", type="short-input", required=True),
    ],
    outputs={"selectedPath": "json"},
)


def run_router(params: Dict[str, Any], invocation: BlockInvocation) -> Dict[str, Any]:
    route = params.get("route")
    if isinstance(route, dict):
        route = route.get("blockId")
    if not route:
        raise ValueError("Router resolved an empty route")

    route = str(route).strip()
    aliases = invocation.resolution.block_aliases if invocation.resolution else {}
    if not aliases:
        return {"selectedPath": {"blockId": route}}
    target = aliases.get(route) or aliases.get(normalize_block_name(route))
    if target is None:
        raise ValueError(f"Router route '{route}' does not name a block in this workflow")
    return {"selectedPath": {"blockId": target}}


BEHAVIOR = BehaviorDefinition(
    block_type=BLOCK_TYPE,
    handler=run_router,
    output_schema={
        "type": "object",
        "properties": {
            "selectedPath": {
                "type": "object",
                "properties": {"blockId": {"type": "string", "minLength": 1}},
                "required": ["blockId"],
            }
        },
        "required": ["selectedPath"],
    },
)
