"""Response block: shapes the payload a run hands back to its caller."""

from __future__ import annotations

from typing import Any, Dict

from blockflow.registry.behavior_registry import BehaviorDefinition, BlockInvocation
from blockflow.schema.block_config import BlockConfig, SubBlockConfig

BLOCK_TYPE = "response"

BLOCK_CONFIG = BlockConfig(
    type=BLOCK_TYPE,
    name="Response",
    description="Return data from the workflow",
    sub_blocks=[
        SubBlockConfig(id="data", title="Response Data", type="code"),
        SubBlockConfig(id="status", title="Status Code", type="short-input", value=200, mode="advanced"),
        SubBlockConfig(id="headers", title="Headers", type="table", mode="advanced"),
    ],
    outputs={"data": "json", "status": "number", "headers": "json"},
)


def run_response(params: Dict[str, Any], invocation: BlockInvocation) -> Dict[str, Any]:
    status = params.get("status") or 200
    try:
        status = int(status)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid status code {status!r}") from exc

    headers = params.get("headers") or {}
    if isinstance(headers, list):
        headers = {
            row["key"]: row.get("value", "")
            for row in headers
            if isinstance(row, dict) and row.get("key")
        }
    return {"data": params.get("data"), "status": status, "headers": headers}


BEHAVIOR = BehaviorDefinition(block_type=BLOCK_TYPE, handler=run_response)
