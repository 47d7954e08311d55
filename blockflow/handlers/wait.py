"""Wait block: pauses its branch for a bounded amount of time."""

from __future__ import annotations

import asyncio
from typing import Any, Dict

from blockflow.registry.behavior_registry import BehaviorDefinition, BlockInvocation
from blockflow.schema.block_config import BlockConfig, SubBlockConfig
from shared.config import config

BLOCK_TYPE = "wait"

UNIT_SECONDS = {"seconds": 1.0, "minutes": 60.0}

BLOCK_CONFIG = BlockConfig(
    type=BLOCK_TYPE,
    name="Wait",
    description="Pause workflow execution",
    sub_blocks=[
        SubBlockConfig(id="timeValue", title="Wait Amount", type="short-input", value="10", required=True),
        SubBlockConfig(id="timeUnit", title="Unit", type="dropdown", value="seconds"),
    ],
    outputs={"waitDuration": "number", "status": "string"},
)


async def run_wait(params: Dict[str, Any], invocation: BlockInvocation) -> Dict[str, Any]:
    unit = params.get("timeUnit") or "seconds"
    if unit not in UNIT_SECONDS:
        raise ValueError(f"Unsupported wait unit '{unit}'")
    try:
        amount = float(params.get("timeValue") or 0)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid wait amount {params.get('timeValue')!r}") from exc
    if amount < 0:
        raise ValueError("Wait amount cannot be negative")

    settings = invocation.settings or config
    seconds = amount * UNIT_SECONDS[unit]
    if seconds > settings.max_wait_seconds:
        raise ValueError(
            f"Wait of {seconds:g}s exceeds the maximum of {settings.max_wait_seconds:g}s"
        )

    await asyncio.sleep(seconds)
    return {"waitDuration": seconds * 1000.0, "status": "completed"}


BEHAVIOR = BehaviorDefinition(block_type=BLOCK_TYPE, async_handler=run_wait)
