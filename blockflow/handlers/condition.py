"""
Condition block: evaluates its ``if`` / ``else if`` expressions in order and
selects the first that holds, falling back to ``else``. Outgoing edges use the
``condition-<id>`` handle of the branch they belong to.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List

from blockflow.expr.evaluator import evaluate_condition
from blockflow.registry.behavior_registry import BehaviorDefinition, BlockInvocation
from blockflow.schema.block_config import BlockConfig, SubBlockConfig

BLOCK_TYPE = "condition"

BLOCK_CONFIG = BlockConfig(
    type=BLOCK_TYPE,
    name="Condition",
    description="Branch on the first expression that evaluates to true",
    sub_blocks=[
        SubBlockConfig(id="conditions", title="Conditions", type="condition-input", required=True),
    ],
    outputs={"conditionResult": "boolean", "selectedConditionId": "string", "selectedOption": "string"},
)


def parse_conditions(raw: Any) -> List[Dict[str, Any]]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Conditions must be a JSON array: {exc}") from exc
    if not isinstance(raw, list) or not all(isinstance(item, dict) for item in raw):
        raise ValueError("Conditions must be a list of {id, title, value} objects")
    return raw


async def run_condition(params: Dict[str, Any], invocation: BlockInvocation) -> Dict[str, Any]:
    for condition in parse_conditions(params.get("conditions")):
        title = str(condition.get("title") or "").strip().lower()
        expression = str(condition.get("value") or "").strip()

        if title == "else":
            matched = True
        elif not expression:
            continue
        else:
            matched = evaluate_condition(invocation.resolution, expression)

        if matched:
            return {
                "conditionResult": title != "else",
                "selectedConditionId": condition.get("id"),
                "selectedOption": title or None,
            }

    raise ValueError(f"No condition matched in block '{invocation.block.id}' and it has no else branch")


BEHAVIOR = BehaviorDefinition(block_type=BLOCK_TYPE, async_handler=run_condition, resolve_inputs=False)
