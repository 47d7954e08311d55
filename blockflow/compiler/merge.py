"""
Stage 2: Layer run-specific sub-block overrides on top of the persisted
block state. Overrides win over defaults; an override of ``None`` does not
erase a value that is already set.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from blockflow.schema.models import BlockState, SubBlockState


def _override_values(override: Any) -> Dict[str, Any]:
    if isinstance(override, BlockState):
        return {key: sub.value for key, sub in override.sub_blocks.items()}
    if not isinstance(override, Mapping):
        return {}
    sub_blocks = override.get("subBlocks", override.get("sub_blocks", override))
    values: Dict[str, Any] = {}
    for key, item in sub_blocks.items():
        if isinstance(item, SubBlockState):
            values[key] = item.value
        elif isinstance(item, Mapping) and "value" in item:
            values[key] = item["value"]
        else:
            values[key] = item
    return values


def merge_subblock_state(
    blocks: Mapping[str, BlockState],
    overrides: Optional[Mapping[str, Any]] = None,
) -> Dict[str, BlockState]:
    """
    Return new block states with ``overrides`` (block id → sub-block values)
    applied. Blocks and sub-blocks are never mutated in place.
    """

    merged: Dict[str, BlockState] = {}
    for block_id, block in blocks.items():
        values = _override_values((overrides or {}).get(block_id))
        if not values:
            merged[block_id] = block
            continue

        sub_blocks = dict(block.sub_blocks)
        for sub_id, value in values.items():
            existing = sub_blocks.get(sub_id)
            if value is None and existing is not None:
                continue
            if existing is None:
                sub_blocks[sub_id] = SubBlockState(id=sub_id, value=value)
            else:
                sub_blocks[sub_id] = existing.model_copy(update={"value": value})
        merged[block_id] = block.model_copy(update={"sub_blocks": sub_blocks})
    return merged
