"""
Structural validation run by the serializer before a plan is produced.

Every check raises :class:`blockflow.errors.ValidationError`; nothing is
silently dropped or repaired.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from blockflow.compiler.containers import find_child_nodes
from blockflow.errors import ValidationError
from blockflow.schema.block_config import BlockConfig
from blockflow.schema.models import (
    CONTAINER_BLOCK_TYPES,
    LOOP_BLOCK_TYPE,
    PARALLEL_BLOCK_TYPE,
    WHILE_BLOCK_TYPE,
    BlockState,
    Edge,
    Loop,
    Parallel,
    While,
)
from shared.logger import get_logger

logger = get_logger("blockflow.compiler.validation")


def _error_for(block: Optional[BlockState], message: str) -> ValidationError:
    if block is None:
        return ValidationError(message)
    return ValidationError(
        message,
        block_id=block.id,
        block_type=block.type,
        block_name=block.name or None,
    )


def validate_edges(blocks: Mapping[str, BlockState], edges: Iterable[Edge]) -> None:
    for edge in edges:
        for endpoint, role in ((edge.source, "source"), (edge.target, "target")):
            if endpoint not in blocks:
                raise ValidationError(
                    f"Edge {edge.id or f'{edge.source}->{edge.target}'} references missing {role} block '{endpoint}'",
                    block_id=endpoint,
                )


def validate_containment(blocks: Mapping[str, BlockState]) -> None:
    """
    Every ``parentId`` must name an existing container, containment must be
    acyclic, and a container may not sit inside another container.
    """

    for block in blocks.values():
        parent_id = block.parent_id
        if not parent_id:
            continue

        seen: Set[str] = {block.id}
        cursor: Optional[str] = parent_id
        while cursor:
            if cursor in seen:
                raise _error_for(
                    block,
                    f"Block '{block.name or block.id}' is part of a circular container nesting via '{cursor}'",
                )
            seen.add(cursor)
            parent = blocks.get(cursor)
            if parent is None:
                raise _error_for(
                    block,
                    f"Block '{block.name or block.id}' references missing parent container '{cursor}'",
                )
            if not parent.is_container:
                raise _error_for(
                    block,
                    f"Block '{block.name or block.id}' has parent '{cursor}' of type '{parent.type}', "
                    "which is not a loop, parallel or while container",
                )
            cursor = parent.parent_id

        if block.is_container:
            parent = blocks[parent_id]
            raise _error_for(
                block,
                f"Container '{block.name or block.id}' cannot be nested inside "
                f"{parent.type} '{parent.name or parent.id}'",
            )


def validate_descriptor_nodes(
    blocks: Mapping[str, BlockState],
    descriptors: Iterable[Loop | Parallel | While],
) -> None:
    for descriptor in descriptors:
        container = blocks.get(descriptor.id)
        if container is None:
            raise ValidationError(
                f"Container descriptor '{descriptor.id}' has no matching block",
                block_id=descriptor.id,
            )
        for node_id in descriptor.nodes:
            child = blocks.get(node_id)
            if child is None:
                raise _error_for(container, f"Container '{descriptor.id}' lists missing child '{node_id}'")
            if child.type in CONTAINER_BLOCK_TYPES:
                raise _error_for(
                    container,
                    f"Container '{container.name or descriptor.id}' cannot contain "
                    f"{child.type} '{child.name or child.id}'",
                )


def validate_descriptor_coverage(
    blocks: Mapping[str, BlockState],
    loops: Mapping[str, Loop],
    parallels: Mapping[str, Parallel],
    whiles: Mapping[str, While],
) -> None:
    """
    Every container block needs a descriptor of its own kind, and that
    descriptor must list exactly the blocks parented to it.
    """

    descriptors_by_type: Dict[str, Mapping[str, Loop | Parallel | While]] = {
        LOOP_BLOCK_TYPE: loops,
        PARALLEL_BLOCK_TYPE: parallels,
        WHILE_BLOCK_TYPE: whiles,
    }

    for block_type, descriptors in descriptors_by_type.items():
        for descriptor in descriptors.values():
            container = blocks.get(descriptor.id)
            if container is not None and container.type != block_type:
                raise _error_for(
                    container,
                    f"Block '{container.name or container.id}' is a {container.type} "
                    f"but has a {block_type} descriptor",
                )

    for block in blocks.values():
        if not block.is_container:
            continue
        descriptor = descriptors_by_type[block.type].get(block.id)
        if descriptor is None:
            raise _error_for(block, f"Container '{block.name or block.id}' has no {block.type} descriptor")
        children = set(find_child_nodes(block.id, blocks))
        if set(descriptor.nodes) != children:
            raise _error_for(
                block,
                f"Descriptor for container '{block.name or block.id}' lists {sorted(descriptor.nodes)} "
                f"but its children are {sorted(children)}",
            )


def has_non_empty_collection(items: Any) -> bool:
    if items is None:
        return False
    if isinstance(items, (list, tuple, dict)):
        return len(items) > 0
    if isinstance(items, str):
        trimmed = items.strip()
        if not trimmed:
            return False
        if trimmed.startswith(("[", "{")):
            try:
                parsed = json.loads(trimmed)
            except json.JSONDecodeError:
                # Could be an expression such as <start.items>
                return True
            if isinstance(parsed, (list, dict)):
                return len(parsed) > 0
        return True
    return False


def validate_subflows(
    blocks: Mapping[str, BlockState],
    loops: Mapping[str, Loop],
    parallels: Mapping[str, Parallel],
) -> None:
    for loop in loops.values():
        if loop.loop_type == "forEach" and not has_non_empty_collection(loop.for_each_items):
            block = blocks.get(loop.id)
            name = (block.name if block else "") or "Loop"
            raise ValidationError(
                f"{name} requires a collection for forEach mode. "
                "Provide a non-empty array/object or a variable reference.",
                block_id=loop.id,
                block_type="loop",
                block_name=name,
            )

    for parallel in parallels.values():
        if parallel.parallel_type == "collection" and not has_non_empty_collection(parallel.distribution):
            block = blocks.get(parallel.id)
            name = (block.name if block else "") or "Parallel"
            raise ValidationError(
                f"{name} requires a collection for collection mode. "
                "Provide a non-empty array/object or a variable reference.",
                block_id=parallel.id,
                block_type="parallel",
                block_name=name,
            )


def validate_required_params(
    block: BlockState,
    block_config: BlockConfig,
    params: Dict[str, Any],
) -> None:
    if block.trigger_mode or block_config.category == "triggers" or params.get("triggerMode") is True:
        logger.info("Skipping required-field validation for trigger block %s (%s)", block.id, block.type)
        return

    missing: List[str] = []
    for sub_block in block_config.sub_blocks:
        if not sub_block.required:
            continue
        if not sub_block.included_in_mode(block.advanced_mode) or not sub_block.is_shown(params):
            continue
        key = sub_block.canonical_param_id or sub_block.id
        value = params.get(key, params.get(sub_block.id))
        if value is None or value == "":
            missing.append(sub_block.title or sub_block.id)

    if missing:
        block_name = block.name or block_config.name or "Block"
        raise _error_for(block, f"{block_name} is missing required fields: {', '.join(missing)}")
