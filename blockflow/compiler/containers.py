"""
Container resolver: derive Loop / Parallel / While descriptors from block data
and parent/child membership.

Malformed numeric configuration never raises; values that cannot be coerced
fall back to the configured defaults.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional

from blockflow.schema.models import (
    LOOP_BLOCK_TYPE,
    PARALLEL_BLOCK_TYPE,
    WHILE_BLOCK_TYPE,
    BlockState,
    Loop,
    Parallel,
    While,
)
from shared.config import BlockflowConfig, config
from shared.logger import get_logger

logger = get_logger("blockflow.compiler.containers")

LOOP_TYPES = ("for", "forEach")
PARALLEL_TYPES = ("collection", "count")
WHILE_TYPES = ("while", "doWhile")


def _coerce_positive_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = int(value)
    elif isinstance(value, str):
        try:
            number = int(float(value.strip()))
        except ValueError:
            return None
    else:
        return None
    return number if number >= 1 else None


def _clamp(value: Any, *, default: int, upper: int) -> int:
    number = _coerce_positive_int(value)
    if number is None:
        return default
    return max(1, min(number, upper))


def parse_collection(raw: Any) -> Any:
    """
    JSON-decode string collections that look like arrays or objects. Anything
    else, including strings that fail to parse, is kept verbatim and evaluated
    as an expression at run time.
    """

    if raw is None:
        return ""
    if isinstance(raw, str):
        trimmed = raw.strip()
        if trimmed.startswith(("[", "{")):
            try:
                return json.loads(trimmed)
            except json.JSONDecodeError:
                logger.debug("Collection %r is not JSON; keeping it as an expression", trimmed[:80])
                return raw
    return raw


def find_child_nodes(container_id: str, blocks: Mapping[str, BlockState]) -> List[str]:
    """Direct children only, in block order."""
    return [block_id for block_id, block in blocks.items() if block.parent_id == container_id]


def find_all_descendant_nodes(container_id: str, blocks: Mapping[str, BlockState]) -> List[str]:
    """Every transitive descendant of a container. Terminates on containment cycles."""
    descendants: List[str] = []
    visited = {container_id}
    frontier = [container_id]
    while frontier:
        current = frontier.pop(0)
        for child_id in find_child_nodes(current, blocks):
            if child_id in visited:
                continue
            visited.add(child_id)
            descendants.append(child_id)
            frontier.append(child_id)
    return descendants


def resolve_loop(
    block_id: str,
    blocks: Mapping[str, BlockState],
    *,
    settings: Optional[BlockflowConfig] = None,
) -> Optional[Loop]:
    settings = settings or config
    block = blocks.get(block_id)
    if block is None or block.type != LOOP_BLOCK_TYPE:
        return None

    data = block.data
    iterations = _coerce_positive_int(data.count)
    if iterations is None:
        iterations = _coerce_positive_int(data.iterations)
    loop_type = data.loop_type if data.loop_type in LOOP_TYPES else "for"

    return Loop(
        id=block_id,
        nodes=find_child_nodes(block_id, blocks),
        iterations=iterations or settings.default_loop_iterations,
        loop_type=loop_type,
        for_each_items=parse_collection(data.collection),
        max_concurrency=_clamp(
            data.max_concurrency,
            default=settings.loop_default_concurrency,
            upper=settings.loop_max_concurrency_limit,
        ),
    )


def resolve_parallel(
    block_id: str,
    blocks: Mapping[str, BlockState],
    *,
    settings: Optional[BlockflowConfig] = None,
) -> Optional[Parallel]:
    settings = settings or config
    block = blocks.get(block_id)
    if block is None or block.type != PARALLEL_BLOCK_TYPE:
        return None

    data = block.data
    # Unknown or absent kinds fall back to 'collection' even though the
    # distribution defaults to '' (zero branches).
    parallel_type = data.parallel_type if data.parallel_type in PARALLEL_TYPES else "collection"
    distribution = parse_collection(data.collection) if parallel_type == "collection" else ""

    return Parallel(
        id=block_id,
        nodes=find_child_nodes(block_id, blocks),
        distribution=distribution,
        count=_clamp(
            data.count,
            default=settings.default_parallel_count,
            upper=settings.parallel_max_count,
        ),
        parallel_type=parallel_type,
        max_concurrency=_clamp(
            data.max_concurrency,
            default=settings.parallel_default_concurrency,
            upper=settings.parallel_max_concurrency_limit,
        ),
    )


def resolve_while(
    block_id: str,
    blocks: Mapping[str, BlockState],
    *,
    settings: Optional[BlockflowConfig] = None,
) -> Optional[While]:
    settings = settings or config
    block = blocks.get(block_id)
    if block is None or block.type != WHILE_BLOCK_TYPE:
        return None

    data = block.data
    cap = _coerce_positive_int(data.iterations)
    if cap is None:
        cap = _coerce_positive_int(data.count)
    while_type = data.while_type if data.while_type in WHILE_TYPES else "while"

    return While(
        id=block_id,
        nodes=find_child_nodes(block_id, blocks),
        iterations=cap or settings.default_while_iterations,
        while_type=while_type,
        condition=data.condition or "",
    )


def clamp_descriptor(
    descriptor: Loop | Parallel | While, *, settings: Optional[BlockflowConfig] = None
) -> Loop | Parallel | While:
    """
    Apply the configured caps to a caller-supplied descriptor so it obeys the
    same ceilings as one derived from block data.
    """

    settings = settings or config
    if isinstance(descriptor, Loop):
        update = {
            "max_concurrency": _clamp(
                descriptor.max_concurrency,
                default=settings.loop_default_concurrency,
                upper=settings.loop_max_concurrency_limit,
            )
        }
    elif isinstance(descriptor, Parallel):
        update = {
            "count": _clamp(descriptor.count, default=settings.default_parallel_count, upper=settings.parallel_max_count),
            "max_concurrency": _clamp(
                descriptor.max_concurrency,
                default=settings.parallel_default_concurrency,
                upper=settings.parallel_max_concurrency_limit,
            ),
        }
    else:
        return descriptor

    changed = {key: value for key, value in update.items() if getattr(descriptor, key) != value}
    if not changed:
        return descriptor
    logger.warning("Clamped %s '%s' to configured limits: %s", type(descriptor).__name__.lower(), descriptor.id, changed)
    return descriptor.model_copy(update=changed)


def generate_loop_blocks(
    blocks: Mapping[str, BlockState], *, settings: Optional[BlockflowConfig] = None
) -> Dict[str, Loop]:
    loops: Dict[str, Loop] = {}
    for block_id in blocks:
        loop = resolve_loop(block_id, blocks, settings=settings)
        if loop is not None:
            loops[block_id] = loop
    return loops


def generate_parallel_blocks(
    blocks: Mapping[str, BlockState], *, settings: Optional[BlockflowConfig] = None
) -> Dict[str, Parallel]:
    parallels: Dict[str, Parallel] = {}
    for block_id in blocks:
        parallel = resolve_parallel(block_id, blocks, settings=settings)
        if parallel is not None:
            parallels[block_id] = parallel
    return parallels


def generate_while_blocks(
    blocks: Mapping[str, BlockState], *, settings: Optional[BlockflowConfig] = None
) -> Dict[str, While]:
    whiles: Dict[str, While] = {}
    for block_id in blocks:
        while_block = resolve_while(block_id, blocks, settings=settings)
        if while_block is not None:
            whiles[block_id] = while_block
    return whiles
