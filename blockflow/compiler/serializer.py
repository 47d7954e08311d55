"""
Stage 3: Compile merged block states, edges and container maps into a
validated, read-only ExecutionPlan.

The executor only ever sees the plan; it never reads raw UI state.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from blockflow.compiler.containers import (
    clamp_descriptor,
    generate_loop_blocks,
    generate_parallel_blocks,
    generate_while_blocks,
)
from blockflow.compiler.validation import (
    validate_containment,
    validate_descriptor_coverage,
    validate_descriptor_nodes,
    validate_edges,
    validate_required_params,
    validate_subflows,
)
from blockflow.errors import ValidationError
from blockflow.registry.block_registry import BlockConfigRegistry
from blockflow.schema.block_config import BlockConfig
from blockflow.schema.models import (
    BlockState,
    Edge,
    ExecutionPlan,
    Loop,
    Parallel,
    SerializedBlock,
    SerializedConnection,
    While,
)
from shared.config import BlockflowConfig, config
from shared.logger import get_logger

logger = get_logger("blockflow.compiler.serializer")

STARTER_BLOCK_TYPE = "starter"
CONTAINER_DATA_EXCLUDE = {"parent_id", "extent"}


def _coerce_models(items: Mapping[str, Any] | None, model: Any) -> Dict[str, Any]:
    coerced: Dict[str, Any] = {}
    for key, item in (items or {}).items():
        if isinstance(item, model):
            coerced[key] = item
            continue
        if isinstance(item, Mapping) and "id" not in item:
            item = {**item, "id": key}
        try:
            coerced[key] = model.model_validate(item)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid {model.__name__.lower()} '{key}': {exc}", block_id=key) from exc
    return coerced


def _coerce_edges(edges: Iterable[Any] | None) -> List[Edge]:
    coerced: List[Edge] = []
    for item in edges or []:
        try:
            coerced.append(item if isinstance(item, Edge) else Edge.model_validate(item))
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid edge: {exc}") from exc
    return coerced


def extract_params(block: BlockState, block_config: BlockConfig) -> Dict[str, Any]:
    """
    Collect the sub-block values that apply to the block's current mode, fill
    defaults, drop sub-blocks hidden by their visibility condition and collapse
    canonical parameter groups into their canonical key.
    """

    advanced_mode = block.advanced_mode
    params: Dict[str, Any] = {}

    for sub_id, sub_block in block.sub_blocks.items():
        sub_config = block_config.sub_block(sub_id)
        has_input_format = (
            block.type == STARTER_BLOCK_TYPE
            and sub_id == "inputFormat"
            and isinstance(sub_block.value, list)
            and len(sub_block.value) > 0
        )
        if sub_config is not None and (sub_config.included_in_mode(advanced_mode) or has_input_format):
            params[sub_id] = sub_block.value

    for sub_config in block_config.sub_blocks:
        if params.get(sub_config.id) is not None:
            continue
        if not sub_config.value or not sub_config.included_in_mode(advanced_mode):
            continue
        params[sub_config.id] = sub_config.default_value(params)

    snapshot = dict(params)
    for sub_config in block_config.sub_blocks:
        if sub_config.id in params and not sub_config.is_shown(snapshot):
            del params[sub_config.id]

    _collapse_canonical_groups(params, block_config, advanced_mode)
    return params


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def _collapse_canonical_groups(
    params: Dict[str, Any], block_config: BlockConfig, advanced_mode: bool
) -> None:
    groups: Dict[str, Dict[str, Any]] = {}
    for sub_config in block_config.sub_blocks:
        if not sub_config.canonical_param_id:
            continue
        group = groups.setdefault(sub_config.canonical_param_id, {"basic": None, "advanced": []})
        if sub_config.mode == "advanced":
            group["advanced"].append(sub_config.id)
        else:
            group["basic"] = sub_config.id

    for canonical_key, group in groups.items():
        basic_id = group["basic"]
        basic_value = params.get(basic_id) if basic_id else None
        advanced_value = next(
            (params[sub_id] for sub_id in group["advanced"] if _is_present(params.get(sub_id))),
            None,
        )

        if advanced_value is not None and basic_value is not None:
            chosen = advanced_value if advanced_mode else basic_value
        elif advanced_value is not None:
            chosen = advanced_value
        elif basic_value is not None:
            chosen = None if advanced_mode else basic_value
        else:
            chosen = None

        for source_id in [basic_id, *group["advanced"]]:
            if source_id and source_id != canonical_key:
                params.pop(source_id, None)
        if chosen is not None:
            params[canonical_key] = chosen
        else:
            params.pop(canonical_key, None)


def _find_ancestors(block_id: str, incoming: Mapping[str, List[str]]) -> Set[str]:
    ancestors: Set[str] = set()
    frontier = list(incoming.get(block_id, []))
    while frontier:
        current = frontier.pop()
        if current in ancestors:
            continue
        ancestors.add(current)
        frontier.extend(incoming.get(current, []))
    return ancestors


def compute_accessible_block_ids(
    blocks: Mapping[str, BlockState],
    edges: Iterable[Edge],
    containers: Iterable[Loop | Parallel | While],
) -> Dict[str, List[str]]:
    """
    Map each block to the blocks it may reference: its graph ancestors, itself,
    the starter block and the siblings inside its container.
    """

    incoming: Dict[str, List[str]] = defaultdict(list)
    for edge in edges:
        incoming[edge.target].append(edge.source)

    starter_id = next((block.id for block in blocks.values() if block.type == STARTER_BLOCK_TYPE), None)
    container_list = list(containers)

    accessible: Dict[str, List[str]] = {}
    for block_id in blocks:
        ids = _find_ancestors(block_id, incoming)
        ids.add(block_id)
        if starter_id:
            ids.add(starter_id)
        for container in container_list:
            if block_id in container.nodes:
                ids.update(container.nodes)
        accessible[block_id] = sorted(ids)
    return accessible


class Serializer:
    """
    Compiles UI block state into an ExecutionPlan using the registered block
    configurations.
    """

    def __init__(
        self,
        block_registry: BlockConfigRegistry,
        *,
        settings: Optional[BlockflowConfig] = None,
    ) -> None:
        self.block_registry = block_registry
        self.settings = settings or config

    def serialize_workflow(
        self,
        blocks: Mapping[str, Any],
        edges: Iterable[Any],
        loops: Optional[Mapping[str, Any]] = None,
        parallels: Optional[Mapping[str, Any]] = None,
        *,
        validate: bool = False,
        whiles: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionPlan:
        block_states: Dict[str, BlockState] = _coerce_models(blocks, BlockState)
        edge_list = _coerce_edges(edges)

        if validate:
            validate_edges(block_states, edge_list)
            validate_containment(block_states)

        loop_map: Dict[str, Loop] = (
            self._supplied_descriptors(loops, Loop)
            if loops is not None
            else generate_loop_blocks(block_states, settings=self.settings)
        )
        parallel_map: Dict[str, Parallel] = (
            self._supplied_descriptors(parallels, Parallel)
            if parallels is not None
            else generate_parallel_blocks(block_states, settings=self.settings)
        )
        while_map: Dict[str, While] = (
            self._supplied_descriptors(whiles, While)
            if whiles is not None
            else generate_while_blocks(block_states, settings=self.settings)
        )

        if validate:
            validate_descriptor_nodes(
                block_states,
                [*loop_map.values(), *parallel_map.values(), *while_map.values()],
            )
            validate_descriptor_coverage(block_states, loop_map, parallel_map, while_map)
            validate_subflows(block_states, loop_map, parallel_map)

        accessible = compute_accessible_block_ids(
            block_states,
            edge_list,
            [*loop_map.values(), *parallel_map.values(), *while_map.values()],
        )

        serialized_blocks = [
            self._serialize_block(block, validate=validate) for block in block_states.values()
        ]
        connections = [
            SerializedConnection(
                source=edge.source,
                target=edge.target,
                source_handle=edge.source_handle or None,
                target_handle=edge.target_handle or None,
            )
            for edge in edge_list
        ]

        logger.debug(
            "Serialized workflow: %d blocks, %d connections, %d loops, %d parallels, %d whiles",
            len(serialized_blocks),
            len(connections),
            len(loop_map),
            len(parallel_map),
            len(while_map),
        )
        return ExecutionPlan(
            blocks=serialized_blocks,
            connections=connections,
            loops=loop_map,
            parallels=parallel_map,
            whiles=while_map,
            accessible_blocks=accessible,
            validated=validate,
        )

    def _supplied_descriptors(self, items: Mapping[str, Any], model: Any) -> Dict[str, Any]:
        return {
            key: clamp_descriptor(descriptor, settings=self.settings)
            for key, descriptor in _coerce_models(items, model).items()
        }

    def _serialize_block(self, block: BlockState, *, validate: bool) -> SerializedBlock:
        if block.is_container:
            params = block.data.model_dump(exclude=CONTAINER_DATA_EXCLUDE, exclude_none=True, by_alias=True)
            return SerializedBlock(
                id=block.id,
                type=block.type,
                name=block.name,
                enabled=block.enabled,
                params=params,
                outputs=dict(block.outputs),
                parent_id=block.parent_id,
                category="subflow",
            )

        block_config = self.block_registry.maybe_get(block.type)
        if block_config is None:
            raise ValidationError(
                f"Invalid block type: {block.type}",
                block_id=block.id,
                block_type=block.type,
                block_name=block.name or None,
            )

        params = extract_params(block, block_config)
        is_trigger = block.trigger_mode or block_config.category == "triggers"
        if is_trigger:
            params["triggerMode"] = True

        if validate:
            validate_required_params(block, block_config, params)

        return SerializedBlock(
            id=block.id,
            type=block.type,
            name=block.name or block_config.name,
            enabled=block.enabled,
            params=params,
            outputs={**block_config.outputs, **block.outputs},
            parent_id=block.parent_id,
            trigger_mode=is_trigger,
            category=block_config.category,
        )


def serialize(
    blocks: Mapping[str, Any],
    edges: Iterable[Any],
    loops: Optional[Mapping[str, Any]] = None,
    parallels: Optional[Mapping[str, Any]] = None,
    validate: bool = False,
    whiles: Optional[Mapping[str, Any]] = None,
    registry: Optional[BlockConfigRegistry] = None,
    settings: Optional[BlockflowConfig] = None,
) -> ExecutionPlan:
    """
    Compile merged block states into an ExecutionPlan. Raises ValidationError
    (and produces nothing) when ``validate`` is set and the graph is invalid.
    """

    if registry is None:
        from blockflow.handlers import default_block_registry

        registry = default_block_registry()
    return Serializer(registry, settings=settings).serialize_workflow(
        blocks,
        edges,
        loops,
        parallels,
        validate=validate,
        whiles=whiles,
    )
