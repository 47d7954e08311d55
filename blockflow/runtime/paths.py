"""
Graph views and edge liveness.

The top-level view projects container children onto their container so the
container is the schedulable unit; each container iteration walks a view of
the container's own children.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set

from blockflow.schema.models import (
    CONTAINER_BLOCK_TYPES,
    ExecutionPlan,
    SerializedBlock,
    SerializedConnection,
)

ERROR_HANDLE = "error"
CONDITION_HANDLE_PREFIX = "condition-"
CONTAINER_START_HANDLES = frozenset(
    {"loop-start-source", "parallel-start-source", "while-start-source"}
)
ROUTER_BLOCK_TYPE = "router"

COMPLETED = "completed"
FAILED = "failed"
SKIPPED = "skipped"
TERMINAL_STATES = frozenset({COMPLETED, FAILED, SKIPPED})


@dataclass(frozen=True)
class Link:
    """A connection whose endpoints are expressed in the view's node ids."""

    source: str
    target: str
    handle: str
    connection: SerializedConnection


@dataclass
class GraphView:
    nodes: List[str]
    incoming: Dict[str, List[Link]] = field(default_factory=dict)
    outgoing: Dict[str, List[Link]] = field(default_factory=dict)
    entries: Set[str] = field(default_factory=set)

    def add_link(self, link: Link) -> None:
        self.incoming.setdefault(link.target, []).append(link)
        self.outgoing.setdefault(link.source, []).append(link)

    def has_error_path(self, node_id: str) -> bool:
        return any(link.handle == ERROR_HANDLE for link in self.outgoing.get(node_id, []))

    def sinks(self) -> List[str]:
        return [node for node in self.nodes if not self.outgoing.get(node)]


def _handle(connection: SerializedConnection) -> str:
    return connection.source_handle or "source"


def enabled_block_index(plan: ExecutionPlan) -> Dict[str, SerializedBlock]:
    return {block.id: block for block in plan.blocks if block.enabled}


def container_children(plan: ExecutionPlan, container_id: str, blocks: Mapping[str, SerializedBlock]) -> List[str]:
    descriptor = plan.loops.get(container_id) or plan.parallels.get(container_id) or plan.whiles.get(container_id)
    if descriptor is None:
        return []
    return [node for node in descriptor.nodes if node in blocks]


def owning_container(plan: ExecutionPlan) -> Dict[str, str]:
    owners: Dict[str, str] = {}
    for descriptors in (plan.loops, plan.parallels, plan.whiles):
        for container_id, descriptor in descriptors.items():
            for node in descriptor.nodes:
                owners[node] = container_id
    return owners


def build_top_level_view(plan: ExecutionPlan, blocks: Mapping[str, SerializedBlock]) -> GraphView:
    owners = owning_container(plan)
    nodes = [block_id for block_id in blocks if block_id not in owners]
    view = GraphView(nodes=nodes)
    node_set = set(nodes)

    for connection in plan.connections:
        if connection.source not in blocks or connection.target not in blocks:
            continue
        if _handle(connection) in CONTAINER_START_HANDLES:
            continue
        source = owners.get(connection.source, connection.source)
        target = owners.get(connection.target, connection.target)
        if source == target or source not in node_set or target not in node_set:
            continue
        view.add_link(Link(source=source, target=target, handle=_handle(connection), connection=connection))
    return view


def build_container_view(
    plan: ExecutionPlan, container_id: str, blocks: Mapping[str, SerializedBlock]
) -> GraphView:
    nodes = container_children(plan, container_id, blocks)
    view = GraphView(nodes=nodes)
    node_set = set(nodes)

    for connection in plan.connections:
        if connection.source == container_id and connection.target in node_set:
            if _handle(connection) in CONTAINER_START_HANDLES:
                view.entries.add(connection.target)
            continue
        if connection.source in node_set and connection.target in node_set:
            view.add_link(
                Link(
                    source=connection.source,
                    target=connection.target,
                    handle=_handle(connection),
                    connection=connection,
                )
            )

    if not view.entries:
        view.entries.update(node for node in nodes if not view.incoming.get(node))
    return view


def selected_condition(output: Any) -> Optional[str]:
    if isinstance(output, Mapping):
        selected = output.get("selectedConditionId")
        return str(selected) if selected is not None else None
    return None


def selected_route(output: Any) -> Optional[str]:
    if isinstance(output, Mapping):
        path = output.get("selectedPath")
        if isinstance(path, Mapping) and path.get("blockId"):
            return str(path["blockId"])
    return None


def is_link_live(link: Link, status: str, output: Any, source_type: str) -> bool:
    """
    An edge carries control only when its handle matches how the source ended.
    """

    if status == SKIPPED:
        return False
    if link.handle == ERROR_HANDLE:
        return status == FAILED
    if status != COMPLETED:
        return False
    if link.handle.startswith(CONDITION_HANDLE_PREFIX):
        return link.handle[len(CONDITION_HANDLE_PREFIX):] == selected_condition(output)
    if source_type == ROUTER_BLOCK_TYPE:
        return link.connection.target == selected_route(output)
    return True


def is_container(block: SerializedBlock) -> bool:
    return block.type in CONTAINER_BLOCK_TYPES
