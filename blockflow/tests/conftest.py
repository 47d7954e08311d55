from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pytest

from blockflow.compiler.serializer import serialize
from blockflow.handlers import default_behavior_registry, default_block_registry
from blockflow.registry.behavior_registry import BehaviorDefinition, BehaviorRegistry, BlockInvocation
from blockflow.registry.block_registry import BlockConfigRegistry
from blockflow.schema.block_config import BlockConfig, SubBlockConfig
from blockflow.schema.models import ExecutionPlan

FUNCTION_CONFIG = BlockConfig(
    type="function",
    name="Function",
    sub_blocks=[
        SubBlockConfig(id="value", title="Value", type="code"),
        SubBlockConfig(id="delay", title="Delay", type="short-input"),
        SubBlockConfig(id="fail", title="Fail", type="switch"),
        SubBlockConfig(id="message", title="Message", type="short-input"),
    ],
    outputs={"result": "any"},
)


@dataclass
class CallRecorder:
    """Records what the test ``function`` behavior saw and how many ran at once."""

    in_flight: int = 0
    peak: int = 0
    calls: List[Tuple[str, Optional[int], Any]] = field(default_factory=list)

    def calls_for(self, block_id: str) -> List[Tuple[str, Optional[int], Any]]:
        return [call for call in self.calls if call[0] == block_id]


class GraphBuilder:
    """Builds UI-shaped workflow state (camelCase, subBlocks keyed by id)."""

    def __init__(self) -> None:
        self.blocks: Dict[str, Dict[str, Any]] = {}
        self.edges: List[Dict[str, Any]] = []

    def block(
        self,
        block_id: str,
        block_type: str = "function",
        *,
        name: Optional[str] = None,
        parent: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        enabled: bool = True,
        **sub_blocks: Any,
    ) -> "GraphBuilder":
        block_data = dict(data or {})
        if parent is not None:
            block_data.update({"parentId": parent, "extent": "parent"})
        self.blocks[block_id] = {
            "id": block_id,
            "type": block_type,
            "name": name or block_id,
            "enabled": enabled,
            "subBlocks": {
                key: {"id": key, "type": "short-input", "value": value} for key, value in sub_blocks.items()
            },
            "outputs": {},
            "data": block_data,
        }
        return self

    def starter(self, block_id: str = "start") -> "GraphBuilder":
        return self.block(block_id, "starter", name="Start")

    def edge(self, source: str, target: str, handle: Optional[str] = None) -> "GraphBuilder":
        self.edges.append(
            {
                "id": f"{source}-{target}-{len(self.edges)}",
                "source": source,
                "target": target,
                "sourceHandle": handle,
            }
        )
        return self

    def chain(self, *block_ids: str) -> "GraphBuilder":
        for source, target in zip(block_ids, block_ids[1:]):
            self.edge(source, target)
        return self

    def state(self) -> Dict[str, Any]:
        return {"blocks": self.blocks, "edges": self.edges}


@pytest.fixture
def recorder() -> CallRecorder:
    return CallRecorder()


@pytest.fixture
def block_registry() -> BlockConfigRegistry:
    registry = default_block_registry()
    registry.register(FUNCTION_CONFIG)
    return registry


@pytest.fixture
def behavior_registry(recorder: CallRecorder) -> BehaviorRegistry:
    async def run_function(params: Dict[str, Any], invocation: BlockInvocation) -> Dict[str, Any]:
        recorder.in_flight += 1
        recorder.peak = max(recorder.peak, recorder.in_flight)
        recorder.calls.append((invocation.block.id, invocation.iteration, params.get("value")))
        try:
            await asyncio.sleep(float(params.get("delay") or 0))
            if params.get("fail") is True:
                raise RuntimeError(params.get("message") or "boom")
            return {"result": params.get("value")}
        finally:
            recorder.in_flight -= 1

    registry = default_behavior_registry()
    registry.register(BehaviorDefinition(block_type="function", async_handler=run_function))
    return registry


@pytest.fixture
def graph() -> GraphBuilder:
    return GraphBuilder()


@pytest.fixture
def compile_plan(block_registry: BlockConfigRegistry):
    def _compile(builder: GraphBuilder, *, validate: bool = True) -> ExecutionPlan:
        return serialize(builder.blocks, builder.edges, validate=validate, registry=block_registry)

    return _compile
