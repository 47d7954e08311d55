from __future__ import annotations

import pytest

from blockflow.compiler.merge import merge_subblock_state
from blockflow.compiler.parse import parse_workflow_state
from blockflow.compiler.serializer import Serializer, extract_params, serialize
from blockflow.errors import ValidationError
from blockflow.registry.block_registry import BlockConfigRegistry
from blockflow.schema.block_config import BlockConfig, SubBlockCondition, SubBlockConfig
from blockflow.schema.models import BlockState, CONTAINER_BLOCK_TYPES


def test_linear_chain_serializes_in_block_order(graph, compile_plan) -> None:
    graph.starter().block("a", value=1).block("b", value=2).chain("start", "a", "b")

    plan = compile_plan(graph)

    assert [block.id for block in plan.blocks] == ["start", "a", "b"]
    assert [(c.source, c.target) for c in plan.connections] == [("start", "a"), ("a", "b")]
    assert plan.validated is True
    assert plan.get_block("a").params == {"value": 1}
    assert plan.accessible_blocks["b"] == ["a", "b", "start"]


def test_loop_container_produces_descriptor(graph, compile_plan) -> None:
    graph.starter()
    graph.block("loop1", "loop", data={"loopType": "forEach", "collection": "[1, 2, 3]"})
    graph.block("body", parent="loop1", value="<loop.currentItem>")
    graph.edge("start", "loop1").edge("loop1", "body", "loop-start-source")

    plan = compile_plan(graph)

    loop = plan.loops["loop1"]
    assert loop.nodes == ["body"]
    assert loop.for_each_items == [1, 2, 3]
    container = plan.get_block("loop1")
    assert container.category == "subflow"
    assert container.params["loopType"] == "forEach"
    assert "parentId" not in container.params
    assert plan.get_block("body").parent_id == "loop1"
    assert set(plan.accessible_blocks["body"]) >= {"body", "loop1", "start"}


def test_nested_containers_are_rejected(graph, compile_plan) -> None:
    graph.block("outer", "loop")
    graph.block("inner", "parallel", parent="outer", data={"parallelType": "count"})
    graph.block("body", parent="inner")

    with pytest.raises(ValidationError) as excinfo:
        compile_plan(graph)

    assert excinfo.value.block_id == "inner"
    assert "cannot be nested" in str(excinfo.value)


def test_circular_containment_is_rejected(graph, compile_plan) -> None:
    graph.block("l1", "loop", parent="l2")
    graph.block("l2", "loop", parent="l1")

    with pytest.raises(ValidationError) as excinfo:
        compile_plan(graph)

    assert "circular" in str(excinfo.value)


def test_parent_must_be_a_container(graph, compile_plan) -> None:
    graph.block("a").block("b", parent="a")

    with pytest.raises(ValidationError, match="not a loop, parallel or while"):
        compile_plan(graph)


def test_dangling_edge_is_rejected(graph, compile_plan) -> None:
    graph.starter().edge("start", "ghost")

    with pytest.raises(ValidationError) as excinfo:
        compile_plan(graph)

    assert excinfo.value.block_id == "ghost"


def test_unknown_block_type_is_rejected(graph, compile_plan) -> None:
    graph.block("x", "teleporter")

    with pytest.raises(ValidationError, match="Invalid block type: teleporter"):
        compile_plan(graph)


def test_missing_required_field_is_reported(graph, compile_plan) -> None:
    graph.block("r", "router", route="")

    with pytest.raises(ValidationError) as excinfo:
        compile_plan(graph)

    assert "missing required fields: Route" in str(excinfo.value)
    assert excinfo.value.block_type == "router"


def test_validation_is_skipped_when_disabled(graph, compile_plan) -> None:
    graph.block("r", "router", route="")

    plan = compile_plan(graph, validate=False)

    assert plan.validated is False
    assert plan.get_block("r").params == {"route": ""}


def test_empty_foreach_collection_is_rejected(graph, compile_plan) -> None:
    graph.block("loop1", "loop", data={"loopType": "forEach", "collection": "[]"})

    with pytest.raises(ValidationError, match="requires a collection for forEach mode"):
        compile_plan(graph)


def test_parallel_without_type_needs_a_collection(graph, compile_plan) -> None:
    graph.block("p1", "parallel")

    with pytest.raises(ValidationError, match="requires a collection for collection mode"):
        compile_plan(graph)


def test_expression_collection_passes_validation(graph, compile_plan) -> None:
    graph.block("p1", "parallel", data={"parallelType": "collection", "collection": "<start.items>"})

    plan = compile_plan(graph)

    assert plan.parallels["p1"].distribution == "<start.items>"


def test_trigger_blocks_skip_required_validation() -> None:
    registry = BlockConfigRegistry()
    registry.register(
        BlockConfig(
            type="webhook",
            name="Webhook",
            category="triggers",
            sub_blocks=[SubBlockConfig(id="path", title="Path", required=True)],
        )
    )
    blocks = {"hook": BlockState(id="hook", type="webhook")}

    plan = Serializer(registry).serialize_workflow(blocks, [], validate=True)

    block = plan.get_block("hook")
    assert block.trigger_mode is True
    assert block.params == {"triggerMode": True}


def test_extract_params_applies_mode_defaults_and_conditions() -> None:
    block_config = BlockConfig(
        type="http",
        sub_blocks=[
            SubBlockConfig(id="method", value="GET"),
            SubBlockConfig(id="body", condition=SubBlockCondition(field="method", value=["POST", "PUT"])),
            SubBlockConfig(id="timeout", mode="advanced", value=30),
            SubBlockConfig(id="url", value=lambda params: f"https://example.com/{params.get('method', '').lower()}"),
        ],
    )
    block = BlockState.model_validate(
        {
            "id": "h",
            "type": "http",
            "subBlocks": {
                "method": {"value": "GET"},
                "body": {"value": "{}"},
                "timeout": {"value": 5},
                "unknown": {"value": "dropped"},
            },
        }
    )

    params = extract_params(block, block_config)

    assert params == {"method": "GET", "url": "https://example.com/get"}


def test_extract_params_keeps_advanced_values_in_advanced_mode() -> None:
    block_config = BlockConfig(
        type="http",
        sub_blocks=[SubBlockConfig(id="timeout", mode="advanced", value=30)],
    )
    block = BlockState(id="h", type="http", advanced_mode=True)

    assert extract_params(block, block_config) == {"timeout": 30}


def test_canonical_groups_collapse_to_one_key() -> None:
    block_config = BlockConfig(
        type="sheet",
        sub_blocks=[
            SubBlockConfig(id="sheetSelector", canonical_param_id="sheetId", mode="basic"),
            SubBlockConfig(id="manualSheetId", canonical_param_id="sheetId", mode="advanced"),
        ],
    )
    basic = BlockState.model_validate(
        {"id": "s", "type": "sheet", "subBlocks": {"sheetSelector": {"value": "abc"}}}
    )
    advanced = BlockState.model_validate(
        {
            "id": "s",
            "type": "sheet",
            "advancedMode": True,
            "subBlocks": {"sheetSelector": {"value": "abc"}, "manualSheetId": {"value": "xyz"}},
        }
    )

    assert extract_params(basic, block_config) == {"sheetId": "abc"}
    assert extract_params(advanced, block_config) == {"sheetId": "xyz"}


def test_merge_overrides_win_without_erasing(graph) -> None:
    graph.block("a", value="persisted", delay=1)
    state = parse_workflow_state(graph.state())

    merged = merge_subblock_state(state.blocks, {"a": {"value": "override", "delay": None}})

    assert merged["a"].value_of("value") == "override"
    assert merged["a"].value_of("delay") == 1
    assert state.blocks["a"].value_of("value") == "persisted"


def test_parse_accepts_json_and_rejects_garbage() -> None:
    state = parse_workflow_state('{"blocks": [{"id": "a", "type": "starter"}], "edges": null}')

    assert list(state.blocks) == ["a"]
    assert state.edges == []
    with pytest.raises(ValidationError):
        parse_workflow_state("{not json")
    with pytest.raises(ValidationError):
        parse_workflow_state(42)


def test_flatness_holds_for_every_descriptor(graph, compile_plan) -> None:
    graph.starter()
    graph.block("loop1", "loop", data={"count": 2})
    graph.block("p1", "parallel", data={"parallelType": "count", "count": 2})
    graph.block("a", parent="loop1").block("b", parent="p1")

    plan = compile_plan(graph)

    types = {block.id: block.type for block in plan.blocks}
    for descriptor in [*plan.loops.values(), *plan.parallels.values()]:
        assert all(types[node] not in CONTAINER_BLOCK_TYPES for node in descriptor.nodes)


def _loop_graph(graph):
    graph.starter()
    graph.block("loop1", "loop", data={"count": 3})
    graph.block("body", parent="loop1")
    graph.edge("start", "loop1").edge("loop1", "body", "loop-start-source")
    return graph


def test_supplied_descriptors_are_clamped_to_limits(graph, block_registry) -> None:
    graph.starter()
    graph.block("p1", "parallel", data={"parallelType": "count"})
    graph.block("branch", parent="p1")
    _loop_graph(graph)

    plan = serialize(
        graph.blocks,
        graph.edges,
        loops={"loop1": {"nodes": ["body"], "iterations": 20, "maxConcurrency": 20}},
        parallels={"p1": {"nodes": ["branch"], "parallelType": "count", "count": 1000, "maxConcurrency": 80}},
        validate=True,
        registry=block_registry,
    )

    assert plan.loops["loop1"].max_concurrency == 10
    assert plan.loops["loop1"].iterations == 20
    assert plan.parallels["p1"].count == 100
    assert plan.parallels["p1"].max_concurrency == 50


def test_supplied_descriptor_rejects_non_positive_caps(graph, block_registry) -> None:
    _loop_graph(graph)

    with pytest.raises(ValidationError) as excinfo:
        serialize(
            graph.blocks,
            graph.edges,
            loops={"loop1": {"nodes": ["body"], "maxConcurrency": 0}},
            validate=True,
            registry=block_registry,
        )

    assert excinfo.value.block_id == "loop1"


def test_container_without_supplied_descriptor_is_rejected(graph, block_registry) -> None:
    _loop_graph(graph)

    with pytest.raises(ValidationError) as excinfo:
        serialize(graph.blocks, graph.edges, loops={}, validate=True, registry=block_registry)

    assert excinfo.value.block_id == "loop1"
    assert "has no loop descriptor" in str(excinfo.value)


def test_supplied_descriptor_must_list_the_container_children(graph, block_registry) -> None:
    _loop_graph(graph)

    with pytest.raises(ValidationError) as excinfo:
        serialize(graph.blocks, graph.edges, loops={"loop1": {"nodes": []}}, validate=True, registry=block_registry)

    assert excinfo.value.block_id == "loop1"
    assert "but its children are ['body']" in str(excinfo.value)


def test_descriptor_kind_must_match_the_block(graph, block_registry) -> None:
    _loop_graph(graph)

    with pytest.raises(ValidationError) as excinfo:
        serialize(
            graph.blocks,
            graph.edges,
            loops={},
            parallels={"loop1": {"nodes": ["body"], "parallelType": "count"}},
            validate=True,
            registry=block_registry,
        )

    assert "is a loop but has a parallel descriptor" in str(excinfo.value)
