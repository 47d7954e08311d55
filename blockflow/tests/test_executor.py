from __future__ import annotations

import asyncio
import threading

import pytest

from blockflow.errors import ValidationError
from blockflow.registry.behavior_registry import BehaviorDefinition
from blockflow.compiler.serializer import serialize
from blockflow.runtime.executor import CANCELLED_MESSAGE, Executor, execute
from blockflow.schema.block_config import BlockConfig
from shared.config import BlockflowConfig, FailurePolicy


def _statuses(result) -> dict[str, str]:
    return {log.block_id: log.status for log in result.logs if log.container_id is None}


async def _run(plan, behavior_registry, settings=None, **kwargs):
    executor = Executor(plan, behavior_registry=behavior_registry, settings=settings or BlockflowConfig())
    return await executor.execute(**kwargs)


@pytest.mark.asyncio
async def test_linear_chain_produces_spans_in_order(graph, compile_plan, behavior_registry) -> None:
    graph.block("a", value=1).block("b", value="<a.result>").block("c", value="got <b.result>")
    graph.chain("a", "b", "c")
    plan = compile_plan(graph)

    result = await execute(plan, behavior_registry=behavior_registry)

    assert result.success is True
    assert result.error is None
    assert [span.block_id for span in result.trace_spans] == ["a", "b", "c"]
    assert result.output == {"result": "got 1"}
    assert result.metadata.executed_block_count == 3


@pytest.mark.asyncio
async def test_starter_exposes_initial_input(graph, compile_plan, behavior_registry) -> None:
    graph.starter().block("greet", value="Hello <start.name>").chain("start", "greet")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry, initial_input={"name": "Ada"})

    assert result.output == {"result": "Hello Ada"}
    assert result.logs[0].output == {"input": {"name": "Ada"}, "name": "Ada"}


@pytest.mark.asyncio
async def test_blocks_start_only_after_their_sources_complete(graph, compile_plan, behavior_registry) -> None:
    graph.starter().block("a", delay=0.03).block("b", delay=0.01).block("c")
    graph.edge("start", "a").edge("start", "b").edge("a", "c").edge("b", "c")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    logs = {log.block_id: log for log in result.logs}
    for connection in plan.connections:
        assert logs[connection.source].ended_at <= logs[connection.target].started_at
    assert [span.block_id for span in result.trace_spans][-1] == "c"


@pytest.mark.asyncio
async def test_foreach_results_keep_index_order(graph, compile_plan, behavior_registry) -> None:
    items = [{"n": 0, "delay": 0.06}, {"n": 1, "delay": 0.03}, {"n": 2, "delay": 0}]
    graph.starter()
    graph.block("loop1", "loop", data={"loopType": "forEach", "collection": items, "maxConcurrency": 3})
    graph.block("body", parent="loop1", value="<loop.currentItem.n>", delay="<loop.currentItem.delay>")
    graph.edge("start", "loop1").edge("loop1", "body", "loop-start-source")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    assert result.success is True
    assert result.output == {"results": [{"result": 0}, {"result": 1}, {"result": 2}]}
    body_logs = [log for log in result.logs if log.block_id == "body"]
    assert [log.iteration for log in body_logs] == [2, 1, 0]


@pytest.mark.asyncio
async def test_foreach_over_runtime_reference(graph, compile_plan, behavior_registry) -> None:
    graph.starter()
    graph.block("loop1", "loop", data={"loopType": "forEach", "collection": "<start.items>"})
    graph.block("body", parent="loop1", value="<loop.currentItem>")
    graph.edge("start", "loop1").edge("loop1", "body", "loop-start-source")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry, initial_input={"items": {"x": 1, "y": 2}})

    assert result.output == {"results": [{"result": ["x", 1]}, {"result": ["y", 2]}]}


@pytest.mark.asyncio
async def test_loop_respects_max_concurrency(graph, compile_plan, behavior_registry, recorder) -> None:
    graph.starter()
    graph.block("loop1", "loop", data={"count": 6, "maxConcurrency": 2})
    graph.block("body", parent="loop1", delay=0.02, value="<loop.index>")
    graph.edge("start", "loop1").edge("loop1", "body", "loop-start-source")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    assert result.success is True
    assert recorder.peak == 2
    assert [item["result"] for item in result.output["results"]] == [0, 1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_parallel_respects_max_concurrency(graph, compile_plan, behavior_registry, recorder) -> None:
    graph.starter()
    graph.block("p1", "parallel", data={"parallelType": "count", "count": 6, "maxConcurrency": 3})
    graph.block("branch", parent="p1", delay=0.02, value="<parallel.index>")
    graph.edge("start", "p1").edge("p1", "branch", "parallel-start-source")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    assert result.success is True
    assert recorder.peak == 3
    assert len(result.output["results"]) == 6


@pytest.mark.asyncio
async def test_supplied_loop_descriptor_cannot_exceed_concurrency_limit(
    graph, block_registry, behavior_registry, recorder
) -> None:
    graph.starter()
    graph.block("loop1", "loop", data={"count": 20})
    graph.block("body", parent="loop1", delay=0.02, value="<loop.index>")
    graph.edge("start", "loop1").edge("loop1", "body", "loop-start-source")
    plan = serialize(
        graph.blocks,
        graph.edges,
        loops={"loop1": {"nodes": ["body"], "iterations": 20, "maxConcurrency": 20}},
        validate=True,
        registry=block_registry,
    )

    result = await _run(plan, behavior_registry)

    assert result.success is True
    assert plan.loops["loop1"].max_concurrency == 10
    assert recorder.peak == 10
    assert len(result.output["results"]) == 20


@pytest.mark.asyncio
async def test_runtime_limits_cap_a_prebuilt_plan(graph, compile_plan, behavior_registry, recorder) -> None:
    graph.starter()
    graph.block("p1", "parallel", data={"parallelType": "count", "count": 8, "maxConcurrency": 8})
    graph.block("branch", parent="p1", delay=0.02)
    graph.edge("start", "p1").edge("p1", "branch", "parallel-start-source")
    plan = compile_plan(graph)
    settings = BlockflowConfig(parallel_max_concurrency_limit=3, parallel_default_concurrency=2, parallel_max_count=5)

    result = await _run(plan, behavior_registry, settings=settings)

    assert result.success is True
    assert recorder.peak == 3
    assert len(result.output["results"]) == 5


@pytest.mark.asyncio
async def test_loop_iterations_are_serial_by_default(graph, compile_plan, behavior_registry, recorder) -> None:
    graph.starter()
    graph.block("loop1", "loop", data={"count": 3})
    graph.block("body", parent="loop1", delay=0.01)
    graph.edge("start", "loop1").edge("loop1", "body", "loop-start-source")
    plan = compile_plan(graph)

    await _run(plan, behavior_registry)

    assert recorder.peak == 1
    assert len(recorder.calls_for("body")) == 3


@pytest.mark.asyncio
async def test_failing_iteration_stops_the_loop(graph, compile_plan, behavior_registry, recorder) -> None:
    graph.starter()
    graph.block(
        "loop1",
        "loop",
        data={"loopType": "forEach", "collection": [False, False, True, False, False]},
    )
    graph.block("body", parent="loop1", value="<loop.index>", fail="<loop.currentItem>", message="bad item")
    graph.block("after")
    graph.edge("start", "loop1").edge("loop1", "body", "loop-start-source").edge("loop1", "after")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    message = "Block 'body' failed in iteration 2 of container 'loop1': bad item"
    assert result.success is False
    assert result.error == message
    assert result.output == {"results": [{"result": 0}, {"result": 1}], "error": message}
    assert len(recorder.calls_for("body")) == 3
    assert _statuses(result)["after"] == "skipped"

    loop_span = next(span for span in result.trace_spans if span.block_id == "loop1")
    assert loop_span.status == "error"
    assert [child.name for child in loop_span.children] == ["Iteration 0", "Iteration 1", "Iteration 2"]
    failed_iteration = loop_span.children[2]
    assert failed_iteration.status == "error"
    assert failed_iteration.children[0].stack and "bad item" in failed_iteration.children[0].stack


@pytest.mark.asyncio
async def test_failing_branch_lets_in_flight_branches_finish(graph, compile_plan, behavior_registry, recorder) -> None:
    items = [
        {"fail": False, "delay": 0.05},
        {"fail": True, "delay": 0},
        {"fail": False, "delay": 0},
        {"fail": False, "delay": 0},
    ]
    graph.starter()
    graph.block(
        "p1",
        "parallel",
        data={"parallelType": "collection", "collection": items, "maxConcurrency": 2},
    )
    graph.block(
        "branch",
        parent="p1",
        value="<parallel.index>",
        fail="<parallel.currentItem.fail>",
        delay="<parallel.currentItem.delay>",
    )
    graph.edge("start", "p1").edge("p1", "branch", "parallel-start-source")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    assert result.success is False
    assert "iteration 1 of container 'p1'" in result.error
    assert result.output["results"] == [{"result": 0}]
    assert len(recorder.calls_for("branch")) == 2


@pytest.mark.asyncio
async def test_condition_runs_only_the_selected_branch(graph, compile_plan, behavior_registry) -> None:
    conditions = [
        {"id": "cond-if", "title": "if", "value": "<start.score> > 5"},
        {"id": "cond-else", "title": "else", "value": ""},
    ]
    graph.starter().block("cond", "condition", conditions=conditions)
    graph.block("high", value="high").block("low", value="low").block("low_next")
    graph.edge("start", "cond")
    graph.edge("cond", "high", "condition-cond-if")
    graph.edge("cond", "low", "condition-cond-else")
    graph.edge("low", "low_next")
    plan = compile_plan(graph)

    high = await _run(plan, behavior_registry, initial_input={"score": 9})
    low = await _run(plan, behavior_registry, initial_input={"score": 1})

    assert high.success is True
    assert high.output == {"result": "high"}
    assert _statuses(high) == {
        "start": "success",
        "cond": "success",
        "high": "success",
        "low": "skipped",
        "low_next": "skipped",
    }
    assert low.output == {"result": None}
    assert _statuses(low)["high"] == "skipped"
    cond_log = next(log for log in high.logs if log.block_id == "cond")
    assert cond_log.output == {"conditionResult": True, "selectedConditionId": "cond-if", "selectedOption": "if"}


@pytest.mark.asyncio
async def test_router_selects_one_target(graph, compile_plan, behavior_registry) -> None:
    graph.starter().block("router1", "router", route="<start.target>")
    graph.block("r1", value="one").block("r2", value="two")
    graph.edge("start", "router1").edge("router1", "r1").edge("router1", "r2")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry, initial_input={"target": "r2"})

    assert result.output == {"result": "two"}
    assert _statuses(result)["r1"] == "skipped"


@pytest.mark.asyncio
async def test_router_accepts_display_names(graph, compile_plan, behavior_registry) -> None:
    graph.starter().block("router1", "router", route="<start.target>")
    graph.block("r1", name="Branch One", value="one").block("r2", name="Branch Two", value="two")
    graph.edge("start", "router1").edge("router1", "r1").edge("router1", "r2")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry, initial_input={"target": "Branch Two"})

    assert result.success is True
    assert result.output == {"result": "two"}
    statuses = _statuses(result)
    assert statuses["r1"] == "skipped"
    assert statuses["r2"] == "success"


@pytest.mark.asyncio
async def test_router_fails_on_unknown_route(graph, compile_plan, behavior_registry) -> None:
    graph.starter().block("router1", "router", route="<start.target>")
    graph.block("r1", value="one")
    graph.edge("start", "router1").edge("router1", "r1")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry, initial_input={"target": "Nowhere"})

    assert result.success is False
    assert "does not name a block" in result.error
    assert _statuses(result)["r1"] == "skipped"


@pytest.mark.asyncio
async def test_error_path_handles_failure(graph, compile_plan, behavior_registry) -> None:
    graph.starter().block("bad", fail=True)
    graph.block("handler", value="<bad.error>").block("next")
    graph.edge("start", "bad").edge("bad", "handler", "error").edge("bad", "next")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    assert result.success is True
    assert result.output == {"result": "Block 'bad' failed: boom"}
    statuses = _statuses(result)
    assert statuses["bad"] == "error"
    assert statuses["next"] == "skipped"


@pytest.mark.asyncio
async def test_unhandled_failure_fails_the_run(graph, compile_plan, behavior_registry) -> None:
    graph.starter().block("bad", fail=True, message="kaput").chain("start", "bad")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    assert result.success is False
    assert result.error == "Block 'bad' failed: kaput"
    assert result.output == {"error": "Block 'bad' failed: kaput"}
    bad_span = result.trace_spans[1]
    assert bad_span.status == "error"
    assert "RuntimeError" in bad_span.stack


@pytest.mark.asyncio
async def test_drain_policy_lets_independent_branches_finish(graph, compile_plan, behavior_registry) -> None:
    graph.starter().block("bad", fail=True).block("slow", delay=0.03).block("after_slow")
    graph.edge("start", "bad").edge("start", "slow").edge("slow", "after_slow")
    plan = compile_plan(graph)

    drained = await _run(plan, behavior_registry, settings=BlockflowConfig(failure_policy=FailurePolicy.drain))
    aborted = await _run(plan, behavior_registry, settings=BlockflowConfig(failure_policy=FailurePolicy.abort))

    assert drained.success is False
    assert _statuses(drained)["after_slow"] == "success"
    assert aborted.success is False
    assert _statuses(aborted)["slow"] == "success"
    assert "after_slow" not in _statuses(aborted)


@pytest.mark.asyncio
async def test_cancel_stops_new_blocks(graph, compile_plan, behavior_registry) -> None:
    graph.starter().block("slow", delay=0.2).block("after").chain("start", "slow", "after")
    plan = compile_plan(graph)
    executor = Executor(plan, behavior_registry=behavior_registry, settings=BlockflowConfig())

    task = asyncio.create_task(executor.execute())
    await asyncio.sleep(0.05)
    executor.cancel()
    result = await task

    assert result.success is False
    assert result.error == CANCELLED_MESSAGE
    assert result.metadata.cancelled is True
    statuses = _statuses(result)
    assert statuses["slow"] == "success"
    assert "after" not in statuses


@pytest.mark.asyncio
async def test_timeout_cancels_the_run(graph, compile_plan, behavior_registry) -> None:
    graph.starter().block("slow", delay=0.2).block("after").chain("start", "slow", "after")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry, settings=BlockflowConfig(execution_timeout_seconds=0.05))

    assert result.metadata.cancelled is True
    assert result.error == CANCELLED_MESSAGE


@pytest.mark.asyncio
async def test_while_loop_checks_condition_before_each_iteration(graph, compile_plan, behavior_registry) -> None:
    graph.starter()
    graph.block("w1", "while", data={"whileType": "while", "condition": "<loop.index> < 3"})
    graph.block("body", parent="w1", value="<while.index>")
    graph.edge("start", "w1").edge("w1", "body", "while-start-source")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    assert result.output == {"results": [{"result": 0}, {"result": 1}, {"result": 2}]}


@pytest.mark.asyncio
async def test_do_while_runs_at_least_once(graph, compile_plan, behavior_registry) -> None:
    graph.starter()
    graph.block("w1", "while", data={"whileType": "doWhile", "condition": "false"})
    graph.block("body", parent="w1", value="once")
    graph.edge("start", "w1").edge("w1", "body", "while-start-source")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    assert result.output == {"results": [{"result": "once"}]}


@pytest.mark.asyncio
async def test_stream_yields_transitions_then_result(graph, compile_plan, behavior_registry) -> None:
    graph.starter()
    graph.block("loop1", "loop", data={"count": 2})
    graph.block("body", parent="loop1")
    graph.edge("start", "loop1").edge("loop1", "body", "loop-start-source")
    plan = compile_plan(graph)
    executor = Executor(plan, behavior_registry=behavior_registry, settings=BlockflowConfig())

    events = [event async for event in executor.stream()]

    types = [event.type for event in events]
    assert types[0] == "block_started"
    assert types[-1] == "execution_completed"
    assert types.count("iteration_started") == 2
    assert events[-1].result is not None and events[-1].result.success is True
    started = types.index("block_started")
    completed = next(i for i, event in enumerate(events) if event.type == "block_completed" and event.block_id == "start")
    assert started < completed


@pytest.mark.asyncio
async def test_sync_handlers_run_off_the_event_loop(graph, compile_plan, block_registry, behavior_registry) -> None:
    seen: list[str] = []

    def handler(params, invocation):
        seen.append(threading.current_thread().name)
        return {"ok": True}

    block_registry.register(BlockConfig(type="blocking"))
    behavior_registry.register(BehaviorDefinition(block_type="blocking", handler=handler))
    graph.block("b", "blocking")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    assert result.output == {"ok": True}
    assert seen and seen[0] != threading.main_thread().name


@pytest.mark.asyncio
async def test_output_schema_violation_fails_the_block(graph, compile_plan, block_registry, behavior_registry) -> None:
    async def handler(params, invocation):
        return {"answer": "forty-two"}

    block_registry.register(BlockConfig(type="typed"))
    behavior_registry.register(
        BehaviorDefinition(
            block_type="typed",
            async_handler=handler,
            output_schema={
                "type": "object",
                "properties": {"answer": {"type": "integer"}},
                "required": ["answer"],
            },
        )
    )
    graph.block("t", "typed")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    assert result.success is False
    assert "output.answer:" in result.error


@pytest.mark.asyncio
async def test_missing_behavior_fails_the_block(graph, compile_plan, block_registry, behavior_registry) -> None:
    block_registry.register(BlockConfig(type="orphan"))
    graph.block("o", "orphan")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    assert result.success is False
    assert "No behavior registered for block type 'orphan'" in result.error


@pytest.mark.asyncio
async def test_disabled_blocks_are_removed(graph, compile_plan, behavior_registry) -> None:
    graph.starter().block("off", enabled=False).block("after").chain("start", "off", "after")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry)

    assert result.success is True
    assert _statuses(result) == {"start": "success"}


@pytest.mark.asyncio
async def test_invalid_start_block_raises(graph, compile_plan, behavior_registry) -> None:
    graph.starter()
    graph.block("loop1", "loop", data={"count": 1})
    graph.block("body", parent="loop1")
    plan = compile_plan(graph)

    with pytest.raises(ValidationError, match="does not exist"):
        await _run(plan, behavior_registry, start_block_id="ghost")
    with pytest.raises(ValidationError, match="nested inside a container"):
        await _run(plan, behavior_registry, start_block_id="body")


@pytest.mark.asyncio
async def test_explicit_start_block_skips_unconnected_blocks(graph, compile_plan, behavior_registry) -> None:
    graph.starter().block("a", value="a").block("b", value="b").block("island")
    graph.chain("start", "a", "b")
    plan = compile_plan(graph)

    result = await _run(plan, behavior_registry, start_block_id="a")

    assert _statuses(result) == {"a": "success", "b": "success"}
    assert result.output == {"result": "b"}
