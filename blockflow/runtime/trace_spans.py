"""
Build the nested trace-span tree from the flat block logs of a run:
top-level block spans, and for containers one ``Iteration N`` span per
iteration holding that iteration's block spans.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Sequence

from blockflow.schema.models import BlockLog, TraceSpan


def _duration_ms(log_start, log_end) -> float:
    return max((log_end - log_start).total_seconds() * 1000.0, 0.0)


def _block_span(log: BlockLog, children: Sequence[TraceSpan] = ()) -> TraceSpan:
    suffix = f"-{log.iteration}" if log.iteration is not None else ""
    return TraceSpan(
        id=f"{log.block_id}{suffix}",
        name=log.block_name or log.block_id,
        type=log.block_type,
        block_id=log.block_id,
        status=log.status,
        started_at=log.started_at,
        ended_at=log.ended_at,
        duration_ms=log.duration_ms,
        input=log.input,
        output=log.output,
        error=log.error,
        stack=log.stack,
        iteration=log.iteration,
        children=list(children),
    )


def _iteration_spans(container: BlockLog, by_iteration: Dict[int, List[BlockLog]]) -> List[TraceSpan]:
    spans: List[TraceSpan] = []
    for iteration in sorted(by_iteration):
        logs = sorted(by_iteration[iteration], key=lambda log: log.started_at)
        started_at = min(log.started_at for log in logs)
        ended_at = max(log.ended_at for log in logs)
        failed = next((log for log in logs if log.status == "error"), None)
        spans.append(
            TraceSpan(
                id=f"{container.block_id}-iteration-{iteration}",
                name=f"Iteration {iteration}",
                type="iteration",
                block_id=container.block_id,
                status="error" if failed else "success",
                started_at=started_at,
                ended_at=ended_at,
                duration_ms=_duration_ms(started_at, ended_at),
                error=failed.error if failed else None,
                iteration=iteration,
                children=[_block_span(log) for log in logs],
            )
        )
    return spans


def build_trace_spans(logs: Sequence[BlockLog]) -> List[TraceSpan]:
    executed = [log for log in logs if log.status != "skipped"]
    children: Dict[str, Dict[int, List[BlockLog]]] = defaultdict(lambda: defaultdict(list))
    for log in executed:
        if log.container_id is not None:
            children[log.container_id][log.iteration or 0].append(log)

    spans: List[TraceSpan] = []
    for log in sorted(executed, key=lambda item: item.started_at):
        if log.container_id is not None:
            continue
        iterations = children.get(log.block_id)
        spans.append(_block_span(log, _iteration_spans(log, iterations) if iterations else ()))
    return spans
