"""
Iteration scheduling for loop, parallel and while containers.

Iterations share one semaphore sized by the container's ``maxConcurrency``.
The first failing iteration stops new iterations from starting; iterations
already in flight finish. Results are reported in index order no matter which
iteration completed first.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

from blockflow.errors import BlockExecutionError
from shared.logger import get_logger

logger = get_logger("blockflow.runtime.containers")


class ContainerFailure(BlockExecutionError):
    """A container stopped because one of its iterations failed."""

    def __init__(self, cause: BlockExecutionError, *, container_id: str, partial_output: Any) -> None:
        super().__init__(
            str(cause),
            block_id=cause.block_id,
            container_id=container_id,
            iteration=cause.iteration,
        )
        self.partial_output = partial_output


@dataclass
class IterationOutcome:
    index: int
    output: Any = None
    error: Optional[BlockExecutionError] = None


@dataclass
class ContainerOutcome:
    outcomes: Dict[int, IterationOutcome] = field(default_factory=dict)
    failure: Optional[BlockExecutionError] = None

    @property
    def results(self) -> List[Any]:
        return [
            self.outcomes[index].output
            for index in sorted(self.outcomes)
            if self.outcomes[index].error is None
        ]

    def as_output(self) -> Dict[str, Any]:
        output: Dict[str, Any] = {"results": self.results}
        if self.failure is not None:
            output["error"] = str(self.failure)
        return output


RunIteration = Callable[[int], Awaitable[IterationOutcome]]


async def run_bounded(
    count: int,
    max_concurrency: int,
    run_iteration: RunIteration,
    should_stop: Callable[[], bool],
) -> ContainerOutcome:
    """
    Run ``count`` iterations with at most ``max_concurrency`` in flight.
    """

    semaphore = asyncio.Semaphore(max(1, max_concurrency))
    outcome = ContainerOutcome()

    async def guarded(index: int) -> None:
        async with semaphore:
            if outcome.failure is not None or should_stop():
                return
            result = await run_iteration(index)
            outcome.outcomes[index] = result
            if result.error is not None and outcome.failure is None:
                logger.debug("Iteration %d failed; no new iterations will start", index)
                outcome.failure = result.error

    await asyncio.gather(*(guarded(index) for index in range(count)))
    return outcome


def normalize_collection(value: Any) -> List[Any]:
    """
    Turn a resolved collection into the list of items to iterate. Mappings
    iterate as ``[key, value]`` pairs.
    """

    if value is None:
        return []
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return []
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Collection must resolve to an array or object, got {trimmed[:80]!r}") from exc
        if isinstance(parsed, str):
            raise ValueError(f"Collection must resolve to an array or object, got {trimmed[:80]!r}")
        return normalize_collection(parsed)
    if isinstance(value, dict):
        return [[key, item] for key, item in value.items()]
    if isinstance(value, (list, tuple)):
        return list(value)
    raise ValueError(f"Collection must resolve to an array or object, got {type(value).__name__}")
