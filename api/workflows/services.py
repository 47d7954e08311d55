from __future__ import annotations

from typing import NoReturn, Optional, Sequence

from fastapi import HTTPException

from api.workflows import models as api_models
from blockflow.compiler.merge import merge_subblock_state
from blockflow.compiler.serializer import serialize
from blockflow.errors import ValidationError
from blockflow.handlers import default_block_registry
from blockflow.runtime.execution import run_workflow
from shared.config import config
from shared.logger import get_logger

logger = get_logger("api.workflows.services")

PROBLEM_BASE = "https://blockflow.dev/problems"
VALIDATION_PROBLEM = f"{PROBLEM_BASE}/validation"


def _raise_problem(
    *,
    type_uri: str,
    title: str,
    detail: str,
    status: int,
    errors: Optional[Sequence[api_models.ProblemError]] = None,
) -> NoReturn:
    payload = {
        "type": type_uri,
        "title": title,
        "status": status,
        "detail": detail,
        "errors": [error.model_dump() for error in errors] if errors else [],
    }
    raise HTTPException(status_code=status, detail=payload)


def list_block_types() -> api_models.BlockTypeResponse:
    registry = default_block_registry()
    descriptors = []
    for block_type in registry.types():
        block_config = registry.get(block_type)
        descriptors.append(
            api_models.BlockTypeDescriptor(
                type=block_config.type,
                name=block_config.name,
                description=block_config.description,
                category=block_config.category,
                sub_blocks=[
                    api_models.SubBlockDescriptor(
                        id=sub_block.id,
                        title=sub_block.title,
                        type=sub_block.type,
                        mode=sub_block.mode,
                        required=bool(sub_block.required),
                    )
                    for sub_block in block_config.sub_blocks
                ],
                outputs=dict(block_config.outputs),
            )
        )
    return api_models.BlockTypeResponse(block_types=descriptors)


def serialize_workflow(payload: api_models.SerializeRequest) -> api_models.SerializeResponse:
    graph = payload.workflow
    try:
        blocks = merge_subblock_state(graph.blocks, payload.overrides)
        plan = serialize(
            blocks,
            graph.edges,
            graph.loops,
            graph.parallels,
            validate=payload.validate_graph,
            whiles=graph.whiles,
            settings=config,
        )
    except ValidationError as exc:
        logger.info("Rejected workflow during serialization: %s", exc)
        _raise_problem(
            type_uri=VALIDATION_PROBLEM,
            title="Workflow validation failed",
            detail=str(exc),
            status=400,
            errors=[
                api_models.ProblemError(
                    code="invalid_workflow",
                    message=str(exc),
                    block_id=exc.block_id,
                    block_type=exc.block_type,
                )
            ],
        )
    return api_models.SerializeResponse(plan=plan)


async def run_draft_workflow(payload: api_models.RunRequest) -> api_models.RunResponse:
    result = await run_workflow(
        payload.workflow,
        user_id=payload.user_id,
        initial_input=payload.input,
        workflow_id=payload.workflow_id,
        overrides=payload.overrides,
        workflow_variables=payload.workflow_variables,
        start_block_id=payload.start_block_id,
        trigger="api",
        settings=config,
    )
    return api_models.RunResponse(result=result)
