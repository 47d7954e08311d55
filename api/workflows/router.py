from __future__ import annotations

from fastapi import APIRouter, status

from api.workflows import models as api_models
from api.workflows import services


router = APIRouter(prefix="/v1", tags=["workflows"])


@router.get("/builder/block-types", response_model=api_models.BlockTypeResponse)
async def get_block_types():
    return services.list_block_types()


@router.post("/workflows/serialize", response_model=api_models.SerializeResponse)
async def serialize_workflow(payload: api_models.SerializeRequest):
    return services.serialize_workflow(payload)


@router.post("/workflows/execute", response_model=api_models.RunResponse, status_code=status.HTTP_201_CREATED)
async def run_draft(payload: api_models.RunRequest):
    return await services.run_draft_workflow(payload)
