"""
Stage 1: Parse persisted workflow state into a strongly typed WorkflowGraph.
"""

from __future__ import annotations

import json
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from blockflow.errors import ValidationError
from blockflow.schema.models import WorkflowGraph


def parse_workflow_state(payload: Any) -> WorkflowGraph:
    """
    Accepts either a JSON string or a mapping with ``blocks``, ``edges`` and the
    optional ``loops``/``parallels``/``whiles`` maps, and returns a WorkflowGraph.
    """

    if isinstance(payload, WorkflowGraph):
        return payload

    if isinstance(payload, (str, bytes)):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid workflow JSON payload: {exc}") from exc
    elif isinstance(payload, Mapping):
        data = payload
    else:
        raise ValidationError(
            f"Unsupported payload type {type(payload).__name__}; expected str or Mapping"
        )

    if not isinstance(data, Mapping):
        raise ValidationError("Workflow state must be a JSON object")

    try:
        return WorkflowGraph.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Workflow state validation failed: {exc}") from exc
