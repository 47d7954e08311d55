"""
JSON Schema checks for block behavior outputs.

Behaviors may declare an ``output_schema``; the registry checks the schema
once at registration and the executor checks every output against it.
Compiled validators are cached by the schema's canonical JSON.
"""

from __future__ import annotations

import json
from threading import Lock
from typing import Any, Dict, Iterable, Optional

from jsonschema import ValidationError
from jsonschema.exceptions import SchemaError, best_match
from jsonschema.validators import Draft202012Validator, validator_for

from blockflow.schema.models import JsonSchema

_validators: Dict[str, Any] = {}
_lock = Lock()


def output_validator(schema: JsonSchema) -> Any:
    key = json.dumps(schema, sort_keys=True, separators=(",", ":"), default=str)
    with _lock:
        if key not in _validators:
            _validators[key] = validator_for(schema, default=Draft202012Validator)(schema)
        return _validators[key]


def ensure_valid_output_schema(block_type: str, schema: JsonSchema) -> None:
    """Raise SchemaError naming the block type when ``schema`` is not valid JSON Schema."""
    try:
        validator_for(schema, default=Draft202012Validator).check_schema(schema)
    except SchemaError as exc:
        raise SchemaError(f"Output schema for block type '{block_type}' is invalid: {exc.message}") from exc


def describe_output_error(error: ValidationError) -> str:
    location = "output" + "".join(
        f"[{token}]" if isinstance(token, int) else f".{token}" for token in error.absolute_path
    )
    return f"{location}: {error.message}"


def first_validation_error(schema: JsonSchema, output: Any) -> Optional[str]:
    """The most relevant violation of ``schema`` by ``output``, or None."""
    errors: Iterable[ValidationError] = output_validator(schema).iter_errors(output)
    error = best_match(errors)
    return describe_output_error(error) if error is not None else None


__all__ = [
    "SchemaError",
    "describe_output_error",
    "ensure_valid_output_schema",
    "first_validation_error",
    "output_validator",
]
