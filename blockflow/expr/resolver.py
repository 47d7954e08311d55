"""
Runtime substitution of ``<variable.name>``, ``{{ENV}}`` and ``<block.path>``
references embedded in block params.

Passes run in precedence order (variables, environment, block tags). A string
that is exactly one reference resolves to the referenced value itself; mixed
strings are rendered with JSON for mappings and lists. References that cannot
be resolved degrade to ``''`` unless the context is strict.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import json
from typing import Any, Collection, Dict, List, Mapping, Optional

from blockflow.errors import ResolutionError
from blockflow.expr import parser
from blockflow.expr.parser import (
    IndexSegment,
    PathSegment,
    PropertySegment,
    ReferenceExpr,
    ReferenceKind,
    TemplateLiteral,
    TemplateReference,
    normalize_block_name,
)
from shared.logger import get_logger

logger = get_logger("blockflow.expr.resolver")

START_ROOT = "start"
CONTAINER_ROOTS = ("loop", "parallel", "while")
PASS_ORDER: tuple[ReferenceKind, ...] = ("variable", "env", "tag")

_MISSING = object()


@dataclass(frozen=True)
class ContainerFrame:
    """The container iteration a reference is resolved inside of."""

    kind: str
    container_id: str
    index: int
    current_item: Any = None
    items: Any = None

    def as_value(self) -> Dict[str, Any]:
        return {"index": self.index, "currentItem": self.current_item, "items": self.items}


@dataclass(frozen=True)
class ResolutionContext:
    block_outputs: Mapping[str, Any] = field(default_factory=dict)
    block_aliases: Mapping[str, str] = field(default_factory=dict)
    environment_variables: Mapping[str, str] = field(default_factory=dict)
    workflow_variables: Mapping[str, Any] = field(default_factory=dict)
    accessible_blocks: Optional[Collection[str]] = None
    start_block_id: Optional[str] = None
    frame: Optional[ContainerFrame] = None
    strict: bool = False

    def for_block(self, accessible_blocks: Optional[Collection[str]]) -> "ResolutionContext":
        return replace(self, accessible_blocks=accessible_blocks)


def build_block_aliases(blocks: Mapping[str, str]) -> Dict[str, str]:
    """
    Build the lookup table from block id → display name. Ids always resolve;
    normalized names resolve unless two blocks share one.
    """

    aliases: Dict[str, str] = {}
    for block_id in blocks:
        aliases[block_id] = block_id
        aliases.setdefault(normalize_block_name(block_id), block_id)
    for block_id, name in blocks.items():
        if not name:
            continue
        normalized = normalize_block_name(name)
        if normalized in aliases and aliases[normalized] != block_id:
            logger.debug("Block name '%s' is ambiguous; refer to it by id", name)
            continue
        aliases[normalized] = block_id
    return aliases


def _lookup_variable(ctx: ResolutionContext, name: str) -> Any:
    wanted = normalize_block_name(name)
    for key, entry in ctx.workflow_variables.items():
        if isinstance(entry, Mapping) and "name" in entry and "value" in entry:
            if normalize_block_name(str(entry["name"])) == wanted:
                return entry["value"]
        elif normalize_block_name(str(key)) == wanted:
            return entry
    return _MISSING


def _walk(value: Any, segments: List[PathSegment], reference: ReferenceExpr) -> Any:
    for segment in segments:
        if isinstance(segment, PropertySegment):
            key: int | str = segment.key
            if isinstance(value, (list, tuple)) and segment.key.isdigit():
                key = int(segment.key)
        elif isinstance(segment, IndexSegment):
            key = segment.index
        else:
            raise ResolutionError(f"Unsupported segment type {type(segment)!r}", reference=reference.raw)

        if isinstance(key, int):
            if not isinstance(value, (list, tuple)):
                raise ResolutionError(
                    f"Cannot use numeric index on non-list value in '{reference.raw}'",
                    reference=reference.raw,
                )
            try:
                value = value[key]
            except IndexError as exc:
                raise ResolutionError(
                    f"Index {key} out of range in '{reference.raw}'", reference=reference.raw
                ) from exc
            continue

        if not isinstance(value, Mapping):
            raise ResolutionError(
                f"Cannot access property '{key}' on non-object value in '{reference.raw}'",
                reference=reference.raw,
            )
        if key not in value:
            raise ResolutionError(
                f"Property '{key}' not found while resolving '{reference.raw}'",
                reference=reference.raw,
            )
        value = value[key]
    return value


def _resolve_block_output(ctx: ResolutionContext, block_id: str, reference: ReferenceExpr) -> Any:
    if ctx.accessible_blocks is not None and block_id not in ctx.accessible_blocks:
        raise ResolutionError(
            f"Block '{reference.root}' is not reachable from this block", reference=reference.raw
        )
    output = ctx.block_outputs.get(block_id, _MISSING)
    if output is _MISSING:
        raise ResolutionError(
            f"Block '{reference.root}' has not produced an output", reference=reference.raw
        )

    segments = list(reference.segments)
    if (
        segments
        and isinstance(segments[0], PropertySegment)
        and segments[0].key == "output"
        and not (isinstance(output, Mapping) and "output" in output)
    ):
        segments = segments[1:]
    return _walk(output, segments, reference)


def resolve_reference(ctx: ResolutionContext, token: TemplateReference) -> Any:
    """
    Resolve one reference, raising ResolutionError when it cannot be found.
    """

    reference = token.reference
    if token.kind == "env":
        if reference.root not in ctx.environment_variables:
            raise ResolutionError(
                f"Environment variable '{reference.root}' is not set", reference=token.placeholder
            )
        return ctx.environment_variables[reference.root]

    if token.kind == "variable":
        if not reference.segments or not isinstance(reference.segments[0], PropertySegment):
            raise ResolutionError("Variable reference needs a name", reference=token.placeholder)
        name = reference.segments[0].key
        value = _lookup_variable(ctx, name)
        if value is _MISSING:
            raise ResolutionError(f"Workflow variable '{name}' is not defined", reference=token.placeholder)
        return _walk(value, list(reference.segments[1:]), reference)

    root = normalize_block_name(reference.root)
    if root in CONTAINER_ROOTS and ctx.frame is not None and (
        root == ctx.frame.kind or (root == "loop" and ctx.frame.kind == "while")
    ):
        segments = list(reference.segments)
        if not segments:
            return ctx.frame.as_value()
        return _walk(ctx.frame.as_value(), segments, reference)

    if root == START_ROOT and ctx.start_block_id and START_ROOT not in ctx.block_aliases:
        return _resolve_block_output(ctx, ctx.start_block_id, reference)

    block_id = ctx.block_aliases.get(reference.root) or ctx.block_aliases.get(root)
    if block_id is None:
        raise ResolutionError(f"Unknown block '{reference.root}'", reference=token.placeholder)
    return _resolve_block_output(ctx, block_id, reference)


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (Mapping, list, tuple, bool)):
        return json.dumps(value, default=str)
    return str(value)


def safe_resolve(ctx: ResolutionContext, token: TemplateReference) -> Any:
    """Resolve a reference, degrading to '' unless the context is strict."""
    try:
        return resolve_reference(ctx, token)
    except ResolutionError as exc:
        if ctx.strict:
            raise
        logger.warning("Unresolved reference %s replaced with '': %s", token.placeholder, exc)
        return ""


def _run_pass(ctx: ResolutionContext, text: str, kind: ReferenceKind) -> str:
    tokens = parser.parse_template(text)
    if not any(isinstance(token, TemplateReference) and token.kind == kind for token in tokens):
        return text

    pieces: List[str] = []
    for token in tokens:
        if isinstance(token, TemplateLiteral):
            pieces.append(token.text)
        elif token.kind != kind:
            pieces.append(token.placeholder)
        else:
            pieces.append(stringify(safe_resolve(ctx, token)))
    return "".join(pieces)


def render_template(ctx: ResolutionContext, text: str) -> Any:
    tokens = parser.parse_template(text)
    if len(tokens) == 1 and isinstance(tokens[0], TemplateReference):
        return safe_resolve(ctx, tokens[0])
    if not any(isinstance(token, TemplateReference) for token in tokens):
        return text

    rendered = text
    for kind in PASS_ORDER:
        rendered = _run_pass(ctx, rendered, kind)
    return rendered


def resolve_value(ctx: ResolutionContext, value: Any) -> Any:
    if isinstance(value, str):
        return render_template(ctx, value)
    if isinstance(value, list):
        return [resolve_value(ctx, item) for item in value]
    if isinstance(value, dict):
        return {key: resolve_value(ctx, item) for key, item in value.items()}
    return value
