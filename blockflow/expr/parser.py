"""
Parsing utilities for the reference grammar embedded in block params:

* ``<block.path>`` tag references (``block`` is a block name or id, or one of
  the reserved roots ``start``, ``loop``, ``parallel``, ``while``),
* ``<variable.name>`` workflow variables,
* ``{{NAME}}`` environment variables.

Only ``<...>`` segments that look like references are treated as tags, so
comparison operators such as ``a < b`` survive untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import List, Literal, Sequence


TEMPLATE_PATTERN = re.compile(r"\{\{([^{}]+)\}\}|<([^<>]+)>")
INVALID_REFERENCE_CHARS = re.compile(r"[+*/=<>!]")
VARIABLE_ROOT = "variable"

ReferenceKind = Literal["tag", "variable", "env"]


@dataclass(frozen=True)
class PathSegment:
    pass


@dataclass(frozen=True)
class PropertySegment(PathSegment):
    key: str


@dataclass(frozen=True)
class IndexSegment(PathSegment):
    index: int | str


@dataclass(frozen=True)
class ReferenceExpr:
    raw: str
    root: str
    segments: Sequence[PathSegment]


@dataclass(frozen=True)
class TemplateLiteral:
    text: str


@dataclass(frozen=True)
class TemplateReference:
    placeholder: str
    kind: ReferenceKind
    reference: ReferenceExpr


TemplateToken = TemplateLiteral | TemplateReference


def normalize_block_name(name: str) -> str:
    """Block names match case-insensitively and ignore whitespace."""
    return re.sub(r"\s+", "", name).lower()


def is_likely_reference_segment(segment: str) -> bool:
    if not segment.startswith("<") or not segment.endswith(">"):
        return False

    inner = segment[1:-1]
    if not inner or inner.startswith(" "):
        return False
    if re.match(r"^\s*[<>=!]+\s*$", inner) or re.search(r"\s[<>=!]+\s", inner):
        return False
    if re.match(r"^[<>=!]+\s", inner):
        return False

    if "." in inner:
        before_dot, after_dot = inner.split(".", 1)
        if " " in after_dot:
            return False
        if INVALID_REFERENCE_CHARS.search(before_dot) or INVALID_REFERENCE_CHARS.search(after_dot):
            return False
    elif INVALID_REFERENCE_CHARS.search(inner) or re.match(r"^\d", inner) or re.search(r"\s\d", inner):
        return False

    return True


def parse_reference_string(expr: str) -> ReferenceExpr:
    working = expr.strip()
    if not working:
        raise ValueError("Reference cannot be empty")

    root: str | None = None
    segments: List[PathSegment] = []
    buffer: List[str] = []
    idx = 0

    def flush_property() -> None:
        nonlocal root
        if not buffer:
            return
        token = "".join(buffer).strip()
        buffer.clear()
        if not token:
            return
        if root is None:
            root = token
        else:
            segments.append(PropertySegment(token))

    while idx < len(working):
        char = working[idx]
        if char == ".":
            flush_property()
            idx += 1
            continue
        if char == "[":
            flush_property()
            closing = working.find("]", idx + 1)
            if closing == -1:
                raise ValueError(f"Unclosed '[' in reference '{expr}'")
            token = working[idx + 1 : closing].strip()
            if not token:
                raise ValueError(f"Empty bracket accessor in reference '{expr}'")
            if token[0] in {"'", '"'} and token[-1] == token[0]:
                segments.append(IndexSegment(token[1:-1]))
            else:
                try:
                    segments.append(IndexSegment(int(token)))
                except ValueError as exc:
                    raise ValueError(
                        f"Bracket accessor must be an integer or quoted string in '{expr}'"
                    ) from exc
            idx = closing + 1
            continue
        buffer.append(char)
        idx += 1

    flush_property()
    if root is None:
        raise ValueError(f"Reference '{expr}' is missing a root symbol")

    return ReferenceExpr(raw=expr, root=root, segments=tuple(segments))


def parse_template(text: str) -> List[TemplateToken]:
    tokens: List[TemplateToken] = []
    pending: List[str] = []
    cursor = 0

    def flush_literal() -> None:
        if pending:
            tokens.append(TemplateLiteral("".join(pending)))
            pending.clear()

    for match in TEMPLATE_PATTERN.finditer(text):
        start, end = match.span()
        if start > cursor:
            pending.append(text[cursor:start])
        placeholder = match.group(0)
        env_name, tag_body = match.group(1), match.group(2)
        cursor = end

        if env_name is not None:
            name = env_name.strip()
            if not name:
                pending.append(placeholder)
                continue
            flush_literal()
            tokens.append(
                TemplateReference(
                    placeholder=placeholder,
                    kind="env",
                    reference=ReferenceExpr(raw=name, root=name, segments=()),
                )
            )
            continue

        if not is_likely_reference_segment(placeholder):
            pending.append(placeholder)
            continue
        try:
            reference = parse_reference_string(tag_body)
        except ValueError:
            pending.append(placeholder)
            continue
        flush_literal()
        kind: ReferenceKind = "variable" if reference.root.lower() == VARIABLE_ROOT else "tag"
        tokens.append(TemplateReference(placeholder=placeholder, kind=kind, reference=reference))

    if cursor < len(text):
        pending.append(text[cursor:])
    flush_literal()
    if not tokens:
        tokens.append(TemplateLiteral(text))
    return tokens

