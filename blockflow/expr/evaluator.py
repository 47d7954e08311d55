"""
Safe evaluation of condition expressions used by condition blocks and while
containers, e.g. ``<agent.score> > 0.5 && <start.input.mode> === 'fast'``.
"""

from __future__ import annotations

import ast
import re
from typing import Any, Dict, Iterable

from blockflow.errors import BlockflowError
from blockflow.expr import parser
from blockflow.expr.parser import TemplateLiteral
from blockflow.expr.resolver import ResolutionContext, safe_resolve


class EvaluationError(BlockflowError):
    pass


SAFE_FUNCTIONS: Dict[str, Any] = {
    "len": len,
    "any": any,
    "all": all,
    "min": min,
    "max": max,
    "sum": sum,
    "str": str,
    "int": int,
    "float": float,
}

_JS_OPERATORS = (
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(?:null|undefined)\b"), "None"),
)
_STRING_LITERAL = re.compile(r"('(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\")")


def normalize_operators(text: str) -> str:
    """Translate JavaScript-style operators outside of string literals."""
    parts = _STRING_LITERAL.split(text)
    for idx in range(0, len(parts), 2):
        chunk = parts[idx]
        for pattern, replacement in _JS_OPERATORS:
            chunk = pattern.sub(replacement, chunk)
        parts[idx] = chunk
    return "".join(parts)


class _ExpressionValidator(ast.NodeVisitor):
    ALLOWED_NODES = (
        ast.Expression,
        ast.BoolOp,
        ast.BinOp,
        ast.UnaryOp,
        ast.Compare,
        ast.Call,
        ast.Name,
        ast.Load,
        ast.Constant,
        ast.Subscript,
        ast.Slice,
        ast.List,
        ast.Tuple,
    )

    ALLOWED_BINOPS = (
        ast.Add,
        ast.Sub,
        ast.Mult,
        ast.Div,
        ast.FloorDiv,
        ast.Mod,
    )

    ALLOWED_UNARY = (ast.Not, ast.USub, ast.UAdd)

    ALLOWED_CMPS = (
        ast.Eq,
        ast.NotEq,
        ast.Lt,
        ast.Gt,
        ast.LtE,
        ast.GtE,
        ast.In,
        ast.NotIn,
    )

    def __init__(self, allowed_names: Iterable[str]) -> None:
        self.allowed_names = set(allowed_names)

    def generic_visit(self, node: ast.AST) -> None:
        if isinstance(node, (ast.cmpop, ast.operator, ast.boolop, ast.unaryop)):
            return
        if not isinstance(node, self.ALLOWED_NODES):
            raise EvaluationError(f"Disallowed expression node: {type(node).__name__}")
        super().generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
            raise EvaluationError("Only whitelisted helper functions can be used in conditions")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id not in self.allowed_names and node.id not in SAFE_FUNCTIONS:
            raise EvaluationError(f"Unknown variable '{node.id}' in expression")

    def visit_BinOp(self, node: ast.BinOp) -> None:
        if not isinstance(node.op, self.ALLOWED_BINOPS):
            raise EvaluationError(f"Operator '{type(node.op).__name__}' is not allowed")
        self.generic_visit(node)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> None:
        if not isinstance(node.op, self.ALLOWED_UNARY):
            raise EvaluationError(f"Unary op '{type(node.op).__name__}' is not allowed")
        self.generic_visit(node)

    def visit_Compare(self, node: ast.Compare) -> None:
        for op in node.ops:
            if not isinstance(op, self.ALLOWED_CMPS):
                raise EvaluationError(f"Comparator '{type(op).__name__}' is not allowed")
        self.generic_visit(node)

    def visit_Subscript(self, node: ast.Subscript) -> None:
        if not isinstance(node.value, ast.Name):
            raise EvaluationError("Only placeholder variables can be subscripted")
        if node.value.id not in self.allowed_names:
            raise EvaluationError("Subscripted value is not a placeholder")
        self.generic_visit(node)


def evaluate_condition(ctx: ResolutionContext, expression: str) -> bool:
    tokens = parser.parse_template(expression)
    rendered_expr: list[str] = []
    bindings: Dict[str, Any] = {}

    for token in tokens:
        if isinstance(token, TemplateLiteral):
            rendered_expr.append(normalize_operators(token.text))
        else:
            placeholder = f"__ref_{len(bindings)}"
            bindings[placeholder] = safe_resolve(ctx, token)
            rendered_expr.append(f" {placeholder} ")

    expr_str = "".join(rendered_expr).strip()
    if not expr_str:
        raise EvaluationError("Condition expression resolved to empty string")

    try:
        tree = ast.parse(expr_str, mode="eval")
    except SyntaxError as exc:
        raise EvaluationError(f"Invalid condition expression '{expression}': {exc.msg}") from exc
    validator = _ExpressionValidator(bindings.keys())
    validator.visit(tree)
    compiled = compile(tree, "<condition>", "eval")

    safe_locals = dict(SAFE_FUNCTIONS)
    safe_locals.update(bindings)
    try:
        result = eval(compiled, {"__builtins__": {}}, safe_locals)
    except Exception as exc:
        raise EvaluationError(f"Failed to evaluate condition '{expression}': {exc}") from exc
    return bool(result)
