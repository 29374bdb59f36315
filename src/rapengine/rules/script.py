"""Sandboxed rule scripts.

A rule script is a single Python expression evaluated against the candidate
record. It sees exactly two capabilities:

- ``record``: read-only mapping of the candidate's attributes
- ``lookup(entity_type, id)``: read-only single-record fetch (or None)

plus a handful of pure helpers. Scripts are parsed and checked against an AST
whitelist once, at schema registration; anything outside the whitelist
(assignment, imports, comprehensions, dunder access, arbitrary calls) is
rejected before the schema can serve traffic.

Example:
    record.get("binding") != "hardcover" or record["price"] <= 50
        or lookup("Publisher", record["publisher"])["founded"] < 2000
"""

from __future__ import annotations

import ast
from collections.abc import Callable, Mapping
from datetime import date, datetime
from types import CodeType, MappingProxyType
from typing import Any


class ScriptSyntaxError(ValueError):
    """Script body is not a valid, allowed expression."""

    pass


def _to_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value)).date()


def _year(value: Any) -> int | None:
    parsed = _to_date(value)
    return parsed.year if parsed else None


SAFE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "float": float,
    "int": int,
    "len": len,
    "max": max,
    "min": min,
    "round": round,
    "str": str,
    "sum": sum,
    "to_date": _to_date,
    "year": _year,
}

CAPABILITY_NAMES = frozenset({"record", "lookup"})

ALLOWED_METHODS = frozenset(
    {
        "get",
        "keys",
        "values",
        "items",
        "lower",
        "upper",
        "strip",
        "startswith",
        "endswith",
        "year",
        "month",
        "day",
    }
)

ALLOWED_NODES: tuple[type[ast.AST], ...] = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.BinOp,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.FloorDiv,
    ast.Mod,
    ast.Pow,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.Compare,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
    ast.Is,
    ast.IsNot,
    ast.IfExp,
    ast.Call,
    ast.keyword,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Subscript,
    ast.Slice,
    ast.Attribute,
    ast.Tuple,
    ast.List,
    ast.Set,
    ast.Dict,
)


def _check_node(node: ast.AST) -> None:
    if not isinstance(node, ALLOWED_NODES):
        raise ScriptSyntaxError(f"'{type(node).__name__}' is not allowed in rule scripts")

    if isinstance(node, ast.Name):
        if node.id not in CAPABILITY_NAMES and node.id not in SAFE_FUNCTIONS:
            raise ScriptSyntaxError(
                f"Unknown name '{node.id}'. Available: "
                f"{', '.join(sorted(CAPABILITY_NAMES | SAFE_FUNCTIONS.keys()))}"
            )
    elif isinstance(node, ast.Attribute):
        if node.attr.startswith("_") or node.attr not in ALLOWED_METHODS:
            raise ScriptSyntaxError(
                f"Attribute '{node.attr}' is not allowed. "
                f"Allowed: {', '.join(sorted(ALLOWED_METHODS))}"
            )
    elif isinstance(node, ast.Call):
        func = node.func
        if isinstance(func, ast.Name):
            if func.id == "record":
                raise ScriptSyntaxError("'record' is not callable")
        elif not isinstance(func, ast.Attribute):
            raise ScriptSyntaxError("Only named helpers and methods can be called")

    for child in ast.iter_child_nodes(node):
        _check_node(child)


class CompiledScript:
    """A checked, compiled rule expression."""

    def __init__(self, name: str, source: str, code: CodeType) -> None:
        self.name = name
        self.source = source
        self._code = code

    def evaluate(
        self,
        record: Mapping[str, Any],
        lookup: Callable[[str, Any], Mapping[str, Any] | None],
    ) -> Any:
        """Evaluate the expression. Exceptions propagate to the caller.

        Args:
            record: Candidate record (wrapped read-only here)
            lookup: Single-record lookup capability

        Returns:
            The expression's value (interpreted as truthy/falsy by the caller)
        """
        namespace: dict[str, Any] = {
            "__builtins__": {},
            **SAFE_FUNCTIONS,
            "record": MappingProxyType(dict(record)),
            "lookup": lookup,
        }
        return eval(self._code, namespace)  # noqa: S307 - AST checked at compile time

    def __repr__(self) -> str:
        return f"CompiledScript(name={self.name!r})"


def compile_script(name: str, source: str) -> CompiledScript:
    """Parse, check and compile a rule expression.

    Args:
        name: Rule name (used in tracebacks and errors)
        source: Expression source; may span several lines

    Returns:
        CompiledScript ready for evaluation

    Raises:
        ScriptSyntaxError: If the source is not a single allowed expression
    """
    body = source.strip()
    if not body:
        raise ScriptSyntaxError("Rule script is empty")
    try:
        # Parenthesize so multi-line expressions parse without continuation marks
        tree = ast.parse(f"(\n{body}\n)", mode="eval")
    except SyntaxError as e:
        raise ScriptSyntaxError(f"Invalid expression: {e.msg} (line {e.lineno})") from e

    _check_node(tree)
    code = compile(tree, f"<rule {name}>", "eval")
    return CompiledScript(name, body, code)
