"""Condition evaluator over string-valued form data.

    isCompany == true
    ownershipPercentage >= 51
    inspectionStatus != "VALID" and isCompany
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
_BOOL_SPLIT = re.compile(r"\s+(and|or)\s+")


def evaluate_expression(expr: str, context: Mapping[str, Any]) -> Any:
    expr = expr.strip()

    for op in (">=", "<=", "==", "!=", ">", "<"):
        idx = expr.find(op)
        if idx != -1:
            left = evaluate_expression(expr[:idx], context)
            right = evaluate_expression(expr[idx + len(op):], context)
            return _compare(op, left, right)

    if expr in ("true", "false"):
        return expr
    if _NUMBER_RE.match(expr):
        return expr
    if (expr.startswith('"') and expr.endswith('"')) or (expr.startswith("'") and expr.endswith("'")):
        return expr[1:-1]

    value = context.get(expr)
    return "" if value is None else value


def _as_number(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and _NUMBER_RE.match(value.strip()):
        return float(value)
    return None


def _compare(op: str, left: Any, right: Any) -> bool:
    ln, rn = _as_number(left), _as_number(right)
    if ln is not None and rn is not None:
        left, right = ln, rn
    else:
        left, right = str(left), str(right)
    match op:
        case "==":
            return left == right
        case "!=":
            return left != right
        case ">":
            return left > right
        case "<":
            return left < right
        case ">=":
            return left >= right
        case "<=":
            return left <= right
    raise ValueError(f"Unsupported operator: {op}")


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    text = str(value).strip()
    return text not in ("", "false", "[]")


def evaluate_condition(condition: str | None, context: Mapping[str, Any]) -> bool:
    """Evaluate `a and b or c` left to right; an empty condition is true."""
    if condition is None or not condition.strip():
        return True
    parts = _BOOL_SPLIT.split(condition.strip())
    result = is_truthy(evaluate_expression(parts[0], context))
    for i in range(1, len(parts), 2):
        operand = is_truthy(evaluate_expression(parts[i + 1], context))
        result = (result and operand) if parts[i] == "and" else (result or operand)
    return result
