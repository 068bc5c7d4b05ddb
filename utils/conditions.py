"""
Condition evaluator for condition nodes.

Compares a context variable against a literal. Context values are always
strings; gt/lt accept plain decimal numbers only ("20", "-3", "9.5") and treat
anything else as a false result rather than an error. Text float() would take
but a person would not call a number ("inf", "1_000", " 20 ", "²") is
non-numeric.
"""
from __future__ import annotations

import operator as op
import re
from typing import Any, Optional

from models.schemas import ConditionData, ConditionOperator


NUMBER = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)")


def parse_number(value: str) -> Optional[float]:
    if not NUMBER.fullmatch(value):
        return None
    return float(value)


def _numeric(fn):
    def compare(a: str, b: str) -> bool:
        left, right = parse_number(a), parse_number(b)
        if left is None or right is None:
            return False
        return fn(left, right)
    return compare


OPERATORS: dict[ConditionOperator, Any] = {
    ConditionOperator.EQUALS: op.eq,
    ConditionOperator.CONTAINS: lambda a, b: b in a,
    ConditionOperator.GT: _numeric(op.gt),
    ConditionOperator.LT: _numeric(op.lt),
}


def compare(operator: ConditionOperator, actual: Optional[str], expected: str) -> bool:
    """Apply one operator. An unbound variable compares as the empty string."""
    fn = OPERATORS.get(operator)
    if fn is None:
        return False
    try:
        return bool(fn("" if actual is None else actual, expected))
    except (TypeError, ValueError):
        return False


def evaluate_condition(condition: ConditionData, context: dict[str, str]) -> bool:
    """Evaluate a condition node's payload against a session context."""
    return compare(condition.operator, context.get(condition.variable), condition.value)
