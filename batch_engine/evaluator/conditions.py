"""
Three-valued comparison and RuleSpec compilation.

NULL compared to anything is unknown (None), never False. Unknown and False
both exclude a record from a match, but they differ under NOT / IS NULL, so
the distinction is kept all the way to the caller.
"""

import operator
from datetime import datetime
from typing import Any, Dict, List, Optional

from batch_engine.errors import InvalidValue
from batch_engine.models.record import Record
from batch_engine.models.rule import (
    Assignment,
    ComparisonOp,
    Condition,
    Rule,
    RuleSpec,
)

_OPERATORS = {
    ComparisonOp.GT: operator.gt,
    ComparisonOp.GE: operator.ge,
    ComparisonOp.LT: operator.lt,
    ComparisonOp.LE: operator.le,
    ComparisonOp.EQ: operator.eq,
    ComparisonOp.NE: operator.ne,
}


def _operand(record: Record, fields: List[str]) -> Any:
    """Single field value, or the sum of several. Any null makes it null."""
    values = [record.get(f) for f in fields]
    if any(v is None for v in values):
        return None
    if len(values) == 1:
        return values[0]
    for field, v in zip(fields, values):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise InvalidValue(
                f"operator does not exist: {type(v).__name__} + numeric",
                detail=f"Field {field} holds {v!r}, which cannot be summed.",
            )
    return sum(values)


def _coerce_literal(left: Any, literal: Any) -> Any:
    # Timestamps arrive over the API as ISO strings
    if isinstance(left, datetime) and isinstance(literal, str):
        try:
            return datetime.fromisoformat(literal)
        except ValueError:
            raise InvalidValue(
                f'invalid input syntax for type timestamp: "{literal}"'
            )
    return literal


def compare(
    left: Any, op: ComparisonOp, value: Any = None, upper: Any = None
) -> Optional[bool]:
    """Evaluate `left op value` with SQL three-valued semantics."""
    if op == ComparisonOp.IS_NULL:
        return left is None
    if op == ComparisonOp.IS_NOT_NULL:
        return left is not None
    if left is None or value is None:
        return None

    value = _coerce_literal(left, value)
    try:
        if op == ComparisonOp.BETWEEN:
            if upper is None:
                return None
            upper = _coerce_literal(left, upper)
            return value <= left <= upper
        return _OPERATORS[op](left, value)
    except TypeError:
        raise InvalidValue(
            f"cannot compare {type(left).__name__} with {type(value).__name__}",
            detail=f"Left operand {left!r}, right operand {value!r}.",
        )


def evaluate_condition(record: Record, condition: Condition) -> Optional[bool]:
    left = _operand(record, condition.fields)
    return compare(left, condition.op, condition.value, condition.upper)


def conjunction(results: List[Optional[bool]]) -> Optional[bool]:
    """SQL AND: any False wins, then any unknown, else True."""
    if any(r is False for r in results):
        return False
    if any(r is None for r in results):
        return None
    return True


def _assigned_value(record: Record, assignment: Assignment) -> Any:
    if assignment.scale is None:
        return assignment.value
    current = record.get(assignment.field)
    if current is None:
        return None
    if isinstance(current, bool) or not isinstance(current, (int, float)):
        raise InvalidValue(
            f"cannot scale non-numeric field {assignment.field}",
            detail=f"Field {assignment.field} holds {current!r}.",
        )
    return current * assignment.scale


def compile_rule(spec: RuleSpec) -> Rule:
    """Turn a declarative RuleSpec into an executable Rule."""
    conditions = list(spec.conditions)
    assignments = list(spec.assignments)

    def predicate(record: Record) -> Optional[bool]:
        return conjunction([evaluate_condition(record, c) for c in conditions])

    def assignment(record: Record) -> Dict[str, Any]:
        return {a.field: _assigned_value(record, a) for a in assignments}

    return Rule(label=spec.label, predicate=predicate, assignment=assignment)
