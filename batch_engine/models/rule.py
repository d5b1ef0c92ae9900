"""
Rules — a predicate plus an assignment, applied as one conditional bulk update.

A Rule is the executable form: two callables over a Record. A RuleSpec is the
declarative, serializable form accepted over the API; the evaluator compiles
it into a Rule.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from batch_engine.models.record import Record


class Rule(BaseModel):
    """
    Immutable conditional update.

    predicate returns True, False or None (unknown). Only True selects a
    record. assignment returns just the fields to change.
    """
    model_config = ConfigDict(frozen=True)

    label: str
    predicate: Callable[[Record], Optional[bool]]
    assignment: Callable[[Record], Dict[str, Any]]


class ComparisonOp(str, Enum):
    GT = "gt"
    GE = "ge"
    LT = "lt"
    LE = "le"
    EQ = "eq"
    NE = "ne"
    BETWEEN = "between"             # Inclusive on both ends
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class Condition(BaseModel):
    """
    One comparison. The left operand is the sum of `fields`
    (e.g. ["RCONHK12", "RCONHK13"]); a null in any of them makes it null.
    """

    fields: List[str] = Field(min_length=1)
    op: ComparisonOp
    value: Any = None
    upper: Any = None               # Upper bound for BETWEEN

    @model_validator(mode="after")
    def _check_operands(self) -> "Condition":
        if self.op == ComparisonOp.BETWEEN and (self.value is None or self.upper is None):
            raise ValueError("between requires both value and upper")
        if self.op not in (ComparisonOp.IS_NULL, ComparisonOp.IS_NOT_NULL) and self.value is None:
            raise ValueError(f"{self.op.value} requires a value")
        if len(self.fields) > 1 and self.op in (ComparisonOp.EQ, ComparisonOp.NE) \
                and not isinstance(self.value, (int, float)):
            raise ValueError("summed fields can only be compared to a number")
        return self


class Assignment(BaseModel):
    """SET field = value, or SET field = field * scale."""

    field: str
    value: Any = None
    scale: Optional[float] = None

    @model_validator(mode="after")
    def _check_exclusive(self) -> "Assignment":
        if self.scale is not None and self.value is not None:
            raise ValueError("assignment takes either value or scale, not both")
        return self


class RuleSpec(BaseModel):
    """Declarative rule: conditions are ANDed; assignments applied together."""

    label: str
    conditions: List[Condition] = []
    assignments: List[Assignment] = Field(min_length=1)
