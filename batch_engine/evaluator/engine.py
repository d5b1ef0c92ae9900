"""
Rule Evaluator — decides which records a rule matches and what they become.

Behavioral Contract:
- Never mutates the records it is given; updated records are new copies
- Only a predicate result of True selects a record (unknown excludes it)
- A matched record whose values would not change is counted but not updated
- A rule is atomic: one invalid row fails the whole rule, nothing is returned
- Validates rows against the TableSchema when one is declared
"""

import math
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from batch_engine.errors import ConstraintViolation, InvalidValue, NullViolation
from batch_engine.models.record import DEFAULT_NOW, FieldSpec, FieldType, Record, TableSchema
from batch_engine.models.rule import Rule

_TRUE_LITERALS = {"true", "t", "yes", "y", "on", "1"}
_FALSE_LITERALS = {"false", "f", "no", "n", "off", "0"}


class RuleEvaluator:
    """Pure evaluation of rules over a record set."""

    def __init__(self, schema: Optional[TableSchema] = None):
        self.schema = schema

    def apply(
        self, records: Iterable[Record], rule: Rule
    ) -> Tuple[int, List[Record]]:
        """
        Evaluate `rule` over `records`.
        Returns (matched_count, updated_records).
        """
        matched = 0
        updated = []
        for record in records:
            if rule.predicate(record) is not True:
                continue
            matched += 1

            new_values = {**record.values, **rule.assignment(record)}
            if self.schema is not None:
                try:
                    new_values = self.validate(new_values)
                except (ConstraintViolation, NullViolation, InvalidValue) as e:
                    if e.context is None:
                        e.context = f'rule "{rule.label}" applied to record {record.key}'
                    raise

            if new_values != record.values:
                updated.append(record.model_copy(update={"values": new_values}))

        return matched, updated

    def select(
        self, records: Iterable[Record], predicate: Callable[[Record], Optional[bool]]
    ) -> List[Record]:
        return [r for r in records if predicate(r) is True]

    def count(
        self, records: Iterable[Record], predicate: Callable[[Record], Optional[bool]]
    ) -> int:
        return len(self.select(records, predicate))

    # --- Schema validation ---

    def validate(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Check a candidate row against the schema and return it with values
        coerced to their declared types. Omitted columns take their DEFAULT;
        an explicit None does not. Without a schema, returns a copy.
        """
        if self.schema is None:
            return dict(values)

        declared = set(self.schema.field_names)
        for name in values:
            if name not in declared:
                raise InvalidValue(
                    f'column "{name}" of relation "{self.schema.name}" does not exist'
                )

        values = {**_defaults(self.schema, values), **values}

        # NOT NULL is checked before any type or CHECK constraint
        for spec in self.schema.fields:
            if spec.required and values.get(spec.name) is None:
                raise NullViolation(
                    f'null value in column "{spec.name}" of relation '
                    f'"{self.schema.name}" violates not-null constraint',
                    detail=f"Failing row contains {_describe_row(values)}.",
                )

        row = {}
        for spec in self.schema.fields:
            value = values.get(spec.name)
            if value is None:
                if spec.name in values:
                    row[spec.name] = None
                continue
            value = _coerce(spec, value)
            self._check_range(spec, value, values)
            row[spec.name] = value
        return row

    def _check_range(self, spec: FieldSpec, value: Any, values: Dict[str, Any]) -> None:
        if spec.type != FieldType.NUMERIC:
            return
        too_low = spec.min_value is not None and (
            value < spec.min_value if spec.min_inclusive else value <= spec.min_value
        )
        too_high = spec.max_value is not None and (
            value > spec.max_value if spec.max_inclusive else value >= spec.max_value
        )
        if too_low or too_high:
            raise ConstraintViolation(
                f'new row for relation "{self.schema.name}" violates check '
                f'constraint "{self.schema.name}_{spec.name}_check"',
                detail=f"Failing row contains {_describe_row(values)}.",
            )


def _describe_row(values: Dict[str, Any]) -> str:
    return "(" + ", ".join(f"{k}={v!r}" for k, v in values.items()) + ")"


def _defaults(schema: TableSchema, values: Dict[str, Any]) -> Dict[str, Any]:
    filled = {}
    for spec in schema.fields:
        if spec.name in values or spec.default is None:
            continue
        if spec.type == FieldType.TIMESTAMP and spec.default == DEFAULT_NOW:
            filled[spec.name] = datetime.utcnow()
        else:
            filled[spec.name] = spec.default
    return filled


def _coerce(spec: FieldSpec, value: Any) -> Any:
    """Coerce a value to the field's declared type, the way a database would."""
    if spec.type == FieldType.NUMERIC:
        if isinstance(value, bool):
            raise InvalidValue(
                f'column "{spec.name}" is of type numeric but expression is of type boolean'
            )
        number = None
        if isinstance(value, (int, float)):
            number = value
        elif isinstance(value, str):
            try:
                number = int(value)
            except ValueError:
                try:
                    number = float(value)
                except ValueError:
                    pass
        if number is not None:
            if isinstance(number, float) and not math.isfinite(number):
                raise InvalidValue(
                    f'column "{spec.name}" does not accept "{number}"',
                    detail="NaN and infinite values are not valid numerics.",
                )
            return number
        raise InvalidValue(f'invalid input syntax for type numeric: "{value}"')

    if spec.type == FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_LITERALS:
                return True
            if lowered in _FALSE_LITERALS:
                return False
        raise InvalidValue(f'invalid input syntax for type boolean: "{value}"')

    if spec.type == FieldType.TIMESTAMP:
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value)
            except ValueError:
                pass
        raise InvalidValue(
            f'invalid input syntax for type timestamp: "{value}"',
            detail=f'Column "{spec.name}" expects an ISO-8601 timestamp.',
        )

    # TEXT
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, str)):
        return str(value)
    raise InvalidValue(f'invalid input syntax for type text: "{value!r}"')
