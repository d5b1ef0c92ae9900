"""Tests for core data models."""

from datetime import datetime

import pytest

from batch_engine.models import (
    Assignment,
    BatchResult,
    BatchStep,
    Checkpoint,
    ComparisonOp,
    Condition,
    DiagnosticEntry,
    EngineConfig,
    FieldSpec,
    FieldType,
    IsolationLevel,
    Record,
    Rule,
    RuleSpec,
    StateCode,
    StepKind,
    TableSchema,
    TransactionState,
)


class TestRecord:
    def test_defaults(self):
        record = Record(key=1, values={"RCON2365": 6000000})
        assert record.version == 0
        assert record.get("RCON2365") == 6000000
        assert record.get("missing") is None

    def test_negative_version_rejected(self):
        with pytest.raises(Exception):
            Record(key=1, values={}, version=-1)


class TestTableSchema:
    def test_field_lookup(self):
        schema = TableSchema(
            name="patients",
            fields=[
                FieldSpec(name="a1c", type=FieldType.NUMERIC, required=True),
                FieldSpec(name="fasting", type=FieldType.BOOLEAN),
            ],
        )
        assert schema.field("a1c").required is True
        assert schema.field("nope") is None
        assert schema.field_names == ["a1c", "fasting"]


class TestRule:
    def test_rule_is_immutable(self):
        rule = Rule(
            label="flag",
            predicate=lambda r: True,
            assignment=lambda r: {"flag": "x"},
        )
        with pytest.raises(Exception):
            rule.label = "other"

    def test_between_requires_upper(self):
        with pytest.raises(Exception):
            Condition(fields=["RCON6810"], op=ComparisonOp.BETWEEN, value=1)

    def test_comparison_requires_value(self):
        with pytest.raises(Exception):
            Condition(fields=["RCON6810"], op=ComparisonOp.GT)

    def test_is_null_needs_no_value(self):
        condition = Condition(fields=["FIELD48"], op=ComparisonOp.IS_NULL)
        assert condition.value is None

    def test_assignment_value_and_scale_exclusive(self):
        with pytest.raises(Exception):
            Assignment(field="RCON0352", value=1, scale=0.5)

    def test_rule_spec_requires_assignment(self):
        with pytest.raises(Exception):
            RuleSpec(label="empty", conditions=[], assignments=[])

    def test_rule_spec_from_json(self):
        spec = RuleSpec.model_validate({
            "label": "p752",
            "conditions": [{"fields": ["RCON2365"], "op": "gt", "value": 5000000}],
            "assignments": [{"field": "RCONP752", "value": "true"}],
        })
        assert spec.conditions[0].op == ComparisonOp.GT
        assert spec.assignments[0].field == "RCONP752"


class TestBatchStep:
    def test_rule_step_requires_rule(self):
        with pytest.raises(Exception):
            BatchStep(kind=StepKind.RULE)

    def test_checkpoint_step_requires_name(self):
        with pytest.raises(Exception):
            BatchStep(kind=StepKind.CHECKPOINT)

    def test_labels(self):
        assert BatchStep(kind=StepKind.CHECKPOINT, name="a").label == "checkpoint:a"
        assert BatchStep(kind=StepKind.ROLLBACK_TO, name="a").label == "rollback_to:a"
        assert BatchStep(kind=StepKind.INSERT, values={"x": 1}).label == "insert"

    def test_insert_step_takes_values_or_rows(self):
        step = BatchStep(kind=StepKind.INSERT, rows=[{"x": 1}, {"x": 2}])
        assert step.insert_rows == [{"x": 1}, {"x": 2}]
        assert BatchStep(kind=StepKind.INSERT, values={"x": 1}).insert_rows == [{"x": 1}]

        with pytest.raises(Exception):
            BatchStep(kind=StepKind.INSERT, values={"x": 1}, rows=[{"x": 2}])
        with pytest.raises(Exception):
            BatchStep(kind=StepKind.INSERT, rows=[])
        with pytest.raises(Exception):
            BatchStep(kind=StepKind.INSERT)


class TestCheckpoint:
    def test_sequence_starts_at_one(self):
        with pytest.raises(Exception):
            Checkpoint(name="a", sequence=0, log_position=0, created_at=datetime.utcnow())


class TestDiagnosticEntry:
    def test_entry_is_frozen(self):
        entry = DiagnosticEntry(
            id="diag_1",
            rule_label="insert",
            state_code=StateCode.NOT_NULL_VIOLATION,
            message="null value",
            recorded_at=datetime.utcnow(),
        )
        with pytest.raises(Exception):
            entry.message = "changed"

    def test_state_code_serializes_as_sqlstate(self):
        entry = DiagnosticEntry(
            id="diag_1",
            rule_label="insert",
            state_code=StateCode.CHECK_VIOLATION,
            message="check",
            recorded_at=datetime.utcnow(),
        )
        assert entry.model_dump(mode="json")["state_code"] == "23514"


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.default_isolation_level == IsolationLevel.READ_COMMITTED
        assert config.abort_on_error is False
        assert config.max_conflict_retries == 3

    def test_negative_retries_rejected(self):
        with pytest.raises(Exception):
            EngineConfig(max_conflict_retries=-1)


class TestBatchResult:
    def test_failed_count(self):
        from batch_engine.models import RuleOutcome

        result = BatchResult(
            batch_id="batch_1",
            isolation_level=IsolationLevel.SERIALIZABLE,
            state=TransactionState.COMMITTED,
            outcomes=[
                RuleOutcome(label="a", kind=StepKind.RULE, success=True),
                RuleOutcome(label="b", kind=StepKind.RULE, success=False),
            ],
            started_at=datetime.utcnow(),
        )
        assert result.failed_count == 1
