"""Batch Engine data models."""

from batch_engine.models.batch import BatchResult, BatchStep, RuleOutcome, StepKind
from batch_engine.models.config import EngineConfig
from batch_engine.models.diagnostics import DiagnosticEntry, StateCode
from batch_engine.models.record import (
    DEFAULT_NOW,
    FieldSpec,
    FieldType,
    Record,
    TableSchema,
)
from batch_engine.models.rule import (
    Assignment,
    ComparisonOp,
    Condition,
    Rule,
    RuleSpec,
)
from batch_engine.models.transaction import (
    Checkpoint,
    IsolationLevel,
    Mutation,
    TransactionState,
)

__all__ = [
    "DEFAULT_NOW",
    "Assignment",
    "BatchResult",
    "BatchStep",
    "Checkpoint",
    "ComparisonOp",
    "Condition",
    "DiagnosticEntry",
    "EngineConfig",
    "FieldSpec",
    "FieldType",
    "IsolationLevel",
    "Mutation",
    "Record",
    "Rule",
    "RuleOutcome",
    "RuleSpec",
    "StateCode",
    "StepKind",
    "TableSchema",
    "TransactionState",
]
