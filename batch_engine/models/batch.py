"""Batch steps and results — what goes into the runner and what comes out."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, model_validator

from batch_engine.models.diagnostics import DiagnosticEntry
from batch_engine.models.record import Record
from batch_engine.models.rule import RuleSpec
from batch_engine.models.transaction import IsolationLevel, TransactionState


class StepKind(str, Enum):
    RULE = "rule"
    INSERT = "insert"
    CHECKPOINT = "checkpoint"
    ROLLBACK_TO = "rollback_to"


class BatchStep(BaseModel):
    """A single declarative step in a batch."""

    kind: StepKind
    rule: Optional[RuleSpec] = None         # kind=rule
    values: Optional[Dict[str, Any]] = None  # kind=insert, one row
    rows: Optional[List[Dict[str, Any]]] = None  # kind=insert, several rows as one statement
    name: Optional[str] = None              # kind=checkpoint | rollback_to

    @model_validator(mode="after")
    def _check_payload(self) -> "BatchStep":
        if self.kind == StepKind.RULE and self.rule is None:
            raise ValueError("rule step requires a rule")
        if self.kind == StepKind.INSERT:
            if (self.values is None) == (self.rows is None):
                raise ValueError("insert step requires exactly one of values or rows")
            if self.rows is not None and not self.rows:
                raise ValueError("insert step rows must not be empty")
        if self.kind in (StepKind.CHECKPOINT, StepKind.ROLLBACK_TO) and not self.name:
            raise ValueError(f"{self.kind.value} step requires a name")
        return self

    @property
    def label(self) -> str:
        if self.kind == StepKind.RULE:
            return self.rule.label
        if self.kind == StepKind.INSERT:
            return "insert"
        return f"{self.kind.value}:{self.name}"

    @property
    def insert_rows(self) -> List[Dict[str, Any]]:
        if self.rows is not None:
            return self.rows
        return [self.values] if self.values is not None else []


class RuleOutcome(BaseModel):
    """How one step went."""

    label: str
    kind: StepKind
    success: bool
    matched_count: int = 0
    updated_count: int = 0
    record_key: Optional[int] = None        # First key allocated by an insert
    record_keys: List[int] = []
    diagnostic_id: Optional[str] = None


class BatchResult(BaseModel):
    """Final record snapshot plus ordered diagnostics for one batch."""

    batch_id: str
    isolation_level: IsolationLevel
    state: TransactionState
    outcomes: List[RuleOutcome] = []
    diagnostics: List[DiagnosticEntry] = []
    records: List[Record] = []
    aborted: bool = False
    started_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)
