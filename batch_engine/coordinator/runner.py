"""
Batch Runner — drives one coordinator from begin to commit over a list of steps.

Behavioral Contract:
- Steps run strictly in order; a step's predicate may depend on what the
  previous step wrote
- Any step-level error is caught at the step boundary, recorded as a
  DiagnosticEntry, and the batch continues (unless abort_on_error is set,
  in which case the whole batch is rolled back)
- Batch-level errors (SerializationConflict, StorageError) are recorded and
  then re-raised; the caller retries the whole batch from begin
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple, Union

from batch_engine.coordinator.transaction import TransactionCoordinator
from batch_engine.diagnostics.recorder import DiagnosticRecorder, ErrorChannel
from batch_engine.diagnostics.store import DiagnosticStore
from batch_engine.errors import SerializationConflict, StorageError
from batch_engine.evaluator.conditions import compile_rule
from batch_engine.evaluator.engine import RuleEvaluator
from batch_engine.models.batch import BatchResult, BatchStep, RuleOutcome, StepKind
from batch_engine.models.config import EngineConfig
from batch_engine.models.diagnostics import DiagnosticEntry
from batch_engine.models.record import TableSchema
from batch_engine.models.rule import Rule
from batch_engine.models.transaction import IsolationLevel
from batch_engine.storage.store import RecordStore

logger = logging.getLogger(__name__)

Step = Union[Rule, BatchStep]


class BatchRunner:
    """
    Runs batches against a RecordStore and records their failures in a
    DiagnosticStore. Holds no per-batch state between runs beyond history.
    """

    def __init__(
        self,
        store: RecordStore,
        diagnostic_store: Optional[DiagnosticStore] = None,
        schema: Optional[TableSchema] = None,
        config: Optional[EngineConfig] = None,
        error_channel: Optional[ErrorChannel] = None,
    ):
        self.store = store
        self.diagnostic_store = diagnostic_store
        self.schema = schema
        self.config = config or EngineConfig()
        self.error_channel = error_channel
        self._history: List[dict] = []

    @property
    def history(self) -> List[dict]:
        return list(self._history)

    def run(
        self,
        steps: Sequence[Step],
        isolation_level: Optional[IsolationLevel] = None,
        abort_on_error: Optional[bool] = None,
    ) -> BatchResult:
        """Run `steps` as one batch and return its result."""
        level = isolation_level or self.config.default_isolation_level
        abort = self.config.abort_on_error if abort_on_error is None else abort_on_error

        coordinator = TransactionCoordinator(self.store, RuleEvaluator(self.schema))
        recorder = DiagnosticRecorder(
            self.diagnostic_store, coordinator.batch_id, self.error_channel
        )
        coordinator.begin(level)

        outcomes = []
        aborted = False
        for step in steps:
            outcome = self._run_step(coordinator, recorder, step)
            outcomes.append(outcome)
            if not outcome.success and abort:
                logger.warning(
                    "Batch %s aborted at step %s", coordinator.batch_id, outcome.label
                )
                coordinator.rollback()
                aborted = True
                break

        if not aborted:
            try:
                coordinator.commit()
            except (SerializationConflict, StorageError) as e:
                recorder.record("commit", e)
                self._remember(coordinator, outcomes, aborted=True)
                raise

        result = BatchResult(
            batch_id=coordinator.batch_id,
            isolation_level=level,
            state=coordinator.state,
            outcomes=outcomes,
            diagnostics=recorder.entries,
            records=self.store.load(),
            aborted=aborted,
            started_at=coordinator.started_at,
            completed_at=coordinator.completed_at,
        )
        self._remember(coordinator, outcomes, aborted)
        return result

    def run_with_retry(
        self,
        steps: Sequence[Step],
        isolation_level: Optional[IsolationLevel] = None,
        abort_on_error: Optional[bool] = None,
        retries: Optional[int] = None,
    ) -> BatchResult:
        """Re-run the whole batch from begin on SerializationConflict."""
        retries = self.config.max_conflict_retries if retries is None else retries
        attempt = 0
        while True:
            try:
                return self.run(steps, isolation_level, abort_on_error)
            except SerializationConflict:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.warning("Serialization conflict, retrying batch (%d/%d)", attempt, retries)

    def debug_statement(
        self,
        step: Step,
        isolation_level: Optional[IsolationLevel] = None,
    ) -> Tuple[bool, Optional[DiagnosticEntry]]:
        """
        Run a single statement in its own batch.
        Returns (True, entry) if it failed and was debugged, (False, None) if
        it ran cleanly and was committed.
        """
        result = self.run([step], isolation_level, abort_on_error=True)
        if result.diagnostics:
            return True, result.diagnostics[0]
        return False, None

    # --- Internals ---

    def _run_step(
        self,
        coordinator: TransactionCoordinator,
        recorder: DiagnosticRecorder,
        step: Step,
    ) -> RuleOutcome:
        label = step.label
        kind = StepKind.RULE if isinstance(step, Rule) else step.kind
        try:
            return self._dispatch(coordinator, step, label, kind)
        except Exception as e:
            entry = recorder.record(label, e)
            return RuleOutcome(
                label=label, kind=kind, success=False, diagnostic_id=entry.id
            )

    def _dispatch(
        self,
        coordinator: TransactionCoordinator,
        step: Step,
        label: str,
        kind: StepKind,
    ) -> RuleOutcome:
        if isinstance(step, Rule):
            matched, updated = coordinator.apply(step)
            return RuleOutcome(
                label=label, kind=kind, success=True,
                matched_count=matched, updated_count=len(updated),
            )

        if kind == StepKind.RULE:
            matched, updated = coordinator.apply(compile_rule(step.rule))
            return RuleOutcome(
                label=label, kind=kind, success=True,
                matched_count=matched, updated_count=len(updated),
            )
        if kind == StepKind.INSERT:
            records = coordinator.insert_many(step.insert_rows, label=label)
            keys = [r.key for r in records]
            return RuleOutcome(
                label=label, kind=kind, success=True,
                updated_count=len(keys), record_key=keys[0], record_keys=keys,
            )
        if kind == StepKind.CHECKPOINT:
            coordinator.checkpoint(step.name)
        else:
            coordinator.rollback_to(step.name)
        return RuleOutcome(label=label, kind=kind, success=True)

    def _remember(
        self,
        coordinator: TransactionCoordinator,
        outcomes: List[RuleOutcome],
        aborted: bool,
    ) -> None:
        self._history.append({
            "batch_id": coordinator.batch_id,
            "isolation_level": coordinator.isolation_level.value,
            "state": coordinator.state.value,
            "steps": len(outcomes),
            "failed": sum(1 for o in outcomes if not o.success),
            "aborted": aborted,
            "started_at": coordinator.started_at.isoformat(),
            "completed_at": (
                coordinator.completed_at.isoformat()
                if coordinator.completed_at else datetime.utcnow().isoformat()
            ),
        })
        if len(self._history) > self.config.max_history:
            self._history = self._history[-self.config.max_history:]
