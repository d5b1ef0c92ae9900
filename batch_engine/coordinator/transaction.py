"""
Transaction Coordinator — runs one batch of rules inside a transactional boundary.

States:
  IDLE → OPEN → (CHECKPOINTED)* → COMMITTED | ROLLED_BACK

Behavioral Contract:
- One coordinator processes one batch; rules are applied strictly in sequence
- Writes are buffered in a mutation log and only reach the store on commit,
  as the changed fields laid over the row committed at that moment
- REPEATABLE_READ / SERIALIZABLE read from a snapshot pinned at begin;
  READ_COMMITTED re-reads committed state before every rule and read
- rollback_to(name) undoes every mutation logged after the checkpoint and
  discards later checkpoints; the checkpoint itself survives
- Conflicting external writes are detected at commit and fail the whole
  batch with SerializationConflict; the caller retries from begin
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from batch_engine.errors import (
    DuplicateCheckpoint,
    InvalidTransactionState,
    SerializationConflict,
    StorageError,
    UnknownCheckpoint,
)
from batch_engine.evaluator.engine import RuleEvaluator
from batch_engine.models.record import Record
from batch_engine.models.rule import Rule
from batch_engine.models.transaction import (
    Checkpoint,
    IsolationLevel,
    Mutation,
    TransactionState,
)
from batch_engine.storage.store import RecordStore

logger = logging.getLogger(__name__)

Predicate = Callable[[Record], Optional[bool]]

_ACTIVE_STATES = (TransactionState.OPEN, TransactionState.CHECKPOINTED)


class TransactionCoordinator:
    """Sequences rules over a RecordStore with savepoint-style checkpoints."""

    def __init__(
        self,
        store: RecordStore,
        evaluator: Optional[RuleEvaluator] = None,
        batch_id: Optional[str] = None,
    ):
        self.store = store
        self.evaluator = evaluator or RuleEvaluator()
        self.batch_id = batch_id or f"batch_{uuid4().hex[:12]}"

        self.state = TransactionState.IDLE
        self.isolation_level: Optional[IsolationLevel] = None
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None

        self._snapshot: Dict[int, Record] = {}
        self._log: List[Mutation] = []
        self._writes: Dict[int, Dict[str, Any]] = {}
        self._base_versions: Dict[int, int] = {}
        self._checkpoints: List[Checkpoint] = []
        self._checkpoint_seq = 0
        self._predicates: List[Predicate] = []

    @property
    def is_active(self) -> bool:
        return self.state in _ACTIVE_STATES

    @property
    def checkpoints(self) -> List[Checkpoint]:
        return list(self._checkpoints)

    @property
    def mutation_log(self) -> List[Mutation]:
        return list(self._log)

    # === LIFECYCLE ===

    def begin(
        self, isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED
    ) -> "TransactionCoordinator":
        """Open the batch. Snapshot-based levels pin committed state now."""
        if self.state != TransactionState.IDLE:
            raise InvalidTransactionState(
                f"batch {self.batch_id} cannot begin: it is {self.state.value}"
            )

        self.isolation_level = isolation_level
        with self.store.lock:
            self._snapshot = {r.key: r for r in self.store.load()}
        self.state = TransactionState.OPEN
        self.started_at = datetime.utcnow()

        logger.info(
            "Batch %s started (%s, %d records visible)",
            self.batch_id, isolation_level.value, len(self._snapshot),
        )
        return self

    def commit(self) -> List[Record]:
        """Validate against concurrent writes, then save. Returns saved records."""
        self._require_active("commit")

        with self.store.lock:
            try:
                self._validate_commit()
            except SerializationConflict:
                self.rollback()
                raise

            pending = self._pending()
            try:
                saved = self.store.save(pending)
            except Exception as e:
                self.rollback()
                raise StorageError(
                    f"could not save batch {self.batch_id}",
                    detail=str(e),
                    context=f"commit of {len(pending)} records",
                ) from e

        self.state = TransactionState.COMMITTED
        self.completed_at = datetime.utcnow()
        logger.info(
            "Batch %s committed (%d records written, %d mutations)",
            self.batch_id, len(saved), len(self._log),
        )
        return saved

    def rollback(self) -> None:
        """Discard every mutation since begin."""
        self._require_active("rollback")

        discarded = len(self._log)
        self._log = []
        self._writes = {}
        self._checkpoints = []
        self.state = TransactionState.ROLLED_BACK
        self.completed_at = datetime.utcnow()
        logger.info("Batch %s rolled back (%d mutations discarded)", self.batch_id, discarded)

    @contextmanager
    def transaction(
        self, isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED
    ):
        """Begin, yield, commit; roll back if the block raises."""
        self.begin(isolation_level)
        try:
            yield self
        except Exception:
            if self.is_active:
                self.rollback()
            raise
        if self.is_active:
            self.commit()

    # === CHECKPOINTS ===

    def checkpoint(self, name: str) -> Checkpoint:
        """Mark the current mutation-log position under `name`."""
        self._require_active("checkpoint")

        if any(cp.name == name for cp in self._checkpoints):
            raise DuplicateCheckpoint(
                f'savepoint "{name}" already exists',
                context=f"batch {self.batch_id}",
            )

        self._checkpoint_seq += 1
        checkpoint = Checkpoint(
            name=name,
            sequence=self._checkpoint_seq,
            log_position=len(self._log),
            created_at=datetime.utcnow(),
        )
        self._checkpoints.append(checkpoint)
        self.state = TransactionState.CHECKPOINTED

        logger.debug("Batch %s checkpoint %s at log position %d",
                     self.batch_id, name, checkpoint.log_position)
        return checkpoint

    def rollback_to(self, name: str) -> Checkpoint:
        """Undo everything logged after checkpoint `name`."""
        self._require_active("rollback_to")

        index = next(
            (i for i in range(len(self._checkpoints) - 1, -1, -1)
             if self._checkpoints[i].name == name),
            None,
        )
        if index is None:
            raise UnknownCheckpoint(
                f'savepoint "{name}" does not exist',
                context=f"batch {self.batch_id}",
            )

        checkpoint = self._checkpoints[index]
        undone = len(self._log) - checkpoint.log_position
        self._truncate_log(checkpoint.log_position)
        self._checkpoints = self._checkpoints[:index + 1]

        logger.info("Batch %s rolled back to %s (%d mutations undone)",
                    self.batch_id, name, undone)
        return checkpoint

    # === STATEMENTS ===

    def apply(self, rule: Rule) -> Tuple[int, List[Record]]:
        """Evaluate `rule` against visible state and log its mutations."""
        self._require_active("apply")

        visible = self._visible()
        matched, updated = self.evaluator.apply(visible.values(), rule)

        for record in updated:
            self._log_write(record, visible[record.key].values, rule.label)
        self._predicates.append(rule.predicate)

        logger.debug("Batch %s rule %s: %d matched, %d updated",
                     self.batch_id, rule.label, matched, len(updated))
        return matched, updated

    def insert(self, values: Dict[str, Any], label: str = "insert") -> Record:
        """Validate and buffer a new row. The key is allocated immediately."""
        return self.insert_many([values], label=label)[0]

    def insert_many(
        self, rows: List[Dict[str, Any]], label: str = "insert"
    ) -> List[Record]:
        """
        Buffer several rows as one statement. Every row is validated before
        any key is allocated, so one bad row leaves nothing behind.
        """
        self._require_active("insert")

        validated = [self.evaluator.validate(values) for values in rows]
        inserted = []
        for row in validated:
            record = Record(key=self.store.next_key(), values=row)
            self._record_change(
                Mutation(key=record.key, before=None, after=row, rule_label=label)
            )
            inserted.append(record.model_copy(deep=True))
        return inserted

    def select(self, predicate: Predicate) -> List[Record]:
        self._require_active("select")
        self._predicates.append(predicate)
        return [
            r.model_copy(deep=True)
            for r in self.evaluator.select(self._visible().values(), predicate)
        ]

    def count(self, predicate: Predicate) -> int:
        self._require_active("count")
        self._predicates.append(predicate)
        return self.evaluator.count(self._visible().values(), predicate)

    def records(self) -> List[Record]:
        """Copy of the state this batch currently sees, in key order."""
        if not self.is_active:
            return self.store.load()
        return [r.model_copy(deep=True) for r in self._visible().values()]

    # === INTERNALS ===

    def _require_active(self, operation: str) -> None:
        if not self.is_active:
            raise InvalidTransactionState(
                f"cannot {operation}: batch {self.batch_id} is {self.state.value}"
            )

    def _visible(self) -> Dict[int, Record]:
        if self.isolation_level == IsolationLevel.READ_COMMITTED:
            base = {r.key: r for r in self.store.load()}
        else:
            base = dict(self._snapshot)
        for key, changes in self._writes.items():
            if key in base:
                base[key] = base[key].model_copy(
                    update={"values": {**base[key].values, **changes}}
                )
            else:
                base[key] = Record(key=key, values=dict(changes))
        return {k: base[k] for k in sorted(base)}

    def _pending(self) -> List[Record]:
        """The batch's changes laid over the current committed rows."""
        pending = []
        for key in sorted(self._writes):
            committed = self.store.get(key)
            values = committed.values if committed is not None else {}
            pending.append(Record(key=key, values={**values, **self._writes[key]}))
        return pending

    def _log_write(self, record: Record, before: Dict[str, Any], label: str) -> None:
        self._base_versions.setdefault(record.key, record.version)
        self._record_change(Mutation(
            key=record.key, before=dict(before), after=dict(record.values), rule_label=label,
        ))

    def _record_change(self, mutation: Mutation) -> None:
        self._log.append(mutation)
        self._merge_change(mutation)

    def _merge_change(self, mutation: Mutation) -> None:
        # Only the fields a mutation changed are kept
        if mutation.before is None:
            self._writes[mutation.key] = dict(mutation.after)
            return
        changed = {
            field: value for field, value in mutation.after.items()
            if field not in mutation.before or mutation.before[field] != value
        }
        self._writes.setdefault(mutation.key, {}).update(changed)

    def _truncate_log(self, position: int) -> None:
        """Drop log entries past `position` and rebuild the write set."""
        self._log = self._log[:position]
        self._writes = {}
        for m in self._log:
            self._merge_change(m)

    def _inserted_keys(self) -> Set[int]:
        return {m.key for m in self._log if m.before is None}

    def _validate_commit(self) -> None:
        if self.isolation_level == IsolationLevel.READ_COMMITTED:
            return

        current = self.store.versions()
        inserted = self._inserted_keys()

        # First updater wins
        for key in self._writes:
            if key in inserted:
                continue
            if current.get(key) != self._base_versions.get(key):
                raise SerializationConflict(
                    "could not serialize access due to concurrent update",
                    detail=f"Record {key} was modified after batch {self.batch_id} began.",
                    context=f"commit of batch {self.batch_id} ({self.isolation_level.value})",
                )

        if self.isolation_level != IsolationLevel.SERIALIZABLE:
            return

        # Changed or new rows that this batch read, or would now read
        for record in self.store.load():
            if record.key in inserted or record.key in self._writes:
                continue
            before = self._snapshot.get(record.key)
            if before is not None and before.version == record.version:
                continue
            candidates = [record] if before is None else [before, record]
            if any(self._matches(p, r) for p in self._predicates for r in candidates):
                raise SerializationConflict(
                    "could not serialize access due to read/write dependencies "
                    "among transactions",
                    detail=f"Record {record.key} changed under a predicate read "
                           f"by batch {self.batch_id}.",
                    context=f"commit of batch {self.batch_id} (serializable)",
                )

    @staticmethod
    def _matches(predicate: Predicate, record: Record) -> bool:
        # A predicate that cannot evaluate a foreign row counts as a read of it
        try:
            return predicate(record) is True
        except Exception:
            return True
