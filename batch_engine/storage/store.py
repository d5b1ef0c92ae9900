"""
Record Store — the committed state that batches read from and save into.

Read by: Transaction Coordinator (at begin, or per rule under READ_COMMITTED)
Written by: Transaction Coordinator on commit + external writers

Every save bumps the record's version. Keys come from a serial sequence and
are never reused, even when the batch that allocated them rolls back.
"""

import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from batch_engine.models.record import Record


class RecordStore:
    """
    In-memory record store.
    Hold `lock` across a read-validate-save sequence to make it atomic.
    """

    def __init__(self, records: Optional[Iterable[Record]] = None):
        self._records: Dict[int, Record] = {}
        self._next_key = 1
        self.lock = threading.RLock()
        for record in records or []:
            self._records[record.key] = record.model_copy(deep=True)
            self._next_key = max(self._next_key, record.key + 1)

    def next_key(self) -> int:
        """Allocate the next serial key."""
        with self.lock:
            key = self._next_key
            self._next_key += 1
            return key

    def load(
        self, criteria: Optional[Callable[[Record], Optional[bool]]] = None
    ) -> List[Record]:
        """Copies of committed records, in key order, optionally filtered."""
        with self.lock:
            records = [self._records[k] for k in sorted(self._records)]
            if criteria is not None:
                records = [r for r in records if criteria(r) is True]
            return [r.model_copy(deep=True) for r in records]

    def get(self, key: int) -> Optional[Record]:
        with self.lock:
            record = self._records.get(key)
            return record.model_copy(deep=True) if record else None

    def versions(self) -> Dict[int, int]:
        """Current version of every committed record."""
        with self.lock:
            return {k: r.version for k, r in self._records.items()}

    def save(self, records: Iterable[Record]) -> List[Record]:
        """Persist records, bumping each one's version. Returns saved copies."""
        saved = []
        with self.lock:
            for record in records:
                existing = self._records.get(record.key)
                version = existing.version + 1 if existing else 1
                stored = record.model_copy(
                    update={"version": version, "values": dict(record.values)}
                )
                self._records[record.key] = stored
                self._next_key = max(self._next_key, record.key + 1)
                saved.append(stored.model_copy(deep=True))
        return saved

    def insert(self, values: Dict[str, Any]) -> Record:
        """Autocommitted single-row insert (used by external writers)."""
        with self.lock:
            record = Record(key=self.next_key(), values=dict(values))
            return self.save([record])[0]

    def update(self, key: int, changes: Dict[str, Any]) -> Optional[Record]:
        """Autocommitted single-row update (used by external writers)."""
        with self.lock:
            existing = self._records.get(key)
            if existing is None:
                return None
            record = existing.model_copy(update={"values": {**existing.values, **changes}})
            return self.save([record])[0]

    def count(self) -> int:
        with self.lock:
            return len(self._records)

    def get_state_snapshot(self) -> List[dict]:
        """Serializable snapshot of all committed records."""
        return [r.model_dump(mode="json") for r in self.load()]
