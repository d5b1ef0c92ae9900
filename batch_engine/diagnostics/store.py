"""
Diagnostic Store — append-only record of every failed statement.

Behavioral Contract:
- Append-only. No entry is ever modified or deleted.
- Columns mirror a classic `errors` table: state, msg, detail, context,
  plus the batch and rule the failure came from.
- Queryable by batch, state code and rule label.
"""

import json
import sqlite3
from typing import List, Optional

from batch_engine.errors import StorageError
from batch_engine.models.diagnostics import DiagnosticEntry, StateCode


class DiagnosticStore:
    """
    SQLite-backed diagnostic store.
    Defaults to an in-memory database; pass a file path to persist.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the errors table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS errors (
                id TEXT PRIMARY KEY,
                batch_id TEXT,
                rule_label TEXT NOT NULL,
                state TEXT NOT NULL,
                msg TEXT NOT NULL,
                detail TEXT,
                context TEXT,
                recorded_at TEXT NOT NULL,
                entry_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_errors_batch_id ON errors(batch_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_errors_state ON errors(state)
        """)
        self._conn.commit()

    def append(self, entry: DiagnosticEntry) -> DiagnosticEntry:
        """Append one entry. Raises StorageError if the write fails."""
        try:
            self._conn.execute(
                """
                INSERT INTO errors (
                    id, batch_id, rule_label, state, msg, detail, context,
                    recorded_at, entry_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.batch_id,
                    entry.rule_label,
                    entry.state_code.value,
                    entry.message,
                    entry.detail,
                    entry.context,
                    entry.recorded_at.isoformat(),
                    json.dumps(entry.model_dump(mode="json")),
                ),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(
                f"could not append diagnostic {entry.id}",
                detail=str(e),
                context=f"diagnostic store {self.db_path}",
            ) from e
        return entry

    def _deserialize(self, row: sqlite3.Row) -> DiagnosticEntry:
        return DiagnosticEntry.model_validate_json(row["entry_json"])

    def get_by_id(self, entry_id: str) -> Optional[DiagnosticEntry]:
        row = self._conn.execute(
            "SELECT entry_json FROM errors WHERE id = ?", (entry_id,)
        ).fetchone()
        return self._deserialize(row) if row else None

    def query_by_batch(self, batch_id: str) -> List[DiagnosticEntry]:
        """All diagnostics recorded for one batch, in order."""
        rows = self._conn.execute(
            "SELECT entry_json FROM errors WHERE batch_id = ? ORDER BY rowid",
            (batch_id,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_by_state(self, state_code: StateCode) -> List[DiagnosticEntry]:
        rows = self._conn.execute(
            "SELECT entry_json FROM errors WHERE state = ? ORDER BY rowid",
            (StateCode(state_code).value,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_by_rule(self, rule_label: str) -> List[DiagnosticEntry]:
        rows = self._conn.execute(
            "SELECT entry_json FROM errors WHERE rule_label = ? ORDER BY rowid",
            (rule_label,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_recent(self, limit: int = 50) -> List[DiagnosticEntry]:
        """Most recent entries, oldest first."""
        rows = self._conn.execute(
            "SELECT entry_json FROM errors ORDER BY rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) as cnt FROM errors").fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
