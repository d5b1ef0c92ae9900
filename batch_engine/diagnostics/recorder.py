"""
Diagnostic Recorder — turns a failed statement into a DiagnosticEntry.

Captures the same stacked diagnostics a procedural handler would retrieve
(state code, message, detail, context) and appends them to the caller's
DiagnosticStore.

Behavioral Contract:
- record() never raises
- Every error maps to exactly one StateCode; anything unclassified falls
  through to the INTERNAL_ERROR catch-all arm
- A failure to persist an entry is handed to the caller's error channel,
  and the entry is still returned and kept in memory
"""

import logging
import traceback
from datetime import datetime
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from batch_engine.diagnostics.store import DiagnosticStore
from batch_engine.errors import BatchEngineError
from batch_engine.models.diagnostics import DiagnosticEntry, StateCode

logger = logging.getLogger(__name__)

ErrorChannel = Callable[[DiagnosticEntry, Exception], None]


def _log_persist_failure(entry: DiagnosticEntry, error: Exception) -> None:
    logger.error(
        "Could not persist diagnostic %s for rule %s: %s",
        entry.id, entry.rule_label, error,
    )


def _traceback_context(error: Exception) -> Optional[str]:
    frames = traceback.extract_tb(error.__traceback__)
    if not frames:
        return None
    frame = frames[-1]
    return f"{frame.name} line {frame.lineno} at {frame.filename}"


def classify(error: Exception) -> Tuple[StateCode, str, Optional[str], Optional[str]]:
    """Map an error to (state_code, message, detail, context)."""
    if isinstance(error, BatchEngineError):
        return error.state_code, error.message, error.detail, error.context
    if isinstance(error, KeyError):
        column = error.args[0] if error.args else "?"
        return (
            StateCode.UNDEFINED_COLUMN,
            f'column "{column}" does not exist',
            "KeyError",
            _traceback_context(error),
        )
    return (
        StateCode.INTERNAL_ERROR,
        str(error) or type(error).__name__,
        type(error).__name__,
        _traceback_context(error),
    )


class DiagnosticRecorder:
    """Records failures for one batch."""

    def __init__(
        self,
        store: Optional[DiagnosticStore] = None,
        batch_id: Optional[str] = None,
        error_channel: Optional[ErrorChannel] = None,
    ):
        self.store = store
        self.batch_id = batch_id
        self.error_channel = error_channel or _log_persist_failure
        self._entries: List[DiagnosticEntry] = []

    @property
    def entries(self) -> List[DiagnosticEntry]:
        return list(self._entries)

    def record(self, rule_label: str, error: Exception) -> DiagnosticEntry:
        """Capture `error` as a DiagnosticEntry and append it to the store."""
        state_code, message, detail, context = classify(error)
        entry = DiagnosticEntry(
            id=f"diag_{uuid4().hex[:12]}",
            batch_id=self.batch_id,
            rule_label=rule_label,
            state_code=state_code,
            message=message,
            detail=detail,
            context=context,
            recorded_at=datetime.utcnow(),
        )
        self._entries.append(entry)
        logger.warning("Rule %s failed [%s]: %s", rule_label, state_code.value, message)

        if self.store is not None:
            try:
                self.store.append(entry)
            except Exception as e:
                self._report(entry, e)
        return entry

    def _report(self, entry: DiagnosticEntry, error: Exception) -> None:
        try:
            self.error_channel(entry, error)
        except Exception:
            logger.exception("Error channel failed while reporting diagnostic %s", entry.id)
