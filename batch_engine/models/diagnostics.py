"""Diagnostic Entry — structured record of one failed statement."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class StateCode(str, Enum):
    """SQLSTATE-style codes identifying the kind of failure."""
    CHECK_VIOLATION = "23514"
    NOT_NULL_VIOLATION = "23502"
    INVALID_TEXT_REPRESENTATION = "22P02"
    UNDEFINED_COLUMN = "42703"
    SAVEPOINT_EXCEPTION = "3B000"
    INVALID_SAVEPOINT_SPECIFICATION = "3B001"
    SERIALIZATION_FAILURE = "40001"
    INVALID_TRANSACTION_STATE = "25000"
    SYSTEM_ERROR = "58000"
    INTERNAL_ERROR = "XX000"        # Catch-all for anything unclassified


class DiagnosticEntry(BaseModel):
    """
    Stacked diagnostics captured at the point a statement failed.

    Append-only: created once by the Diagnostic Recorder, never mutated.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    batch_id: Optional[str] = None
    rule_label: str
    state_code: StateCode
    message: str
    detail: Optional[str] = None
    context: Optional[str] = None
    recorded_at: datetime
