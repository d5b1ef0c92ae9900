"""Transaction state, checkpoints and the per-batch mutation log."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class IsolationLevel(str, Enum):
    READ_COMMITTED = "read_committed"       # Re-read committed state per rule
    REPEATABLE_READ = "repeatable_read"     # Snapshot pinned at begin
    SERIALIZABLE = "serializable"           # Snapshot + read/phantom validation


class TransactionState(str, Enum):
    IDLE = "idle"
    OPEN = "open"
    CHECKPOINTED = "checkpointed"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Checkpoint(BaseModel):
    """Named marker referencing a position in the batch's mutation log."""
    model_config = ConfigDict(frozen=True)

    name: str
    sequence: int = Field(ge=1)
    log_position: int = Field(ge=0)
    created_at: datetime


class Mutation(BaseModel):
    """One logged change. before=None means the batch inserted the record."""
    model_config = ConfigDict(frozen=True)

    key: int
    before: Optional[Dict[str, Any]] = None
    after: Dict[str, Any]
    rule_label: str
