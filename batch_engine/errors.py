"""
Engine error taxonomy.

Every error carries a SQLSTATE-style state code plus the three pieces of
stacked diagnostics a handler can retrieve: message, detail and context.

Rule-level errors (ConstraintViolation, NullViolation, InvalidValue) are
caught at the step boundary and turned into DiagnosticEntry records.
Batch-level errors (SerializationConflict, StorageError,
InvalidTransactionState) are fatal to the batch and surfaced to the caller.
"""

from typing import Optional

from batch_engine.models.diagnostics import StateCode


class BatchEngineError(Exception):
    """Base class for all engine errors."""

    state_code: StateCode = StateCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        context: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.context = context


class ConstraintViolation(BatchEngineError):
    """A value falls outside a declared CHECK range."""
    state_code = StateCode.CHECK_VIOLATION


class NullViolation(BatchEngineError):
    """A required field is missing or null."""
    state_code = StateCode.NOT_NULL_VIOLATION


class InvalidValue(BatchEngineError):
    """A value cannot be represented as the declared field type."""
    state_code = StateCode.INVALID_TEXT_REPRESENTATION


class DuplicateCheckpoint(BatchEngineError):
    state_code = StateCode.SAVEPOINT_EXCEPTION


class UnknownCheckpoint(BatchEngineError):
    state_code = StateCode.INVALID_SAVEPOINT_SPECIFICATION


class SerializationConflict(BatchEngineError):
    """Concurrent external writes invalidate the batch. Retry from begin."""
    state_code = StateCode.SERIALIZATION_FAILURE


class InvalidTransactionState(BatchEngineError):
    """Operation not allowed in the coordinator's current state."""
    state_code = StateCode.INVALID_TRANSACTION_STATE


class StorageError(BatchEngineError):
    """The record or diagnostic store failed."""
    state_code = StateCode.SYSTEM_ERROR
