"""Tests for the Diagnostic Recorder and Diagnostic Store."""

from datetime import datetime

import pytest

from batch_engine.diagnostics.recorder import DiagnosticRecorder, classify
from batch_engine.diagnostics.store import DiagnosticStore
from batch_engine.errors import (
    ConstraintViolation,
    NullViolation,
    SerializationConflict,
    StorageError,
    UnknownCheckpoint,
)
from batch_engine.models.diagnostics import DiagnosticEntry, StateCode


def _make_entry(entry_id: str = "diag_1", batch_id: str = "batch_1",
                state_code: StateCode = StateCode.CHECK_VIOLATION) -> DiagnosticEntry:
    return DiagnosticEntry(
        id=entry_id,
        batch_id=batch_id,
        rule_label="insert",
        state_code=state_code,
        message="failed to insert",
        detail="This a1c value is higher than clinically accepted norms.",
        context="a1c is typically less than 14",
        recorded_at=datetime.utcnow(),
    )


class TestClassify:
    def test_engine_errors_keep_their_diagnostics(self):
        error = ConstraintViolation("check failed", detail="row", context="rule x")
        assert classify(error) == (StateCode.CHECK_VIOLATION, "check failed", "row", "rule x")

    def test_each_engine_error_has_its_own_code(self):
        assert classify(NullViolation("n"))[0] == StateCode.NOT_NULL_VIOLATION
        assert classify(UnknownCheckpoint("u"))[0] == StateCode.INVALID_SAVEPOINT_SPECIFICATION
        assert classify(SerializationConflict("s"))[0] == StateCode.SERIALIZATION_FAILURE
        assert classify(StorageError("s"))[0] == StateCode.SYSTEM_ERROR

    def test_key_error_is_undefined_column(self):
        try:
            {}["id"]
        except KeyError as e:
            code, message, detail, context = classify(e)
        assert code == StateCode.UNDEFINED_COLUMN
        assert message == 'column "id" does not exist'
        assert "test_key_error_is_undefined_column" in context

    def test_catch_all_arm(self):
        try:
            raise ZeroDivisionError("division by zero")
        except ZeroDivisionError as e:
            code, message, detail, context = classify(e)
        assert code == StateCode.INTERNAL_ERROR
        assert message == "division by zero"
        assert detail == "ZeroDivisionError"
        assert context is not None

    def test_catch_all_without_traceback(self):
        code, message, detail, context = classify(RuntimeError())
        assert code == StateCode.INTERNAL_ERROR
        assert message == "RuntimeError"
        assert context is None


class TestDiagnosticRecorder:
    def test_record_appends_to_store(self):
        store = DiagnosticStore()
        recorder = DiagnosticRecorder(store, batch_id="batch_1")

        entry = recorder.record("insert_patient", NullViolation(
            'null value in column "glucose"', detail="Glucose can not be null.",
        ))

        assert entry.state_code == StateCode.NOT_NULL_VIOLATION
        assert entry.batch_id == "batch_1"
        assert entry.rule_label == "insert_patient"
        assert store.count() == 1
        assert store.get_by_id(entry.id) == entry
        assert recorder.entries == [entry]

    def test_record_without_store(self):
        recorder = DiagnosticRecorder()
        entry = recorder.record("r", ValueError("bad"))
        assert entry.state_code == StateCode.INTERNAL_ERROR
        assert len(recorder.entries) == 1

    def test_persist_failure_goes_to_error_channel(self):
        store = DiagnosticStore()
        store.close()
        reported = []
        recorder = DiagnosticRecorder(
            store, batch_id="batch_1",
            error_channel=lambda entry, error: reported.append((entry, error)),
        )

        entry = recorder.record("r", ConstraintViolation("check"))

        assert len(reported) == 1
        assert reported[0][0] == entry
        assert isinstance(reported[0][1], StorageError)
        assert recorder.entries == [entry]

    def test_failing_error_channel_does_not_raise(self):
        store = DiagnosticStore()
        store.close()

        def channel(entry, error):
            raise RuntimeError("channel down")

        recorder = DiagnosticRecorder(store, error_channel=channel)
        entry = recorder.record("r", ConstraintViolation("check"))
        assert entry.state_code == StateCode.CHECK_VIOLATION

    def test_default_channel_logs(self, caplog):
        store = DiagnosticStore()
        store.close()
        recorder = DiagnosticRecorder(store)
        with caplog.at_level("ERROR"):
            recorder.record("r", ConstraintViolation("check"))
        assert "Could not persist diagnostic" in caplog.text


class TestDiagnosticStore:
    def setup_method(self):
        self.store = DiagnosticStore(db_path=":memory:")

    def test_append_and_retrieve(self):
        entry = self.store.append(_make_entry())
        retrieved = self.store.get_by_id("diag_1")
        assert retrieved == entry
        assert self.store.get_by_id("nope") is None

    def test_query_by_batch_preserves_order(self):
        self.store.append(_make_entry("diag_1", "batch_1"))
        self.store.append(_make_entry("diag_2", "batch_2"))
        self.store.append(_make_entry("diag_3", "batch_1"))
        assert [e.id for e in self.store.query_by_batch("batch_1")] == ["diag_1", "diag_3"]

    def test_query_by_state(self):
        self.store.append(_make_entry("diag_1", state_code=StateCode.CHECK_VIOLATION))
        self.store.append(_make_entry("diag_2", state_code=StateCode.NOT_NULL_VIOLATION))
        results = self.store.query_by_state(StateCode.NOT_NULL_VIOLATION)
        assert [e.id for e in results] == ["diag_2"]
        assert [e.id for e in self.store.query_by_state("23514")] == ["diag_1"]

    def test_query_by_rule(self):
        self.store.append(_make_entry("diag_1"))
        assert len(self.store.query_by_rule("insert")) == 1
        assert self.store.query_by_rule("other") == []

    def test_query_recent(self):
        for i in range(5):
            self.store.append(_make_entry(f"diag_{i}"))
        recent = self.store.query_recent(limit=2)
        assert [e.id for e in recent] == ["diag_3", "diag_4"]

    def test_duplicate_id_is_storage_error(self):
        self.store.append(_make_entry("diag_1"))
        with pytest.raises(StorageError):
            self.store.append(_make_entry("diag_1"))

    def test_persists_to_file(self, tmp_path):
        path = str(tmp_path / "errors.db")
        store = DiagnosticStore(path)
        store.append(_make_entry())
        store.close()

        reopened = DiagnosticStore(path)
        assert reopened.count() == 1
        reopened.close()
