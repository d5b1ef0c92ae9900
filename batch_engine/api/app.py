"""
Batch Engine API — FastAPI endpoints.

Exposes the engine's functionality via a REST API for:
- Record inspection and single-row inserts
- Batch submission
- Statement debugging
- Diagnostics queries
- Engine status and configuration
"""

from typing import List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from batch_engine.coordinator.runner import BatchRunner
from batch_engine.diagnostics.store import DiagnosticStore
from batch_engine.errors import SerializationConflict, StorageError
from batch_engine.models.batch import BatchStep, StepKind
from batch_engine.models.config import EngineConfig
from batch_engine.models.diagnostics import StateCode
from batch_engine.models.record import TableSchema
from batch_engine.models.transaction import IsolationLevel
from batch_engine.storage.store import RecordStore


# --- Request/Response Models ---

class RecordInsertRequest(BaseModel):
    values: dict


class BatchRequest(BaseModel):
    steps: List[BatchStep]
    isolation_level: Optional[IsolationLevel] = None
    abort_on_error: Optional[bool] = None
    retry_on_conflict: bool = False


class DebugRequest(BaseModel):
    step: BatchStep
    isolation_level: Optional[IsolationLevel] = None


# --- Application Factory ---

def create_app(
    record_store: Optional[RecordStore] = None,
    diagnostic_store: Optional[DiagnosticStore] = None,
    schema: Optional[TableSchema] = None,
    config: Optional[EngineConfig] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Batch Engine API",
        description="Conditional batch updates with checkpoints and diagnostics",
        version="0.1.0",
    )

    # Initialize components
    cfg = config or EngineConfig()
    rs = record_store or RecordStore()
    ds = diagnostic_store or DiagnosticStore(cfg.diagnostics_db_path)
    runner = BatchRunner(store=rs, diagnostic_store=ds, schema=schema, config=cfg)

    # Store components on app state for access in endpoints
    app.state.record_store = rs
    app.state.diagnostic_store = ds
    app.state.runner = runner

    def _batch_error(e):
        status = 409 if isinstance(e, SerializationConflict) else 503
        return HTTPException(status, {"state_code": e.state_code.value, "message": e.message,
                                      "detail": e.detail})

    def _run(steps, isolation_level, abort_on_error, retry):
        try:
            if retry:
                return runner.run_with_retry(steps, isolation_level, abort_on_error)
            return runner.run(steps, isolation_level, abort_on_error)
        except (SerializationConflict, StorageError) as e:
            raise _batch_error(e)

    # === RECORDS ===

    @app.get("/records")
    def list_records():
        """All committed records."""
        return rs.get_state_snapshot()

    @app.get("/records/{key}")
    def get_record(key: int):
        record = rs.get(key)
        if not record:
            raise HTTPException(404, "Record not found")
        return record.model_dump(mode="json")

    @app.post("/records")
    def insert_record(req: RecordInsertRequest):
        """Insert one row in its own batch. Failures become diagnostics."""
        step = BatchStep(kind=StepKind.INSERT, values=req.values)
        result = _run([step], None, True, False)
        outcome = result.outcomes[0]
        return {
            "inserted": outcome.success,
            "key": outcome.record_key if outcome.success else None,
            "batch_id": result.batch_id,
            "diagnostic": (
                result.diagnostics[0].model_dump(mode="json")
                if result.diagnostics else None
            ),
        }

    # === BATCHES ===

    @app.post("/batches")
    def submit_batch(req: BatchRequest):
        """Run a batch of steps from begin to commit."""
        result = _run(req.steps, req.isolation_level, req.abort_on_error, req.retry_on_conflict)
        return result.model_dump(mode="json")

    @app.get("/batches/history")
    def batch_history(limit: int = 20):
        if limit <= 0:
            return []
        return runner.history[-limit:]

    @app.post("/statements/debug")
    def debug_statement(req: DebugRequest):
        """Run one statement; report whether it failed and why."""
        try:
            debugged, entry = runner.debug_statement(req.step, req.isolation_level)
        except (SerializationConflict, StorageError) as e:
            raise _batch_error(e)
        return {
            "debugged": debugged,
            "diagnostic": entry.model_dump(mode="json") if entry else None,
        }

    # === DIAGNOSTICS ===

    @app.get("/diagnostics")
    def get_diagnostics(limit: int = 50):
        return [d.model_dump(mode="json") for d in ds.query_recent(limit=limit)]

    @app.get("/diagnostics/by-batch/{batch_id}")
    def get_diagnostics_by_batch(batch_id: str):
        return [d.model_dump(mode="json") for d in ds.query_by_batch(batch_id)]

    @app.get("/diagnostics/by-state/{state_code}")
    def get_diagnostics_by_state(state_code: StateCode):
        return [d.model_dump(mode="json") for d in ds.query_by_state(state_code)]

    # === ENGINE ===

    @app.get("/engine/status")
    def engine_status():
        return {
            "records": rs.count(),
            "diagnostics": ds.count(),
            "batches_run": len(runner.history),
            "schema": schema.name if schema else None,
            "config": runner.config.model_dump(mode="json"),
        }

    @app.get("/engine/config")
    def get_engine_config():
        return runner.config.model_dump(mode="json")

    @app.put("/engine/config")
    def update_engine_config(new_config: EngineConfig):
        """Update runtime configuration. The diagnostics path is fixed at startup."""
        runner.config = new_config
        return new_config.model_dump(mode="json")

    return app


# Default application instance
app = create_app()
