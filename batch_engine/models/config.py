"""Engine configuration."""

from pydantic import BaseModel, Field

from batch_engine.models.transaction import IsolationLevel


class EngineConfig(BaseModel):
    """Configuration for the Batch Runner and API."""

    default_isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED
    abort_on_error: bool = False
    max_conflict_retries: int = Field(ge=0, default=3)
    max_history: int = Field(ge=1, default=100)
    diagnostics_db_path: str = ":memory:"
