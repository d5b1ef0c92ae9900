"""Records and the optional table schema they are validated against."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# A timestamp column with this default is filled with the insert time
DEFAULT_NOW = "now"


class FieldType(str, Enum):
    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    TEXT = "text"
    TIMESTAMP = "timestamp"


class FieldSpec(BaseModel):
    """A declared column with its NOT NULL, DEFAULT and CHECK constraints."""

    name: str
    type: FieldType
    required: bool = False                  # NOT NULL
    default: Any = None                     # Filled when a row omits the column
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    min_inclusive: bool = True
    max_inclusive: bool = True


class TableSchema(BaseModel):
    """Declared columns for a record set. Undeclared fields are rejected."""

    name: str
    fields: List[FieldSpec]

    def field(self, name: str) -> Optional[FieldSpec]:
        return next((f for f in self.fields if f.name == name), None)

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]


class Record(BaseModel):
    """
    One row. Identified by a stable integer key; `version` is bumped by the
    record store on every save and is what commit-time conflict checks compare.
    """

    key: int
    values: Dict[str, Any] = {}
    version: int = Field(ge=0, default=0)

    def get(self, field: str) -> Any:
        return self.values.get(field)
