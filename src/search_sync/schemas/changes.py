"""Change record and job schemas for the sync queue.

Rows in the change queue table look like:

```json
{
    "id": 4711,
    "table_name": "listings",
    "operation": "UPDATE",
    "record_id": "9f0c...",
    "change_data": {"old": {"status": "pending_review"}, "new": {"status": "active"}},
    "status": "pending",
    "created_at": "2025-10-01T12:30:45.123Z",
    "processed_at": null,
    "error_message": null,
    "retry_count": 0,
    "claimed_at": null
}
```
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from search_sync.core.constants import JOB_TYPE_SEARCH_SYNC


class EntityKind(str, Enum):
    """Watched entity types (one per source table)."""

    LISTING = "listings"
    PROFILE = "profiles"
    CATEGORY = "categories"
    CATEGORY_SUGGESTION = "category_ai_suggestions"
    INVENTORY_ITEM = "inventory_items"


class ChangeOperation(str, Enum):
    """Captured mutation type."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeStatus(str, Enum):
    """Change record lifecycle.

    pending -> processing -> {completed | failed}; failed may go back to
    pending while retry_count < max_retries.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ChangeRecord(BaseModel):
    """One captured mutation in the change queue."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    # Raw table name; resolved to EntityKind by the document transformer.
    entity_kind: str = Field(..., alias="table_name")
    operation: ChangeOperation
    entity_id: str = Field(..., alias="record_id")
    payload: dict[str, Any] = Field(default_factory=dict, alias="change_data")
    status: ChangeStatus = ChangeStatus.PENDING
    created_at: datetime
    processed_at: datetime | None = None
    error_message: str | None = None
    retry_count: int = Field(default=0, ge=0)
    claimed_at: datetime | None = None

    @field_validator("entity_id", mode="before")
    @classmethod
    def _stringify_entity_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("payload", mode="before")
    @classmethod
    def _default_payload(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("operation", mode="before")
    @classmethod
    def _normalize_operation(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @property
    def entity_key(self) -> tuple[str, str]:
        """Key used to serialize operations on the same entity."""
        return (self.entity_kind, self.entity_id)


class StatusCounts(BaseModel):
    """Record counts per lifecycle status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed


class JobDescriptor(BaseModel):
    """Backend-neutral job submitted through the hybrid router."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = JOB_TYPE_SEARCH_SYNC
    entity_kind: str = Field(..., alias="table")
    operation: ChangeOperation
    entity_id: str = Field(..., alias="recordId")
    payload: dict[str, Any] = Field(default_factory=dict, alias="changeData")

    @field_validator("entity_id", mode="before")
    @classmethod
    def _stringify_entity_id(cls, value: Any) -> str:
        return str(value)

    @classmethod
    def from_record(cls, record: ChangeRecord) -> "JobDescriptor":
        """Build a job descriptor from a captured change record."""
        return cls(
            entity_kind=record.entity_kind,
            operation=record.operation,
            entity_id=record.entity_id,
            payload=record.payload,
        )

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the external queue service job endpoint."""
        return {
            "type": self.type,
            "data": {
                "table": self.entity_kind,
                "operation": self.operation.value,
                "recordId": self.entity_id,
                "changeData": self.payload,
            },
        }


class JobSubmission(BaseModel):
    """Acknowledgement returned by either backend after accepting a job."""

    id: str
    status: str
    backend: str
