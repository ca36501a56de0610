"""Health and sync-run schemas."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class HealthVerdict(str, Enum):
    """Aggregate pipeline health."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class SyncRunStatus(BaseModel):
    """State of the (single) active or most recent sync run."""

    is_running: bool = False
    progress_percent: int = Field(default=0, ge=0, le=100)
    last_run_at: datetime | None = None
    next_sync_at: datetime | None = None
    total_synced: int = 0
    errors: list[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Result of one full or incremental sync run."""

    success: bool
    count: int = 0
    errors: list[str] = Field(default_factory=list)


class HealthReport(BaseModel):
    """Health verdict used by external monitoring."""

    status: HealthVerdict = Field(..., description="Aggregate health verdict")
    worker_running: bool = Field(..., description="Queue worker loop is active")
    search_index_reachable: bool = Field(..., description="Search index answered a ping")
    store_reachable: bool = Field(..., description="Change store answered a ping")
    version: str = Field(..., description="Application version")
    sync: SyncRunStatus = Field(default_factory=SyncRunStatus)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "status": "healthy",
                    "worker_running": True,
                    "search_index_reachable": True,
                    "store_reachable": True,
                    "version": "0.1.0",
                }
            ]
        }
    }
