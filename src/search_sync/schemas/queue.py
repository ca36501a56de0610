"""Queue statistics, health and batch outcome schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class QueueStats(BaseModel):
    """Change queue statistics, computed on demand from the store."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    stuck: int = 0
    avg_processing_time_ms: float = 0.0
    last_processed_at: datetime | None = None


class QueueHealth(BaseModel):
    """Operator-facing queue health summary."""

    is_healthy: bool
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class BatchResult(BaseModel):
    """Outcome of one worker tick."""

    fetched: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    # Released back to pending behind an unfinished record of the same entity.
    deferred: int = 0


class RecoveryResult(BaseModel):
    """Outcome of one stuck-job health-check tick."""

    detected: int = 0
    reset: int = 0
    failed: int = 0


class QueueServiceStats(BaseModel):
    """Statistics reported by the external queue service."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = 0
    extra: dict[str, Any] = Field(default_factory=dict)
