"""Hybrid routing schemas."""

from pydantic import BaseModel, Field

from search_sync.schemas.changes import JobSubmission


class RoutingStatus(BaseModel):
    """Read-only snapshot of the hybrid routing state."""

    new_backend_enabled: bool
    target_percentage: float = Field(..., ge=0, le=100)
    current_percentage: float
    fallback_enabled: bool
    total_routed: int
    total_routed_to_new: int
    is_on_track: bool


class RoutingResult(BaseModel):
    """Outcome of routing one job."""

    success: bool
    backend: str
    fell_back: bool = False
    submission: JobSubmission | None = None
    error: str | None = None
