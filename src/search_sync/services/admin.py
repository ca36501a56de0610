"""Administrative operations over the sync pipeline.

Thin callers (HTTP controllers, scripts, dashboards) use this facade; queries
return current values and never raise on an observable queue state.
"""

from typing import Any
from uuid import uuid4

from search_sync.core.exceptions import SyncAlreadyRunning, ValidationException
from search_sync.core.logging import get_logger
from search_sync.schemas.changes import (
    ChangeOperation,
    ChangeRecord,
    ChangeStatus,
    EntityKind,
    JobDescriptor,
)
from search_sync.schemas.health import HealthReport, SyncResult, SyncRunStatus
from search_sync.schemas.queue import QueueHealth, QueueServiceStats, QueueStats
from search_sync.schemas.routing import RoutingResult, RoutingStatus
from search_sync.services.hybrid_router import HybridRouter
from search_sync.services.sync_orchestrator import SyncOrchestrator
from search_sync.worker.queue_worker import QueueWorker

logger = get_logger(__name__)


class QueueAdministration:
    """Facade over the worker, the hybrid router and the sync orchestrator."""

    def __init__(
        self,
        worker: QueueWorker,
        router: HybridRouter,
        orchestrator: SyncOrchestrator,
    ):
        self.worker = worker
        self.router = router
        self.orchestrator = orchestrator

    # Routing

    def get_routing_status(self) -> RoutingStatus:
        return self.router.get_status()

    def set_target_percentage(self, percentage: float) -> RoutingStatus:
        """Raises ValidationException for a percentage outside [0, 100]."""
        return self.router.set_target_percentage(percentage)

    def enable_new_backend(self) -> RoutingStatus:
        return self.router.enable_new_backend()

    def fallback_to_legacy(self) -> RoutingStatus:
        return self.router.fallback_to_legacy()

    async def get_new_backend_health(self) -> bool:
        return await self.router.check_new_backend_health()

    async def get_new_backend_stats(self) -> QueueServiceStats | None:
        return await self.router.get_new_backend_stats()

    async def submit_test_job(self, entity_kind: EntityKind = EntityKind.LISTING) -> RoutingResult:
        """Route a synthetic job that never publishes anything."""
        entity_id = f"test-{uuid4()}"
        payload: dict[str, Any] = {
            "id": entity_id,
            "title": "Synthetic routing test",
            "status": "pending_review",
            "is_approved": False,
            "is_active": False,
        }
        job = JobDescriptor(
            entity_kind=entity_kind.value,
            operation=ChangeOperation.INSERT,
            entity_id=entity_id,
            payload=payload,
        )
        result = await self.router.process_job(job)
        logger.info(f"Test job {entity_id} routed to {result.backend}")
        return result

    # Sync

    def get_sync_status(self) -> SyncRunStatus:
        return self.orchestrator.status

    async def trigger_full_sync(self) -> SyncResult:
        try:
            return await self.orchestrator.full_resync()
        except SyncAlreadyRunning as e:
            return SyncResult(success=False, errors=[e.message])

    async def trigger_incremental_sync(self) -> SyncResult:
        return await self.orchestrator.trigger_manual_sync()

    async def health_check(self) -> HealthReport:
        return await self.orchestrator.health_check()

    # Queue

    async def get_queue_stats(self) -> QueueStats:
        return await self.worker.get_stats()

    async def get_queue_health(self) -> QueueHealth:
        return await self.worker.get_health_status()

    async def list_jobs(
        self,
        *,
        status: ChangeStatus | None = None,
        operation: ChangeOperation | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ChangeRecord]:
        return await self.worker.list_jobs(
            status=status, operation=operation, limit=limit, offset=offset
        )

    async def retry_failed_jobs(self) -> int:
        return await self.worker.retry_failed_jobs()

    async def clear_queue(self, status: ChangeStatus | str | None = None) -> int:
        """Delete records matching ``status`` (all records when None)."""
        try:
            resolved = ChangeStatus(status) if status is not None else None
        except ValueError:
            raise ValidationException(f"Unknown queue status: {status}") from None
        cleared = await self.worker.clear_queue(resolved)
        logger.info(f"Cleared {cleared} records from the change queue")
        return cleared
