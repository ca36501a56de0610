"""Percentage-based traffic split between the legacy worker and the queue service.

Routing counters are process-local and reset on restart. They steer the
rolling split toward the target and feed dashboards; correctness never
depends on them.
"""

import random
from typing import Protocol

from search_sync.config import Settings
from search_sync.core.constants import BACKEND_EXTERNAL, BACKEND_LEGACY
from search_sync.core.exceptions import ValidationException
from search_sync.core.logging import get_logger
from search_sync.schemas.changes import JobDescriptor, JobSubmission
from search_sync.schemas.queue import QueueServiceStats
from search_sync.schemas.routing import RoutingResult, RoutingStatus

logger = get_logger(__name__)


class LegacyBackend(Protocol):
    async def submit(self, job: JobDescriptor) -> JobSubmission: ...


class NewBackend(Protocol):
    async def submit_job(self, job: JobDescriptor) -> JobSubmission: ...

    async def health_check(self) -> bool: ...

    async def get_stats(self) -> QueueServiceStats: ...


class HybridRouter:
    """Routes each job to one backend and falls back to legacy on failure."""

    def __init__(
        self,
        legacy: LegacyBackend,
        new_backend: NewBackend,
        *,
        new_backend_enabled: bool = False,
        target_percentage: float = 0.0,
        fallback_enabled: bool = True,
        catch_up_bonus: float = 10.0,
        catch_up_cap: float = 100.0,
        on_track_tolerance: float = 5.0,
        rng: random.Random | None = None,
    ):
        self.legacy = legacy
        self.new_backend = new_backend
        self.catch_up_bonus = catch_up_bonus
        self.catch_up_cap = catch_up_cap
        self.on_track_tolerance = on_track_tolerance
        self._rng = rng or random.Random()

        self.new_backend_enabled = new_backend_enabled
        self.target_percentage = self._validate_percentage(target_percentage)
        self.fallback_enabled = fallback_enabled
        self.total_routed = 0
        self.total_routed_to_new = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        legacy: LegacyBackend,
        new_backend: NewBackend,
    ) -> "HybridRouter":
        return cls(
            legacy,
            new_backend,
            new_backend_enabled=settings.hybrid_new_backend_enabled,
            target_percentage=settings.hybrid_target_percentage,
            fallback_enabled=settings.hybrid_fallback_enabled,
            catch_up_bonus=settings.hybrid_catch_up_bonus,
            catch_up_cap=settings.hybrid_catch_up_cap,
            on_track_tolerance=settings.hybrid_on_track_tolerance,
        )

    @staticmethod
    def _validate_percentage(percentage: float) -> float:
        if not 0 <= percentage <= 100:
            raise ValidationException(f"Percentage must be between 0 and 100, got {percentage}")
        return float(percentage)

    @property
    def current_percentage(self) -> float:
        if self.total_routed == 0:
            return 0.0
        return self.total_routed_to_new / self.total_routed * 100

    def should_use_new_backend(self) -> bool:
        """Draw a routing decision, biased upward while behind target."""
        if not self.new_backend_enabled:
            return False

        threshold = self.target_percentage
        if self.total_routed > 0 and self.current_percentage < self.target_percentage:
            threshold = min(self.target_percentage + self.catch_up_bonus, self.catch_up_cap)

        return self._rng.random() * 100 < threshold

    async def process_job(self, job: JobDescriptor) -> RoutingResult:
        """Submit a job through the chosen backend.

        Raises:
            QueueServiceError: The queue service failed and fallback is disabled.
        """
        self.total_routed += 1

        if not self.should_use_new_backend():
            submission = await self.legacy.submit(job)
            return RoutingResult(success=True, backend=BACKEND_LEGACY, submission=submission)

        try:
            submission = await self.new_backend.submit_job(job)
        except Exception as e:
            if not self.fallback_enabled:
                logger.error(f"Queue service submission failed, fallback disabled: {e}")
                raise

            logger.warning(
                f"Queue service submission failed for {job.entity_kind}:{job.entity_id}, "
                f"falling back to legacy worker: {e}"
            )
            submission = await self.legacy.submit(job)
            return RoutingResult(
                success=True,
                backend=BACKEND_LEGACY,
                fell_back=True,
                submission=submission,
                error=str(e),
            )

        self.total_routed_to_new += 1
        return RoutingResult(success=True, backend=BACKEND_EXTERNAL, submission=submission)

    # ==================== Administration ====================

    def set_target_percentage(self, percentage: float) -> RoutingStatus:
        """Set the share of jobs sent to the queue service; 0 disables routing to it."""
        self.target_percentage = self._validate_percentage(percentage)
        self.new_backend_enabled = self.target_percentage > 0
        logger.info(f"Hybrid routing target set to {self.target_percentage:g}%")
        return self.get_status()

    def enable_new_backend(self) -> RoutingStatus:
        self.target_percentage = 100.0
        self.new_backend_enabled = True
        logger.info("All jobs now routed to the queue service")
        return self.get_status()

    def fallback_to_legacy(self) -> RoutingStatus:
        self.target_percentage = 0.0
        self.new_backend_enabled = False
        logger.warning("Hybrid routing forced back to the legacy worker")
        return self.get_status()

    def set_fallback_enabled(self, enabled: bool) -> RoutingStatus:
        self.fallback_enabled = enabled
        return self.get_status()

    def reset_counters(self) -> None:
        self.total_routed = 0
        self.total_routed_to_new = 0

    def get_status(self) -> RoutingStatus:
        current = self.current_percentage
        return RoutingStatus(
            new_backend_enabled=self.new_backend_enabled,
            target_percentage=self.target_percentage,
            current_percentage=round(current, 2),
            fallback_enabled=self.fallback_enabled,
            total_routed=self.total_routed,
            total_routed_to_new=self.total_routed_to_new,
            is_on_track=abs(current - self.target_percentage) <= self.on_track_tolerance,
        )

    # ==================== Diagnostics ====================

    async def check_new_backend_health(self) -> bool:
        try:
            return await self.new_backend.health_check()
        except Exception as e:
            logger.warning(f"Queue service health check raised: {e}")
            return False

    async def get_new_backend_stats(self) -> QueueServiceStats | None:
        try:
            return await self.new_backend.get_stats()
        except Exception as e:
            logger.warning(f"Queue service stats unavailable: {e}")
            return None
