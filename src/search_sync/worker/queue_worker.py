"""Polling worker that drains the change queue into the search index."""

import asyncio
from collections import OrderedDict
from collections.abc import Sequence
from datetime import UTC, datetime

from search_sync.config import Settings
from search_sync.core.constants import BACKEND_LEGACY
from search_sync.core.exceptions import PermanentChangeError
from search_sync.core.logging import get_logger
from search_sync.repositories.change_record_store import ChangeRecordStore
from search_sync.schemas.changes import (
    ChangeOperation,
    ChangeRecord,
    ChangeStatus,
    JobDescriptor,
    JobSubmission,
)
from search_sync.schemas.queue import BatchResult, QueueHealth, QueueStats, RecoveryResult
from search_sync.worker.processor import ChangeProcessor
from search_sync.worker.recovery import StuckJobRecovery

logger = get_logger(__name__)

# Completed records sampled for the average latency statistic.
_LATENCY_SAMPLE_SIZE = 100

# Queue health thresholds.
_MAX_HEALTHY_FAILED = 10
_MAX_HEALTHY_PROCESSING = 20
_MAX_HEALTHY_PENDING = 100


class QueueWorker:
    """Fetches pending records, applies them and keeps the queue healthy.

    Records of one batch run concurrently up to ``parallelism``; records that
    touch the same entity run one after another in ``created_at`` order.
    """

    def __init__(
        self,
        store: ChangeRecordStore,
        processor: ChangeProcessor,
        *,
        batch_size: int = 5,
        parallelism: int | None = None,
        processing_timeout: float = 30.0,
        max_retries: int = 3,
        poll_interval: float = 5.0,
        health_check_interval: float = 15.0,
        recovery: StuckJobRecovery | None = None,
    ):
        self.store = store
        self.processor = processor
        self.batch_size = batch_size
        self.parallelism = parallelism or batch_size
        self.processing_timeout = processing_timeout
        self.max_retries = max_retries
        self.poll_interval = poll_interval
        self.health_check_interval = health_check_interval
        self.recovery = recovery or StuckJobRecovery(store, max_retries=max_retries)

        self._in_flight: dict[int, tuple[str, str]] = {}
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: ChangeRecordStore,
        processor: ChangeProcessor,
    ) -> "QueueWorker":
        recovery = StuckJobRecovery(
            store,
            stuck_timeout=settings.worker_stuck_timeout,
            long_stuck_timeout=settings.worker_long_stuck_timeout,
            retry_threshold=settings.worker_stuck_retry_threshold,
            max_retries=settings.worker_max_retries,
        )
        return cls(
            store,
            processor,
            batch_size=settings.worker_batch_size,
            parallelism=settings.worker_parallelism,
            processing_timeout=settings.worker_processing_timeout,
            max_retries=settings.worker_max_retries,
            poll_interval=settings.worker_poll_interval,
            health_check_interval=settings.worker_health_check_interval,
            recovery=recovery,
        )

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def in_flight_ids(self) -> set[int]:
        return set(self._in_flight)

    # ==================== Processing ====================

    async def fetch_batch(self, max_size: int | None = None) -> list[ChangeRecord]:
        """Claim up to ``max_size`` pending records, oldest first.

        Records whose entity is still being processed by this worker are left
        pending for a later tick. An empty list means the queue is drained.
        """
        limit = max_size or self.batch_size
        busy_keys = set(self._in_flight.values())

        candidates = await self.store.fetch_pending(limit)
        claimed: list[ChangeRecord] = []
        for record in candidates:
            if record.entity_key in busy_keys:
                logger.debug(f"Skipping record {record.id}: entity {record.entity_key} in flight")
                continue
            claimed_record = await self.store.claim(record.id)
            if claimed_record is not None:
                self._in_flight[claimed_record.id] = claimed_record.entity_key
                claimed.append(claimed_record)

        if claimed:
            logger.info(f"Claimed {len(claimed)} of {len(candidates)} pending records")
        return claimed

    async def process_record(self, record: ChangeRecord) -> ChangeStatus:
        """Apply one claimed record and persist its outcome.

        Never raises; returns the status the record was moved to. If the
        status write itself fails the record stays ``processing`` for stuck
        detection to pick up.
        """
        self._in_flight[record.id] = record.entity_key
        try:
            try:
                await asyncio.wait_for(
                    self.processor.apply(record), timeout=self.processing_timeout
                )
            except PermanentChangeError as e:
                logger.error(f"Record {record.id} cannot be applied: {e.message}")
                await self.store.update_status(
                    record.id,
                    ChangeStatus.FAILED,
                    processed_at=datetime.now(UTC),
                    error_message=e.message,
                    expected_status=ChangeStatus.PROCESSING,
                )
                return ChangeStatus.FAILED
            except TimeoutError:
                return await self._retry_or_fail(
                    record, f"Processing timeout after {self.processing_timeout:g}s"
                )
            except Exception as e:
                logger.error(f"Error processing record {record.id}: {e}", exc_info=True)
                return await self._retry_or_fail(record, str(e) or type(e).__name__)

            updated = await self.store.update_status(
                record.id,
                ChangeStatus.COMPLETED,
                processed_at=datetime.now(UTC),
                expected_status=ChangeStatus.PROCESSING,
            )
            if not updated:
                logger.warning(f"Record {record.id} applied but was no longer processing")
            logger.info(
                f"Completed record {record.id} ({record.operation.value} "
                f"{record.entity_kind}:{record.entity_id})"
            )
            return ChangeStatus.COMPLETED
        except Exception as e:
            logger.error(f"Failed to persist outcome of record {record.id}: {e}", exc_info=True)
            return ChangeStatus.PROCESSING
        finally:
            self._in_flight.pop(record.id, None)

    async def _retry_or_fail(self, record: ChangeRecord, error: str) -> ChangeStatus:
        if record.retry_count < self.max_retries:
            retry = record.retry_count + 1
            await self.store.update_status(
                record.id,
                ChangeStatus.PENDING,
                error_message=f"Retry {retry}/{self.max_retries}: {error}",
                retry_count=retry,
                expected_status=ChangeStatus.PROCESSING,
            )
            logger.warning(f"Record {record.id} scheduled for retry {retry}/{self.max_retries}")
            return ChangeStatus.PENDING

        await self.store.update_status(
            record.id,
            ChangeStatus.FAILED,
            processed_at=datetime.now(UTC),
            error_message=f"Max retries exceeded: {error}",
            expected_status=ChangeStatus.PROCESSING,
        )
        logger.error(f"Record {record.id} failed after {record.retry_count + 1} attempts")
        return ChangeStatus.FAILED

    async def _defer(self, record: ChangeRecord, blocker: ChangeRecord) -> None:
        """Release a claimed record to pending without spending a retry."""
        try:
            await self.store.update_status(
                record.id,
                ChangeStatus.PENDING,
                error_message=record.error_message,
                expected_status=ChangeStatus.PROCESSING,
            )
            logger.info(f"Deferred record {record.id} behind unfinished record {blocker.id}")
        except Exception as e:
            logger.error(f"Failed to defer record {record.id}: {e}", exc_info=True)
        finally:
            self._in_flight.pop(record.id, None)

    async def process_batch(self, records: Sequence[ChangeRecord]) -> BatchResult:
        """Process claimed records with per-record failure isolation."""
        result = BatchResult(fetched=len(records))
        if not records:
            return result

        groups: OrderedDict[tuple[str, str], list[ChangeRecord]] = OrderedDict()
        for record in sorted(records, key=lambda r: (r.created_at, r.id)):
            groups.setdefault(record.entity_key, []).append(record)

        semaphore = asyncio.Semaphore(self.parallelism)

        async def run_group(group: list[ChangeRecord]) -> list[ChangeStatus | None]:
            outcomes: list[ChangeStatus | None] = []
            for position, record in enumerate(group):
                async with semaphore:
                    status = await self.process_record(record)
                outcomes.append(status)
                if status is not ChangeStatus.COMPLETED:
                    # Later changes must not overtake the unfinished one.
                    for later in group[position + 1 :]:
                        await self._defer(later, record)
                        outcomes.append(None)
                    break
            return outcomes

        results = await asyncio.gather(
            *(run_group(group) for group in groups.values()), return_exceptions=True
        )

        for outcome in results:
            if isinstance(outcome, BaseException):
                logger.error(f"Exception during batch processing: {outcome}")
                continue
            for status in outcome:
                if status is None:
                    result.deferred += 1
                elif status is ChangeStatus.COMPLETED:
                    result.completed += 1
                elif status is ChangeStatus.PENDING:
                    result.retried += 1
                elif status is ChangeStatus.FAILED:
                    result.failed += 1

        logger.info(
            f"Batch complete: {result.completed} completed, {result.retried} retried, "
            f"{result.failed} failed, {result.deferred} deferred"
        )
        return result

    async def run_once(self) -> BatchResult:
        """One worker tick: fetch a batch and process it."""
        records = await self.fetch_batch()
        if not records:
            logger.debug("No pending records")
            return BatchResult()
        return await self.process_batch(records)

    async def check_stuck_jobs(self) -> RecoveryResult:
        """One health-check tick; records in flight here are never considered stuck."""
        return await self.recovery.run_once(exclude_ids=self.in_flight_ids)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start the poll loop and the stuck-job health check loop."""
        if self.is_running:
            logger.warning("Queue worker already running")
            return

        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._poll_loop(), name="queue-worker-poll"),
            asyncio.create_task(self._health_loop(), name="queue-worker-health"),
        ]
        logger.info(
            f"Queue worker started (batch size {self.batch_size}, "
            f"parallelism {self.parallelism}, poll every {self.poll_interval:g}s)"
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop both loops, letting the current batch finish within ``timeout``."""
        if self._stop_event is None:
            return
        self._stop_event.set()

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                logger.warning(f"Cancelling {task.get_name()} after shutdown timeout")
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        self._tasks = []
        logger.info("Queue worker stopped")

    async def _sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; returns True if a stop was requested."""
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except TimeoutError:
            return False

    async def _poll_loop(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            drained = True
            try:
                result = await self.run_once()
                drained = result.fetched < self.batch_size
            except Exception as e:
                logger.error(f"Error in poll cycle: {e}", exc_info=True)

            if drained and await self._sleep(self.poll_interval):
                break

    async def _health_loop(self) -> None:
        assert self._stop_event is not None
        while not await self._sleep(self.health_check_interval):
            try:
                result = await self.check_stuck_jobs()
                if result.detected:
                    logger.info(
                        f"Health check: {result.detected} stuck, "
                        f"{result.reset} reset, {result.failed} failed"
                    )
            except Exception as e:
                logger.error(f"Error in health check: {e}", exc_info=True)

    # ==================== Legacy submission & administration ====================

    async def submit(self, job: JobDescriptor) -> JobSubmission:
        """Accept a job on the in-process backend by enqueueing it."""
        record = await self.store.enqueue(job)
        return JobSubmission(id=str(record.id), status=record.status.value, backend=BACKEND_LEGACY)

    async def get_stats(self) -> QueueStats:
        """Queue statistics computed from the store on every call."""
        counts = await self.store.count_by_status()
        stuck = await self.recovery.count_stuck(exclude_ids=self.in_flight_ids)
        samples = await self.store.fetch_recent_completed(_LATENCY_SAMPLE_SIZE)

        latencies = [
            (record.processed_at - record.created_at).total_seconds() * 1000
            for record in samples
            if record.processed_at is not None
        ]
        return QueueStats(
            total=counts.total,
            pending=counts.pending,
            processing=counts.processing,
            completed=counts.completed,
            failed=counts.failed,
            stuck=stuck,
            avg_processing_time_ms=sum(latencies) / len(latencies) if latencies else 0.0,
            last_processed_at=samples[0].processed_at if samples else None,
        )

    async def get_health_status(self) -> QueueHealth:
        stats = await self.get_stats()
        issues: list[str] = []
        recommendations: list[str] = []

        if stats.stuck > 0:
            issues.append(f"{stats.stuck} stuck jobs detected")
            recommendations.append("Run the stuck-job health check to reset them")
        if stats.failed > _MAX_HEALTHY_FAILED:
            issues.append(f"{stats.failed} failed jobs (high failure rate)")
            recommendations.append("Review failed jobs and fix the underlying errors")
        if stats.processing > _MAX_HEALTHY_PROCESSING:
            issues.append(f"{stats.processing} jobs in processing")
            recommendations.append("Check that the queue worker is running")
        if stats.pending > _MAX_HEALTHY_PENDING:
            issues.append(f"{stats.pending} pending jobs (queue backlog)")
            recommendations.append("Increase batch size or poll frequency")

        return QueueHealth(is_healthy=not issues, issues=issues, recommendations=recommendations)

    async def retry_failed_jobs(self) -> int:
        """Move failed records that still have retries left back to pending."""
        failed = await self.store.fetch_by_status(
            ChangeStatus.FAILED, max_retry_count=self.max_retries
        )
        retried = 0
        for record in failed:
            if await self.store.update_status(
                record.id,
                ChangeStatus.PENDING,
                error_message="Manual retry",
                expected_status=ChangeStatus.FAILED,
            ):
                retried += 1
        logger.info(f"Manually retried {retried} failed records")
        return retried

    async def clear_queue(self, status: ChangeStatus | None = None) -> int:
        return await self.store.delete_by_status(status)

    async def list_jobs(
        self,
        *,
        status: ChangeStatus | None = None,
        operation: ChangeOperation | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ChangeRecord]:
        return await self.store.list_jobs(
            status=status, operation=operation, limit=limit, offset=offset
        )
