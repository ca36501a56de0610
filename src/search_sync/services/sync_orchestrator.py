"""Full resync, periodic incremental sync and aggregate pipeline health."""

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from search_sync.config import Settings
from search_sync.core.exceptions import MalformedPayload, SyncAlreadyRunning
from search_sync.core.logging import get_logger
from search_sync.repositories.change_record_store import ChangeRecordStore
from search_sync.repositories.corpus_source import CorpusSource
from search_sync.schemas.changes import EntityKind
from search_sync.schemas.health import HealthReport, HealthVerdict, SyncResult, SyncRunStatus
from search_sync.services.document_transformer import DocumentTransformer
from search_sync.services.search_index import INDEX_MAPPINGS, SearchIndexClient
from search_sync.worker.queue_worker import QueueWorker

logger = get_logger(__name__)

# Coarse progress milestones of a full resync.
_PROGRESS_INDEXES_READY = 10
_PROGRESS_BULK_DONE = 90


class SyncOrchestrator:
    """Coordinates full-corpus backfill and the incremental sync heartbeat.

    Only one run (full or incremental) is active at a time. Run errors are
    recorded on the status instead of being raised.
    """

    def __init__(
        self,
        store: ChangeRecordStore,
        search_index: SearchIndexClient,
        transformer: DocumentTransformer,
        corpus: CorpusSource,
        worker: QueueWorker,
        *,
        entity_kinds: Sequence[EntityKind] = (EntityKind.LISTING, EntityKind.CATEGORY_SUGGESTION),
        page_size: int = 500,
        sync_interval: float = 300.0,
        incremental_max_wait: float = 30.0,
        incremental_poll_interval: float = 1.0,
        version: str = "0.1.0",
    ):
        self.store = store
        self.search_index = search_index
        self.transformer = transformer
        self.corpus = corpus
        self.worker = worker
        self.entity_kinds = list(entity_kinds)
        self.page_size = page_size
        self.sync_interval = sync_interval
        self.incremental_max_wait = incremental_max_wait
        self.incremental_poll_interval = incremental_poll_interval
        self.version = version

        self._status = SyncRunStatus()
        self._schedule_task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: ChangeRecordStore,
        search_index: SearchIndexClient,
        transformer: DocumentTransformer,
        corpus: CorpusSource,
        worker: QueueWorker,
    ) -> "SyncOrchestrator":
        return cls(
            store,
            search_index,
            transformer,
            corpus,
            worker,
            entity_kinds=[EntityKind(kind) for kind in settings.resync_entity_kinds],
            page_size=settings.resync_page_size,
            sync_interval=settings.sync_interval,
            incremental_max_wait=settings.incremental_sync_max_wait,
            incremental_poll_interval=settings.incremental_sync_poll_interval,
            version=settings.app_version,
        )

    @property
    def status(self) -> SyncRunStatus:
        return self._status.model_copy(deep=True)

    def _begin_run(self) -> None:
        self._status.is_running = True
        self._status.progress_percent = 0
        self._status.errors = []

    def _finish_run(self, total: int, errors: list[str]) -> None:
        self._status.is_running = False
        self._status.total_synced = total
        self._status.last_run_at = datetime.now(UTC)
        self._status.errors = errors

    # ==================== Full resync ====================

    async def full_resync(self) -> SyncResult:
        """Rebuild every configured index from the system of record.

        Raises:
            SyncAlreadyRunning: Another run is active.
        """
        if self._status.is_running:
            raise SyncAlreadyRunning()

        self._begin_run()
        errors: list[str] = []
        total = 0
        logger.info(f"Starting full resync of {[kind.value for kind in self.entity_kinds]}")

        try:
            ready: list[EntityKind] = []
            for kind in self.entity_kinds:
                index_name = self.transformer.index_names[kind]
                if await self.search_index.recreate_index(index_name, INDEX_MAPPINGS[kind]):
                    ready.append(kind)
                else:
                    errors.append(f"Failed to recreate index '{index_name}'")
            self._status.progress_percent = _PROGRESS_INDEXES_READY

            span = _PROGRESS_BULK_DONE - _PROGRESS_INDEXES_READY
            for position, kind in enumerate(ready, start=1):
                total += await self._resync_kind(kind, errors)
                progress = _PROGRESS_INDEXES_READY + span * position // len(ready)
                self._status.progress_percent = progress
            self._status.progress_percent = 100
        except Exception as e:
            logger.error(f"Full resync aborted: {e}", exc_info=True)
            errors.append(f"Full resync aborted: {e}")
        finally:
            self._finish_run(total, errors)

        if errors:
            logger.warning(f"Full resync finished with {len(errors)} errors, {total} documents synced")
        else:
            logger.info(f"Full resync finished: {total} documents synced")
        return SyncResult(success=not errors, count=total, errors=errors)

    async def _resync_kind(self, kind: EntityKind, errors: list[str]) -> int:
        index_name = self.transformer.index_names[kind]
        synced = 0

        async for rows in self.corpus.iter_pages(kind, self.page_size):
            documents = []
            for row in rows:
                try:
                    instruction = self.transformer.snapshot(kind, row)
                except MalformedPayload as e:
                    errors.append(f"{kind.value}: {e.message}")
                    continue
                if instruction is not None and instruction.document is not None:
                    documents.append((instruction.document_id, instruction.document))

            if not documents:
                continue
            if await self.search_index.bulk_index(documents, index_name):
                synced += len(documents)
            else:
                errors.append(f"Bulk index of {len(documents)} {kind.value} documents failed")

        logger.info(f"Synced {synced} {kind.value} documents into '{index_name}'")
        return synced

    # ==================== Incremental sync ====================

    async def incremental_sync(self) -> SyncResult:
        """Wait, within a bound, for the worker to drain the pending queue.

        While another run is active this is a no-op reported as a successful
        run with nothing drained.
        """
        if self._status.is_running:
            logger.info("Incremental sync skipped: another sync run is active")
            return SyncResult(success=True, count=0)

        self._begin_run()
        errors: list[str] = []
        drained = 0

        try:
            initial = (await self.store.count_by_status()).pending
            remaining = initial
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.incremental_max_wait

            while remaining > 0 and loop.time() < deadline:
                await asyncio.sleep(self.incremental_poll_interval)
                remaining = (await self.store.count_by_status()).pending

            drained = max(0, initial - remaining)
            if remaining > 0:
                errors.append(
                    f"{remaining} records still pending after {self.incremental_max_wait:g}s"
                )
            self._status.progress_percent = 100
        except Exception as e:
            logger.error(f"Incremental sync failed: {e}", exc_info=True)
            errors.append(f"Incremental sync failed: {e}")
        finally:
            self._finish_run(drained, errors)

        logger.info(f"Incremental sync finished: {drained} records drained")
        return SyncResult(success=not errors, count=drained, errors=errors)

    # ==================== Scheduling ====================

    @property
    def is_scheduled(self) -> bool:
        return self._schedule_task is not None and not self._schedule_task.done()

    async def start(self) -> None:
        """Run ``incremental_sync`` every ``sync_interval`` seconds."""
        if self.is_scheduled:
            return
        self._stop_event = asyncio.Event()
        self._schedule_task = asyncio.create_task(self._schedule_loop(), name="sync-schedule")
        logger.info(f"Incremental sync scheduled every {self.sync_interval:g}s")

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._schedule_task is not None:
            await asyncio.gather(self._schedule_task, return_exceptions=True)
        self._schedule_task = None
        self._status.next_sync_at = None

    async def _schedule_loop(self) -> None:
        assert self._stop_event is not None
        while True:
            self._status.next_sync_at = datetime.now(UTC) + timedelta(seconds=self.sync_interval)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.sync_interval)
                return
            except TimeoutError:
                pass

            try:
                await self.incremental_sync()
            except Exception as e:
                logger.error(f"Scheduled sync failed: {e}", exc_info=True)

    async def trigger_manual_sync(self) -> SyncResult:
        """Run an incremental sync now and restart the schedule from this point."""
        was_scheduled = self.is_scheduled
        if was_scheduled:
            await self.stop()
        try:
            return await self.incremental_sync()
        finally:
            if was_scheduled:
                await self.start()

    # ==================== Health ====================

    async def health_check(self) -> HealthReport:
        """Aggregate worker, search index and store health into one verdict."""
        store_ok = await self.store.ping()
        index_ok = await self.search_index.ping()
        worker_running = self.worker.is_running

        if not store_ok or not index_ok:
            verdict = HealthVerdict.UNHEALTHY
        elif not worker_running:
            verdict = HealthVerdict.DEGRADED
        else:
            verdict = HealthVerdict.HEALTHY

        return HealthReport(
            status=verdict,
            worker_running=worker_running,
            search_index_reachable=index_ok,
            store_reachable=store_ok,
            version=self.version,
            sync=self.status,
        )
