"""Tests for the change queue worker."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from search_sync.core.exceptions import SearchIndexError
from search_sync.schemas.changes import ChangeOperation, ChangeRecord, ChangeStatus, JobDescriptor
from search_sync.services.document_transformer import DocumentTransformer
from search_sync.services.search_index import SearchIndexClient
from search_sync.worker.processor import ChangeProcessor
from search_sync.worker.queue_worker import QueueWorker

pytestmark = pytest.mark.asyncio


@pytest.fixture
def processor(transformer: DocumentTransformer, search_index: SearchIndexClient) -> ChangeProcessor:
    return ChangeProcessor(transformer, search_index)


@pytest.fixture
def worker(store, processor: ChangeProcessor) -> QueueWorker:
    return QueueWorker(store, processor, batch_size=10, processing_timeout=5.0, max_retries=3)


def _failing_worker(store, error: Exception, **kwargs) -> QueueWorker:
    processor = MagicMock()
    processor.apply = AsyncMock(side_effect=error)
    return QueueWorker(store, processor, batch_size=10, max_retries=3, **kwargs)


def _listing(status: str) -> dict:
    return {"id": "42", "title": "Bike", "category": "Sports", "status": status}


async def test_fetch_batch_claims_oldest_first(store, worker: QueueWorker):
    now = datetime.now(UTC)
    newer = store.add(entity_id="2", payload=_listing("active"), created_at=now)
    older = store.add(entity_id="1", payload=_listing("active"), created_at=now - timedelta(minutes=1))

    batch = await worker.fetch_batch(1)

    assert [r.id for r in batch] == [older.id]
    assert store.get(older.id).status is ChangeStatus.PROCESSING
    assert store.get(older.id).claimed_at is not None
    assert store.get(newer.id).status is ChangeStatus.PENDING


async def test_fetch_batch_on_empty_queue(worker: QueueWorker):
    assert await worker.fetch_batch() == []
    result = await worker.run_once()
    assert result.fetched == 0


async def test_listing_lifecycle_scenario(store, worker: QueueWorker, search_index: SearchIndexClient):
    """pending_review -> active -> sold: not indexed, then indexed, then deleted."""
    search_index.index_document = AsyncMock(wraps=search_index.index_document)  # type: ignore[method-assign]
    search_index.delete_document = AsyncMock(wraps=search_index.delete_document)  # type: ignore[method-assign]

    store.add(operation="INSERT", entity_id="42", payload=_listing("pending_review"))
    await worker.run_once()
    search_index.index_document.assert_not_awaited()
    assert await search_index.get_document("42", "listings") is None

    store.add(
        operation="UPDATE",
        entity_id="42",
        payload={"old": _listing("pending_review"), "new": _listing("active")},
    )
    await worker.run_once()
    search_index.index_document.assert_awaited_once()
    assert await search_index.get_document("42", "listings") is not None

    store.add(
        operation="UPDATE",
        entity_id="42",
        payload={"old": _listing("active"), "new": _listing("sold")},
    )
    await worker.run_once()
    search_index.delete_document.assert_awaited_once()
    assert await search_index.get_document("42", "listings") is None

    assert all(r.status is ChangeStatus.COMPLETED for r in store.records.values())


async def test_completed_record_has_processed_at(store, worker: QueueWorker):
    record = store.add(payload=_listing("active"))

    result = await worker.run_once()

    assert result.completed == 1
    stored = store.get(record.id)
    assert stored.status is ChangeStatus.COMPLETED
    assert stored.processed_at is not None
    assert stored.error_message is None


async def test_transient_failure_is_retried_until_cap(store):
    worker = _failing_worker(store, SearchIndexError("index unreachable"))
    record = store.add(payload=_listing("active"))

    for expected_retry in (1, 2, 3):
        result = await worker.run_once()
        assert result.retried == 1
        stored = store.get(record.id)
        assert stored.status is ChangeStatus.PENDING
        assert stored.retry_count == expected_retry
        assert stored.error_message == f"Retry {expected_retry}/3: index unreachable"

    # Fourth failure (max_retries + 1) is terminal
    result = await worker.run_once()
    assert result.failed == 1
    stored = store.get(record.id)
    assert stored.status is ChangeStatus.FAILED
    assert stored.error_message == "Max retries exceeded: index unreachable"

    # Never re-enters pending
    assert (await worker.run_once()).fetched == 0
    assert store.get(record.id).status is ChangeStatus.FAILED


async def test_timeout_is_treated_as_retryable(store):
    async def hang(record: ChangeRecord) -> None:
        await asyncio.sleep(5)

    processor = MagicMock()
    processor.apply = hang
    worker = QueueWorker(store, processor, processing_timeout=0.05)
    record = store.add(payload=_listing("active"))

    result = await worker.run_once()

    assert result.retried == 1
    stored = store.get(record.id)
    assert stored.status is ChangeStatus.PENDING
    assert stored.retry_count == 1
    assert "timeout" in (stored.error_message or "").lower()


async def test_unknown_entity_kind_fails_without_retry(store, worker: QueueWorker):
    record = store.add(entity_kind="messages", payload={"id": "1"})

    result = await worker.run_once()

    assert result.failed == 1
    stored = store.get(record.id)
    assert stored.status is ChangeStatus.FAILED
    assert stored.retry_count == 0
    assert stored.error_message == "Unknown entity kind: messages"


async def test_failure_is_isolated_within_batch(store, worker: QueueWorker):
    good_a = store.add(entity_id="1", payload={**_listing("active"), "id": "1"})
    bad = store.add(operation="UPDATE", entity_id="2", payload={"new": _listing("active")})
    good_b = store.add(entity_id="3", payload={**_listing("active"), "id": "3"})

    result = await worker.run_once()

    assert result.fetched == 3
    assert result.completed == 2
    assert result.failed == 1
    assert store.get(good_a.id).status is ChangeStatus.COMPLETED
    assert store.get(good_b.id).status is ChangeStatus.COMPLETED
    assert store.get(bad.id).status is ChangeStatus.FAILED


async def test_ten_distinct_entities_complete_in_one_cycle(store, processor: ChangeProcessor):
    worker = QueueWorker(store, processor, batch_size=10, parallelism=10)
    for i in range(10):
        store.add(entity_id=str(i), payload={**_listing("active"), "id": str(i)})

    result = await worker.run_once()

    assert result.completed == 10
    assert all(r.status is ChangeStatus.COMPLETED for r in store.records.values())


async def test_records_run_concurrently_across_entities(store):
    started = 0
    all_started = asyncio.Event()

    async def apply(record: ChangeRecord) -> None:
        nonlocal started
        started += 1
        if started == 3:
            all_started.set()
        # Completes only if all three records are in flight together
        await asyncio.wait_for(all_started.wait(), timeout=1)

    processor = MagicMock()
    processor.apply = apply
    worker = QueueWorker(store, processor, batch_size=3)
    for i in range(3):
        store.add(entity_id=str(i), payload=_listing("active"))

    result = await worker.run_once()

    assert result.completed == 3


async def test_same_entity_records_run_in_creation_order(store):
    applied: list[int] = []

    async def apply(record: ChangeRecord) -> None:
        await asyncio.sleep(0.01 if not applied else 0)
        applied.append(record.id)

    processor = MagicMock()
    processor.apply = apply
    worker = QueueWorker(store, processor, batch_size=5)
    now = datetime.now(UTC)
    first = store.add(entity_id="42", payload=_listing("active"), created_at=now)
    second = store.add(
        operation="UPDATE",
        entity_id="42",
        payload={"old": _listing("active"), "new": _listing("sold")},
        created_at=now + timedelta(seconds=1),
    )

    await worker.run_once()

    assert applied == [first.id, second.id]


async def test_retried_record_is_not_overtaken_by_later_change(
    store, worker: QueueWorker, search_index: SearchIndexClient, monkeypatch
):
    original = search_index.index_document
    attempts = 0

    async def flaky_index_document(*args, **kwargs):
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            return False
        return await original(*args, **kwargs)

    monkeypatch.setattr(search_index, "index_document", flaky_index_document)
    now = datetime.now(UTC)
    activated = store.add(
        operation="UPDATE",
        entity_id="42",
        payload={"old": _listing("pending_review"), "new": _listing("active")},
        created_at=now,
    )
    sold = store.add(
        operation="UPDATE",
        entity_id="42",
        payload={"old": _listing("active"), "new": _listing("sold")},
        created_at=now + timedelta(seconds=1),
    )

    first = await worker.run_once()

    assert first.retried == 1
    assert first.deferred == 1
    assert store.get(activated.id).retry_count == 1
    deferred = store.get(sold.id)
    assert deferred.status is ChangeStatus.PENDING
    assert deferred.retry_count == 0
    assert worker.in_flight_ids == set()

    second = await worker.run_once()

    assert second.completed == 2
    assert store.get(activated.id).status is ChangeStatus.COMPLETED
    assert store.get(sold.id).status is ChangeStatus.COMPLETED
    assert await search_index.get_document("42", "listings") is None


async def test_failed_record_defers_rest_of_its_entity_only(store):
    processor = MagicMock()

    async def apply(record: ChangeRecord) -> None:
        if record.entity_id == "42" and record.operation is ChangeOperation.INSERT:
            raise SearchIndexError("index unreachable")

    processor.apply = apply
    worker = QueueWorker(store, processor, batch_size=10)
    now = datetime.now(UTC)
    store.add(entity_id="42", payload=_listing("active"), created_at=now)
    later = store.add(
        operation="DELETE", entity_id="42", payload=_listing("active"), created_at=now + timedelta(seconds=1)
    )
    other = store.add(entity_id="7", payload=_listing("active"), created_at=now + timedelta(seconds=2))

    result = await worker.run_once()

    assert (result.completed, result.retried, result.deferred) == (1, 1, 1)
    assert store.get(later.id).status is ChangeStatus.PENDING
    assert store.get(other.id).status is ChangeStatus.COMPLETED


async def test_cache_invalidation_failure_does_not_fail_record(
    store, transformer: DocumentTransformer, search_index: SearchIndexClient
):
    cache_client = MagicMock()
    cache_client.invalidate_category_counts = AsyncMock(side_effect=RuntimeError("cache down"))
    processor = ChangeProcessor(transformer, search_index, cache_client, cache_timeout=0.5)
    worker = QueueWorker(store, processor)
    record = store.add(payload=_listing("active"))

    result = await worker.run_once()

    assert result.completed == 1
    assert store.get(record.id).status is ChangeStatus.COMPLETED
    cache_client.invalidate_category_counts.assert_awaited_once()


async def test_submit_enqueues_pending_record(store, worker: QueueWorker):
    job = JobDescriptor(
        entity_kind="listings",
        operation=ChangeOperation.INSERT,
        entity_id="42",
        payload=_listing("active"),
    )

    submission = await worker.submit(job)

    assert submission.backend == "legacy"
    assert submission.status == "pending"
    record = store.get(int(submission.id))
    assert record.status is ChangeStatus.PENDING
    assert record.entity_key == ("listings", "42")


async def test_get_stats(store, worker: QueueWorker):
    t0 = datetime.now(UTC) - timedelta(minutes=5)
    for latency_ms in (500, 1500):
        record = store.add(status=ChangeStatus.COMPLETED, created_at=t0)
        store.records[record.id] = record.model_copy(
            update={"processed_at": t0 + timedelta(milliseconds=latency_ms)}
        )
    store.add(status=ChangeStatus.PENDING)
    store.add(status=ChangeStatus.FAILED)
    store.add(
        status=ChangeStatus.PROCESSING,
        claimed_at=datetime.now(UTC) - timedelta(seconds=40),
    )

    stats = await worker.get_stats()

    assert stats.total == 5
    assert stats.completed == 2
    assert stats.pending == 1
    assert stats.failed == 1
    assert stats.processing == 1
    assert stats.stuck == 1
    assert stats.avg_processing_time_ms == pytest.approx(1000.0)
    assert stats.last_processed_at is not None


async def test_health_status_flags_high_failure_count(store, worker: QueueWorker):
    assert (await worker.get_health_status()).is_healthy

    for _ in range(11):
        store.add(status=ChangeStatus.FAILED)

    health = await worker.get_health_status()
    assert not health.is_healthy
    assert health.issues == ["11 failed jobs (high failure rate)"]
    assert len(health.recommendations) == 1


async def test_retry_failed_jobs_respects_max_retries(store, worker: QueueWorker):
    retryable = store.add(status=ChangeStatus.FAILED, retry_count=1)
    exhausted = store.add(status=ChangeStatus.FAILED, retry_count=3)

    assert await worker.retry_failed_jobs() == 1

    assert store.get(retryable.id).status is ChangeStatus.PENDING
    assert store.get(retryable.id).error_message == "Manual retry"
    assert store.get(exhausted.id).status is ChangeStatus.FAILED


async def test_clear_queue_by_status(store, worker: QueueWorker):
    store.add(status=ChangeStatus.COMPLETED)
    store.add(status=ChangeStatus.COMPLETED)
    store.add(status=ChangeStatus.PENDING)

    assert await worker.clear_queue(ChangeStatus.COMPLETED) == 2
    assert len(store.records) == 1
    assert await worker.clear_queue() == 1
    assert store.records == {}


async def test_list_jobs_newest_first(store, worker: QueueWorker):
    now = datetime.now(UTC)
    old = store.add(operation="INSERT", created_at=now - timedelta(minutes=1))
    new = store.add(operation="DELETE", created_at=now)

    jobs = await worker.list_jobs()
    assert [j.id for j in jobs] == [new.id, old.id]

    deletes = await worker.list_jobs(operation=ChangeOperation.DELETE)
    assert [j.id for j in deletes] == [new.id]


async def test_start_and_stop_loop(store, processor: ChangeProcessor):
    worker = QueueWorker(store, processor, poll_interval=0.01, health_check_interval=0.01)
    record = store.add(payload=_listing("active"))

    await worker.start()
    assert worker.is_running
    for _ in range(200):
        if store.get(record.id).status is ChangeStatus.COMPLETED:
            break
        await asyncio.sleep(0.01)
    await worker.stop(timeout=1)

    assert store.get(record.id).status is ChangeStatus.COMPLETED
    assert not worker.is_running
