# conftest.py
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest
import pytest_asyncio
from qdrant_client import AsyncQdrantClient

from search_sync.config import Settings
from search_sync.schemas.changes import (
    ChangeOperation,
    ChangeRecord,
    ChangeStatus,
    JobDescriptor,
    StatusCounts,
)
from search_sync.services.document_transformer import DocumentTransformer
from search_sync.services.search_index import INDEX_MAPPINGS, SearchIndexClient


class InMemoryChangeRecordStore:
    """ChangeRecordStore fake with the same conditional-update semantics."""

    def __init__(self) -> None:
        self.records: dict[int, ChangeRecord] = {}
        self.reachable = True
        self._next_id = 1

    def add(
        self,
        *,
        entity_kind: str = "listings",
        operation: ChangeOperation | str = ChangeOperation.INSERT,
        entity_id: str = "1",
        payload: dict[str, Any] | None = None,
        status: ChangeStatus = ChangeStatus.PENDING,
        created_at: datetime | None = None,
        retry_count: int = 0,
        claimed_at: datetime | None = None,
    ) -> ChangeRecord:
        record = ChangeRecord(
            id=self._next_id,
            table_name=entity_kind,
            operation=operation,
            record_id=entity_id,
            change_data=payload or {},
            status=status,
            created_at=created_at or datetime.now(UTC),
            retry_count=retry_count,
            claimed_at=claimed_at,
        )
        self.records[record.id] = record
        self._next_id += 1
        return record

    def get(self, record_id: int) -> ChangeRecord:
        return self.records[record_id]

    def _ordered(self) -> list[ChangeRecord]:
        return sorted(self.records.values(), key=lambda r: (r.created_at, r.id))

    async def fetch_pending(self, limit: int) -> list[ChangeRecord]:
        pending = [r for r in self._ordered() if r.status is ChangeStatus.PENDING]
        return [r.model_copy() for r in pending[:limit]]

    async def claim(self, record_id: int) -> ChangeRecord | None:
        record = self.records.get(record_id)
        if record is None or record.status is not ChangeStatus.PENDING:
            return None
        claimed = record.model_copy(
            update={"status": ChangeStatus.PROCESSING, "claimed_at": datetime.now(UTC)}
        )
        self.records[record_id] = claimed
        return claimed.model_copy()

    async def update_status(
        self,
        record_id: int,
        status: ChangeStatus,
        *,
        processed_at: datetime | None = None,
        error_message: str | None = None,
        retry_count: int | None = None,
        expected_status: ChangeStatus | None = None,
    ) -> bool:
        record = self.records.get(record_id)
        if record is None:
            return False
        if expected_status is not None and record.status is not expected_status:
            return False

        update: dict[str, Any] = {
            "status": status,
            "processed_at": processed_at,
            "error_message": error_message,
        }
        if retry_count is not None:
            update["retry_count"] = retry_count
        if status is ChangeStatus.PENDING:
            update["claimed_at"] = None
        self.records[record_id] = record.model_copy(update=update)
        return True

    async def count_by_status(self) -> StatusCounts:
        counts = {status.value: 0 for status in ChangeStatus}
        for record in self.records.values():
            counts[record.status.value] += 1
        return StatusCounts(**counts)

    async def fetch_by_status(
        self,
        status: ChangeStatus,
        *,
        max_retry_count: int | None = None,
        limit: int | None = None,
    ) -> list[ChangeRecord]:
        matched = [
            r.model_copy()
            for r in self._ordered()
            if r.status is status and (max_retry_count is None or r.retry_count < max_retry_count)
        ]
        return matched[:limit] if limit is not None else matched

    async def fetch_recent_completed(self, limit: int) -> list[ChangeRecord]:
        completed = [
            r
            for r in self.records.values()
            if r.status is ChangeStatus.COMPLETED and r.processed_at is not None
        ]
        completed.sort(key=lambda r: r.processed_at, reverse=True)  # type: ignore[arg-type, return-value]
        return [r.model_copy() for r in completed[:limit]]

    async def enqueue(self, job: JobDescriptor) -> ChangeRecord:
        return self.add(
            entity_kind=job.entity_kind,
            operation=job.operation,
            entity_id=job.entity_id,
            payload=job.payload,
        )

    async def delete_by_status(self, status: ChangeStatus | None = None) -> int:
        doomed = [
            record_id
            for record_id, record in self.records.items()
            if status is None or record.status is status
        ]
        for record_id in doomed:
            del self.records[record_id]
        return len(doomed)

    async def list_jobs(
        self,
        *,
        status: ChangeStatus | None = None,
        operation: ChangeOperation | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ChangeRecord]:
        matched = [
            r
            for r in reversed(self._ordered())
            if (status is None or r.status is status)
            and (operation is None or r.operation is operation)
        ]
        return [r.model_copy() for r in matched[offset : offset + limit]]

    async def ping(self) -> bool:
        return self.reachable


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        qdrant_url="http://unused-in-local-mode",
        qdrant_api_key=None,
        qdrant_prefer_grpc=False,
        supabase_url=None,
        supabase_key=None,
        cache_service_url=None,
        worker_processing_timeout=5.0,
    )


@pytest.fixture
def store() -> InMemoryChangeRecordStore:
    return InMemoryChangeRecordStore()


@pytest.fixture
def add_record(store: InMemoryChangeRecordStore) -> Callable[..., ChangeRecord]:
    return store.add


@pytest.fixture
def transformer(test_settings: Settings) -> DocumentTransformer:
    return DocumentTransformer.from_settings(test_settings)


@pytest_asyncio.fixture
async def aclient_local():
    """In-memory embedded Qdrant for tests."""
    client = AsyncQdrantClient(location=":memory:")
    try:
        yield client
    finally:
        await client.close()


@pytest_asyncio.fixture
async def search_index(
    aclient_local: AsyncQdrantClient,
    test_settings: Settings,
    transformer: DocumentTransformer,
):
    svc = SearchIndexClient(test_settings, aclient=aclient_local)
    index_names = transformer.index_names
    await svc.ensure_indexes(
        {index_names[kind]: mapping for kind, mapping in INDEX_MAPPINGS.items()}
    )
    yield svc
