"""Change queue persistence backed by a Supabase (PostgREST) table."""

from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import ValidationError
from supabase import AsyncClient

from search_sync.core.logging import get_logger
from search_sync.schemas.changes import (
    ChangeOperation,
    ChangeRecord,
    ChangeStatus,
    JobDescriptor,
    StatusCounts,
)

logger = get_logger(__name__)


class ChangeRecordStore(Protocol):
    """Durable, queryable queue of captured changes."""

    async def fetch_pending(self, limit: int) -> list[ChangeRecord]:
        """Return up to ``limit`` pending records, oldest first.

        Rows that do not parse as change records are marked failed and skipped.
        """
        ...

    async def claim(self, record_id: int) -> ChangeRecord | None:
        """Move a record from pending to processing.

        Returns:
            The claimed record, or None if another worker claimed it first.
        """
        ...

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
        """Update a record's status; returns False if no row matched."""
        ...

    async def count_by_status(self) -> StatusCounts: ...

    async def fetch_by_status(
        self,
        status: ChangeStatus,
        *,
        max_retry_count: int | None = None,
        limit: int | None = None,
    ) -> list[ChangeRecord]: ...

    async def fetch_recent_completed(self, limit: int) -> list[ChangeRecord]: ...

    async def enqueue(self, job: JobDescriptor) -> ChangeRecord: ...

    async def delete_by_status(self, status: ChangeStatus | None = None) -> int: ...

    async def list_jobs(
        self,
        *,
        status: ChangeStatus | None = None,
        operation: ChangeOperation | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ChangeRecord]: ...

    async def ping(self) -> bool: ...


class SupabaseChangeRecordStore:
    """ChangeRecordStore over a Supabase table.

    Claims and guarded transitions are conditional updates on ``status`` so two
    workers can never both move the same record forward.
    """

    def __init__(self, async_client: AsyncClient, table: str = "elasticsearch_sync_queue"):
        self.client: AsyncClient = async_client
        self.table = table

    def _query(self):
        return self.client.table(self.table)

    async def fetch_pending(self, limit: int) -> list[ChangeRecord]:
        response = await (
            self._query()
            .select("*")
            .eq("status", ChangeStatus.PENDING.value)
            .order("created_at")
            .order("id")
            .limit(limit)
            .execute()
        )
        records: list[ChangeRecord] = []
        for row in response.data:
            try:
                records.append(ChangeRecord.model_validate(row))
            except ValidationError as e:
                await self._fail_malformed(row, e)
        return records

    async def _fail_malformed(self, row: dict[str, Any], error: ValidationError) -> None:
        """Mark a pending row that does not parse as a change record as failed."""
        record_id = row.get("id")
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in error.errors()
        )
        logger.error(f"Malformed change record {record_id}: {details}")
        if record_id is None:
            return
        await (
            self._query()
            .update(
                {
                    "status": ChangeStatus.FAILED.value,
                    "processed_at": datetime.now(UTC).isoformat(),
                    "error_message": f"Malformed change record: {details}",
                }
            )
            .eq("id", record_id)
            .eq("status", ChangeStatus.PENDING.value)
            .execute()
        )

    async def claim(self, record_id: int) -> ChangeRecord | None:
        response = await (
            self._query()
            .update(
                {
                    "status": ChangeStatus.PROCESSING.value,
                    "claimed_at": datetime.now(UTC).isoformat(),
                }
            )
            .eq("id", record_id)
            .eq("status", ChangeStatus.PENDING.value)
            .execute()
        )
        if not response.data:
            logger.debug(f"Record {record_id} already claimed by another worker")
            return None
        return ChangeRecord.model_validate(response.data[0])

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
        data: dict[str, Any] = {
            "status": status.value,
            "processed_at": processed_at.isoformat() if processed_at else None,
            "error_message": error_message,
        }
        if retry_count is not None:
            data["retry_count"] = retry_count
        if status is ChangeStatus.PENDING:
            data["claimed_at"] = None

        query = self._query().update(data).eq("id", record_id)
        if expected_status is not None:
            query = query.eq("status", expected_status.value)
        response = await query.execute()

        if not response.data:
            logger.warning(f"Status update of record {record_id} to {status.value} matched no row")
            return False
        return True

    async def count_by_status(self) -> StatusCounts:
        counts: dict[str, int] = {}
        for status in ChangeStatus:
            response = await (
                self._query()
                .select("id", count="exact")
                .eq("status", status.value)
                .limit(1)
                .execute()
            )
            counts[status.value] = response.count or 0
        return StatusCounts(**counts)

    async def fetch_by_status(
        self,
        status: ChangeStatus,
        *,
        max_retry_count: int | None = None,
        limit: int | None = None,
    ) -> list[ChangeRecord]:
        query = self._query().select("*").eq("status", status.value)
        if max_retry_count is not None:
            query = query.lt("retry_count", max_retry_count)
        query = query.order("created_at")
        if limit is not None:
            query = query.limit(limit)
        response = await query.execute()
        return [ChangeRecord.model_validate(row) for row in response.data]

    async def fetch_recent_completed(self, limit: int) -> list[ChangeRecord]:
        response = await (
            self._query()
            .select("*")
            .eq("status", ChangeStatus.COMPLETED.value)
            .not_.is_("processed_at", "null")
            .order("processed_at", desc=True)
            .limit(limit)
            .execute()
        )
        return [ChangeRecord.model_validate(row) for row in response.data]

    async def enqueue(self, job: JobDescriptor) -> ChangeRecord:
        data = {
            "table_name": job.entity_kind,
            "operation": job.operation.value,
            "record_id": job.entity_id,
            "change_data": job.payload,
            "status": ChangeStatus.PENDING.value,
            "retry_count": 0,
        }
        response = await self._query().insert(data).execute()
        record = ChangeRecord.model_validate(response.data[0])
        logger.info(
            f"Enqueued record {record.id}: {record.operation.value} "
            f"{record.entity_kind}:{record.entity_id}"
        )
        return record

    async def delete_by_status(self, status: ChangeStatus | None = None) -> int:
        query = self._query().delete()
        if status is not None:
            query = query.eq("status", status.value)
        else:
            # PostgREST refuses unfiltered deletes.
            query = query.gte("id", 0)
        response = await query.execute()
        deleted = len(response.data or [])
        logger.info(f"Deleted {deleted} records (status filter: {status.value if status else 'all'})")
        return deleted

    async def list_jobs(
        self,
        *,
        status: ChangeStatus | None = None,
        operation: ChangeOperation | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ChangeRecord]:
        query = self._query().select("*")
        if status is not None:
            query = query.eq("status", status.value)
        if operation is not None:
            query = query.eq("operation", operation.value)
        response = await (
            query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
        )
        return [ChangeRecord.model_validate(row) for row in response.data]

    async def ping(self) -> bool:
        try:
            await self._query().select("id").limit(1).execute()
            return True
        except Exception as exc:
            logger.warning(f"Change store ping failed: {exc}")
            return False
