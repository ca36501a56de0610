"""Stuck-job detection and recycling."""

from collections.abc import Callable, Collection, Iterable
from datetime import UTC, datetime

from search_sync.core.logging import get_logger
from search_sync.repositories.change_record_store import ChangeRecordStore
from search_sync.schemas.changes import ChangeRecord, ChangeStatus
from search_sync.schemas.queue import RecoveryResult

logger = get_logger(__name__)

StuckRule = Callable[[ChangeRecord, float], bool]


def processing_age(record: ChangeRecord, now: datetime) -> float:
    """Seconds since the record was claimed (or created, if never stamped)."""
    started = record.claimed_at or record.created_at
    if started.tzinfo is None:
        started = started.replace(tzinfo=UTC)
    return max(0.0, (now - started).total_seconds())


class StuckJobRecovery:
    """Finds records stuck in ``processing`` and moves them on.

    A record is stuck if any rule matches: processing longer than the stuck
    timeout, processing longer than the long-stuck bound, or already retried
    ``retry_threshold`` times while still processing. Stuck records go back to
    ``pending`` with one more retry, or to ``failed`` once retries are spent.
    """

    def __init__(
        self,
        store: ChangeRecordStore,
        *,
        stuck_timeout: float = 30.0,
        long_stuck_timeout: float = 600.0,
        retry_threshold: int = 2,
        max_retries: int = 3,
    ):
        self.store = store
        self.stuck_timeout = stuck_timeout
        self.long_stuck_timeout = long_stuck_timeout
        self.retry_threshold = retry_threshold
        self.max_retries = max_retries
        self.rules: dict[str, StuckRule] = {
            "timeout": lambda record, age: age > self.stuck_timeout,
            "long_stuck": lambda record, age: age > self.long_stuck_timeout,
            "retry_threshold": lambda record, age: record.retry_count >= self.retry_threshold,
        }

    def find_stuck(
        self,
        records: Iterable[ChangeRecord],
        now: datetime | None = None,
        exclude_ids: Collection[int] = (),
    ) -> list[tuple[ChangeRecord, float]]:
        """Union of all rules, de-duplicated by record id, oldest first."""
        now = now or datetime.now(UTC)
        candidates = [
            (record, processing_age(record, now))
            for record in records
            if record.status is ChangeStatus.PROCESSING and record.id not in exclude_ids
        ]

        stuck: dict[int, tuple[ChangeRecord, float]] = {}
        for name, rule in self.rules.items():
            matched = [(record, age) for record, age in candidates if rule(record, age)]
            if matched:
                logger.debug(f"Stuck rule '{name}' matched {len(matched)} records")
            for record, age in matched:
                stuck.setdefault(record.id, (record, age))

        return sorted(stuck.values(), key=lambda item: item[0].created_at)

    async def count_stuck(self, exclude_ids: Collection[int] = ()) -> int:
        records = await self.store.fetch_by_status(ChangeStatus.PROCESSING)
        return len(self.find_stuck(records, exclude_ids=exclude_ids))

    async def run_once(self, exclude_ids: Collection[int] = ()) -> RecoveryResult:
        """Detect stuck records and reset or fail each of them.

        Args:
            exclude_ids: Records this process is actively working on.

        Returns:
            RecoveryResult: How many were detected, reset and failed.
        """
        records = await self.store.fetch_by_status(ChangeStatus.PROCESSING)
        stuck = self.find_stuck(records, exclude_ids=exclude_ids)
        result = RecoveryResult(detected=len(stuck))
        if not stuck:
            return result

        logger.warning(f"Found {len(stuck)} stuck records")
        for record, age in stuck:
            seconds = int(age)
            if record.retry_count >= self.max_retries:
                updated = await self.store.update_status(
                    record.id,
                    ChangeStatus.FAILED,
                    processed_at=datetime.now(UTC),
                    error_message=(
                        f"Job stuck for {seconds}s and exceeded max retries ({self.max_retries})"
                    ),
                    expected_status=ChangeStatus.PROCESSING,
                )
                if updated:
                    result.failed += 1
                    logger.error(
                        f"Record {record.id} permanently failed after being stuck for {seconds}s"
                    )
            else:
                retry = record.retry_count + 1
                updated = await self.store.update_status(
                    record.id,
                    ChangeStatus.PENDING,
                    error_message=(
                        f"Reset from stuck state (stuck for {seconds}s, "
                        f"retry {retry}/{self.max_retries})"
                    ),
                    retry_count=retry,
                    expected_status=ChangeStatus.PROCESSING,
                )
                if updated:
                    result.reset += 1
                    logger.warning(
                        f"Record {record.id} reset to pending after {seconds}s "
                        f"(retry {retry}/{self.max_retries})"
                    )

        return result
