"""Tests for stuck-job detection."""

from datetime import UTC, datetime, timedelta

import pytest

from search_sync.schemas.changes import ChangeStatus
from search_sync.worker.recovery import StuckJobRecovery


def _ago(seconds: float) -> datetime:
    return datetime.now(UTC) - timedelta(seconds=seconds)


@pytest.fixture
def recovery(store) -> StuckJobRecovery:
    return StuckJobRecovery(
        store, stuck_timeout=30, long_stuck_timeout=600, retry_threshold=2, max_retries=3
    )


@pytest.mark.asyncio
async def test_stuck_record_is_reset_to_pending(store, recovery: StuckJobRecovery):
    record = store.add(status=ChangeStatus.PROCESSING, claimed_at=_ago(40), retry_count=0)

    result = await recovery.run_once()

    assert result.detected == 1
    assert result.reset == 1
    stored = store.get(record.id)
    assert stored.status is ChangeStatus.PENDING
    assert stored.retry_count == 1
    assert stored.claimed_at is None
    assert "stuck for 40s" in (stored.error_message or "")


@pytest.mark.asyncio
async def test_recent_processing_record_is_left_alone(store, recovery: StuckJobRecovery):
    record = store.add(status=ChangeStatus.PROCESSING, claimed_at=_ago(5))

    result = await recovery.run_once()

    assert result.detected == 0
    assert store.get(record.id).status is ChangeStatus.PROCESSING


@pytest.mark.asyncio
async def test_exhausted_stuck_record_is_failed(store, recovery: StuckJobRecovery):
    record = store.add(status=ChangeStatus.PROCESSING, claimed_at=_ago(90), retry_count=3)

    result = await recovery.run_once()

    assert result.failed == 1
    stored = store.get(record.id)
    assert stored.status is ChangeStatus.FAILED
    assert stored.error_message == "Job stuck for 90s and exceeded max retries (3)"
    assert stored.processed_at is not None


@pytest.mark.asyncio
async def test_retry_threshold_rule_matches_fresh_record(store, recovery: StuckJobRecovery):
    record = store.add(status=ChangeStatus.PROCESSING, claimed_at=_ago(1), retry_count=2)

    result = await recovery.run_once()

    assert result.reset == 1
    assert store.get(record.id).retry_count == 3


@pytest.mark.asyncio
async def test_in_flight_records_are_excluded(store, recovery: StuckJobRecovery):
    record = store.add(status=ChangeStatus.PROCESSING, claimed_at=_ago(40))

    result = await recovery.run_once(exclude_ids={record.id})

    assert result.detected == 0
    assert store.get(record.id).status is ChangeStatus.PROCESSING


def test_rules_are_unioned_without_duplicates(store, recovery: StuckJobRecovery):
    # Matches all three rules
    store.add(status=ChangeStatus.PROCESSING, claimed_at=_ago(700), retry_count=2)
    store.add(status=ChangeStatus.PENDING, created_at=_ago(700))

    stuck = recovery.find_stuck(store.records.values())

    assert len(stuck) == 1


def test_age_falls_back_to_created_at(store, recovery: StuckJobRecovery):
    store.add(status=ChangeStatus.PROCESSING, created_at=_ago(45))

    [(record, age)] = recovery.find_stuck(store.records.values())

    assert age == pytest.approx(45, abs=2)
