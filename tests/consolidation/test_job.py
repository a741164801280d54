"""Tests for the daily consolidation job."""

import asyncio
import logging
import json
from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from odometer_guard.consolidation.anchor import AnchorReceipt
from odometer_guard.consolidation.digest import compute_day_digest
from odometer_guard.consolidation.job import (
    ConsolidationResult,
    ConsolidationRunStats,
    ConsolidationStatus,
    DailyConsolidationJob,
)
from odometer_guard.exceptions import AnchorError
from odometer_guard.storage.database import DatabaseManager
from odometer_guard.storage.repos import DailyBatchRepository, TelemetryReadingRepository
from odometer_guard.validator.mileage import MileageValidator

DAY = date(2026, 10, 18)

# ============================================================================
# Fixtures
# ============================================================================


def _on_day(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 10, 18, hour, minute, tzinfo=UTC)


@pytest.fixture
async def trip_day(validator: MileageValidator) -> str:
    """veh-1 drives five trips on DAY, then reports a rollback."""
    await validator.register_vehicle("veh-1", initial_mileage=65076)
    for i, mileage in enumerate((65081, 65093, 65101, 65116, 65119)):
        await validator.validate("veh-1", mileage, _on_day(8 + i), device_id="dev-1")
    await validator.validate("veh-1", 45119, _on_day(20), device_id="dev-1")
    return "veh-1"


@pytest.fixture
def mock_anchor() -> MagicMock:
    anchor = MagicMock()
    anchor.submit = AsyncMock(return_value=AnchorReceipt(reference="0xfeed", block_number=1))
    return anchor


@pytest.fixture
def job(db: DatabaseManager, mock_anchor: MagicMock) -> DailyConsolidationJob:
    return DailyConsolidationJob(db.get_async_session, mock_anchor)


async def _batch(db: DatabaseManager, vehicle_id: str = "veh-1", day: date = DAY):
    async with db.get_async_session() as session:
        return await DailyBatchRepository(session).get(vehicle_id, day)


# ============================================================================
# ConsolidationRunStats Tests
# ============================================================================


class TestConsolidationRunStats:
    def test_record_counts_by_status(self) -> None:
        stats = ConsolidationRunStats(batch_date=DAY)
        for status in (
            ConsolidationStatus.ANCHORED,
            ConsolidationStatus.ANCHORED,
            ConsolidationStatus.IN_FLIGHT,
            ConsolidationStatus.EXHAUSTED,
        ):
            stats.record(ConsolidationResult(vehicle_id="v", batch_date=DAY, status=status))

        assert stats.processed == 4
        assert stats.anchored == 2
        assert stats.in_flight == 1
        assert stats.exhausted == 1
        data = stats.to_dict()
        assert data["batchDate"] == "2026-10-18"
        assert data["inFlight"] == 1

    def test_result_to_dict(self) -> None:
        result = ConsolidationResult(
            vehicle_id="veh-1",
            batch_date=DAY,
            status=ConsolidationStatus.ANCHORED,
            digest="ab" * 32,
            reading_count=5,
            attempts=1,
            anchor_reference="0xfeed",
        )
        data = result.to_dict()
        assert data["status"] == "anchored"
        assert data["batchDate"] == "2026-10-18"
        assert data["anchorReference"] == "0xfeed"


# ============================================================================
# consolidate_day Tests
# ============================================================================


class TestConsolidateDay:
    @pytest.mark.asyncio
    async def test_anchors_accepted_readings_only(
        self,
        job: DailyConsolidationJob,
        mock_anchor: MagicMock,
        db: DatabaseManager,
        trip_day: str,
    ) -> None:
        result = await job.consolidate_day(trip_day, DAY)

        assert result.status is ConsolidationStatus.ANCHORED
        assert result.reading_count == 5
        assert result.attempts == 1
        assert result.anchor_reference == "0xfeed"

        async with db.get_async_session() as session:
            readings = await TelemetryReadingRepository(session).list_accepted_for_day(trip_day, DAY)
        expected = compute_day_digest(trip_day, DAY, readings)
        assert result.digest == expected.root
        mock_anchor.submit.assert_awaited_once_with(trip_day, DAY, expected.root)

        batch = await _batch(db)
        assert batch is not None
        assert batch.is_anchored
        assert batch.anchor_reference == "0xfeed"
        assert batch.start_mileage == 65081
        assert batch.end_mileage == 65119
        assert batch.total_distance == 38
        assert batch.segment_count == 5
        assert json.loads(batch.segments_json)[0]["startMileage"] == 65081
        assert batch.anchored_at is not None

    @pytest.mark.asyncio
    async def test_second_call_is_skipped(
        self, job: DailyConsolidationJob, mock_anchor: MagicMock, trip_day: str
    ) -> None:
        first = await job.consolidate_day(trip_day, DAY)
        second = await job.consolidate_day(trip_day, DAY)

        assert second.status is ConsolidationStatus.SKIPPED
        assert second.digest == first.digest
        assert second.anchor_reference == first.anchor_reference
        assert mock_anchor.submit.await_count == 1

    @pytest.mark.asyncio
    async def test_late_reading_not_reanchored(
        self,
        job: DailyConsolidationJob,
        validator: MileageValidator,
        trip_day: str,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        first = await job.consolidate_day(trip_day, DAY)
        await validator.validate(trip_day, 65130, _on_day(23, 50), device_id="dev-1")

        with caplog.at_level(logging.WARNING):
            again = await job.consolidate_day(trip_day, DAY)

        assert again.status is ConsolidationStatus.SKIPPED
        assert again.digest == first.digest
        assert again.reading_count == 5
        assert "late reading" in caplog.text

    @pytest.mark.asyncio
    async def test_no_accepted_readings(
        self, job: DailyConsolidationJob, mock_anchor: MagicMock, db: DatabaseManager, trip_day: str
    ) -> None:
        result = await job.consolidate_day(trip_day, DAY + timedelta(days=1))

        assert result.status is ConsolidationStatus.EMPTY
        mock_anchor.submit.assert_not_awaited()
        assert await _batch(db, day=DAY + timedelta(days=1)) is None

    @pytest.mark.asyncio
    async def test_dry_run_stores_pending(self, db: DatabaseManager, trip_day: str) -> None:
        job = DailyConsolidationJob(db.get_async_session, None)
        assert job.dry_run

        result = await job.consolidate_day(trip_day, DAY)

        assert result.status is ConsolidationStatus.PENDING
        assert result.digest is not None
        batch = await _batch(db)
        assert batch is not None
        assert batch.anchor_status == "pending"
        assert batch.attempts == 0
        assert batch.digest == result.digest
        assert await job.sweep(datetime.now(UTC)) == []

    @pytest.mark.asyncio
    async def test_dry_run_batch_anchored_later(
        self, db: DatabaseManager, job: DailyConsolidationJob, trip_day: str
    ) -> None:
        dry = await DailyConsolidationJob(db.get_async_session, None).consolidate_day(trip_day, DAY)

        result = await job.consolidate_day(trip_day, DAY)

        assert result.status is ConsolidationStatus.ANCHORED
        assert result.digest == dry.digest


# ============================================================================
# Failure and Retry Tests
# ============================================================================


class TestAnchorFailures:
    @pytest.mark.asyncio
    async def test_failure_recorded_then_swept(
        self, job: DailyConsolidationJob, mock_anchor: MagicMock, db: DatabaseManager, trip_day: str
    ) -> None:
        mock_anchor.submit.side_effect = [
            AnchorError("rpc unavailable"),
            AnchorReceipt(reference="0xbeef"),
        ]

        failed = await job.consolidate_day(trip_day, DAY)

        assert failed.status is ConsolidationStatus.FAILED
        assert failed.attempts == 1
        assert failed.error == "rpc unavailable"
        batch = await _batch(db)
        assert batch is not None
        assert batch.anchor_status == "failed"
        assert batch.last_error == "rpc unavailable"

        swept = await job.sweep(datetime.now(UTC) + timedelta(seconds=1))

        assert [r.status for r in swept] == [ConsolidationStatus.ANCHORED]
        assert swept[0].attempts == 2
        assert swept[0].anchor_reference == "0xbeef"

    @pytest.mark.asyncio
    async def test_anchor_timeout(self, db: DatabaseManager, trip_day: str) -> None:
        async def slow_submit(vehicle_id, batch_date, digest):
            await asyncio.sleep(5)

        anchor = MagicMock()
        anchor.submit = slow_submit
        job = DailyConsolidationJob(db.get_async_session, anchor, anchor_timeout_seconds=0.05)

        result = await job.consolidate_day(trip_day, DAY)

        assert result.status is ConsolidationStatus.FAILED
        assert "timed out" in (result.error or "")
        batch = await _batch(db)
        assert batch is not None
        assert batch.anchor_status == "failed"

    @pytest.mark.asyncio
    async def test_attempt_cap_and_force(
        self,
        db: DatabaseManager,
        mock_anchor: MagicMock,
        trip_day: str,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        mock_anchor.submit.side_effect = AnchorError("rpc unavailable")
        job = DailyConsolidationJob(db.get_async_session, mock_anchor, max_anchor_attempts=2)

        assert (await job.consolidate_day(trip_day, DAY)).status is ConsolidationStatus.FAILED
        assert (await job.consolidate_day(trip_day, DAY)).status is ConsolidationStatus.FAILED

        exhausted = await job.consolidate_day(trip_day, DAY)
        assert exhausted.status is ConsolidationStatus.EXHAUSTED
        assert exhausted.attempts == 2
        assert exhausted.error == "rpc unavailable"
        assert mock_anchor.submit.await_count == 2

        with caplog.at_level(logging.ERROR):
            assert await job.sweep(datetime.now(UTC) + timedelta(seconds=1)) == []
        assert "still unanchored after 2 attempts" in caplog.text

        mock_anchor.submit.side_effect = None
        forced = await job.consolidate_day(trip_day, DAY, force=True)
        assert forced.status is ConsolidationStatus.ANCHORED
        assert forced.attempts == 3

    @pytest.mark.asyncio
    async def test_concurrent_attempt_is_in_flight(
        self, db: DatabaseManager, trip_day: str
    ) -> None:
        """A second trigger while the first is waiting on the ledger must not submit again."""
        nested: list[ConsolidationResult] = []

        async def submit(vehicle_id, batch_date, digest):
            nested.append(await job.consolidate_day(vehicle_id, batch_date))
            return AnchorReceipt(reference="0xfeed")

        anchor = MagicMock()
        anchor.submit = AsyncMock(side_effect=submit)
        job = DailyConsolidationJob(db.get_async_session, anchor)

        result = await job.consolidate_day(trip_day, DAY)

        assert result.status is ConsolidationStatus.ANCHORED
        assert [r.status for r in nested] == [ConsolidationStatus.IN_FLIGHT]
        assert anchor.submit.await_count == 1

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_reclaimed(self, db: DatabaseManager, trip_day: str) -> None:
        now = datetime(2026, 10, 19, 2, 0, tzinfo=UTC)
        clock = MagicMock(return_value=now)
        anchor = MagicMock()
        anchor.submit = AsyncMock(return_value=AnchorReceipt(reference="0xfeed"))
        job = DailyConsolidationJob(
            db.get_async_session, anchor, vehicle_timeout_seconds=60, clock=clock
        )
        await DailyConsolidationJob(db.get_async_session, None).consolidate_day(trip_day, DAY)
        stored = await _batch(db)
        assert stored is not None and stored.id is not None
        async with db.get_async_session() as session:
            # A worker claimed the batch and died
            assert await DailyBatchRepository(session).claim_attempt(
                stored.id, seen_attempts=0, now=now, lease_cutoff=now
            )

        assert (await job.consolidate_day(trip_day, DAY)).status is ConsolidationStatus.IN_FLIGHT

        clock.return_value = now + timedelta(seconds=61)
        result = await job.consolidate_day(trip_day, DAY)
        assert result.status is ConsolidationStatus.ANCHORED
        assert result.attempts == 2


# ============================================================================
# Run Tests
# ============================================================================


class TestRun:
    @pytest.fixture
    async def fleet(self, validator: MileageValidator, trip_day: str) -> list[str]:
        await validator.register_vehicle("veh-2", initial_mileage=12000)
        await validator.validate("veh-2", 12040, _on_day(9), device_id="dev-2")
        await validator.register_vehicle("veh-3", initial_mileage=500)
        return [trip_day, "veh-2"]

    @pytest.mark.asyncio
    async def test_defaults_to_yesterday(
        self, db: DatabaseManager, mock_anchor: MagicMock, fleet: list[str]
    ) -> None:
        clock = MagicMock(return_value=datetime(2026, 10, 19, 2, 0, tzinfo=UTC))
        job = DailyConsolidationJob(db.get_async_session, mock_anchor, clock=clock)

        stats = await job.run()

        assert stats.batch_date == DAY
        assert stats.processed == 2
        assert stats.anchored == 2
        assert stats.errors == 0
        assert stats.finished_at is not None
        assert mock_anchor.submit.await_count == 2

    @pytest.mark.asyncio
    async def test_rerun_skips_anchored(
        self, job: DailyConsolidationJob, mock_anchor: MagicMock, fleet: list[str]
    ) -> None:
        await job.run(DAY)
        stats = await job.run(DAY)

        assert stats.skipped == 2
        assert stats.processed == 0
        assert mock_anchor.submit.await_count == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(
        self, db: DatabaseManager, fleet: list[str]
    ) -> None:
        async def submit(vehicle_id, batch_date, digest):
            if vehicle_id == "veh-2":
                raise AnchorError("rpc unavailable")
            return AnchorReceipt(reference=f"0x{vehicle_id}")

        anchor = MagicMock()
        anchor.submit = AsyncMock(side_effect=submit)
        now = datetime(2026, 10, 19, 2, 0, tzinfo=UTC)
        clock = MagicMock(return_value=now)
        job = DailyConsolidationJob(db.get_async_session, anchor, clock=clock)

        stats = await job.run(DAY)

        assert stats.anchored == 1
        assert stats.failed == 1
        # Failed in this run, so not swept again straight away
        assert stats.swept == 0

        anchor.submit.side_effect = None
        anchor.submit.return_value = AnchorReceipt(reference="0xretry")
        clock.return_value = now + timedelta(days=1)
        next_stats = await job.run()

        assert next_stats.batch_date == DAY + timedelta(days=1)
        assert next_stats.swept == 1
        assert next_stats.anchored == 1
        batch = await _batch(db, "veh-2")
        assert batch is not None
        assert batch.anchor_reference == "0xretry"

    @pytest.mark.asyncio
    async def test_unexpected_error_counted(self, db: DatabaseManager, fleet: list[str]) -> None:
        async def submit(vehicle_id, batch_date, digest):
            if vehicle_id == "veh-2":
                raise RuntimeError("bug")
            return AnchorReceipt(reference="0xok")

        anchor = MagicMock()
        anchor.submit = AsyncMock(side_effect=submit)
        job = DailyConsolidationJob(db.get_async_session, anchor)

        stats = await job.run(DAY)

        assert stats.errors == 1
        assert stats.anchored == 1

    @pytest.mark.asyncio
    async def test_dry_run(self, db: DatabaseManager, fleet: list[str]) -> None:
        job = DailyConsolidationJob(db.get_async_session, None)

        stats = await job.run(DAY)

        assert stats.pending == 2
        assert stats.anchored == 0
        assert stats.swept == 0

    def test_rejects_zero_concurrency(self, db: DatabaseManager) -> None:
        with pytest.raises(ValueError):
            DailyConsolidationJob(db.get_async_session, None, max_concurrency=0)
