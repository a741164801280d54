"""Tests for storage repositories."""

from datetime import UTC, date, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from odometer_guard.storage.models import TelemetryReadingModel
from odometer_guard.storage.repos import (
    DailyBatchDTO,
    DailyBatchRepository,
    FraudAlertRepository,
    TelemetryReadingDTO,
    TelemetryReadingRepository,
    TrustEventDTO,
    TrustEventRepository,
    VehicleStateRepository,
    as_utc,
    day_bounds,
)

DAY = date(2026, 10, 18)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def vehicle(async_session: AsyncSession) -> str:
    await VehicleStateRepository(async_session).create(
        "veh-1", initial_mileage=65076, vin="wvwzzz1jzxw000001"
    )
    await async_session.commit()
    return "veh-1"


def _batch(digest: str = "a" * 64, reading_count: int = 3) -> DailyBatchDTO:
    return DailyBatchDTO(
        vehicle_id="veh-1",
        batch_date=DAY,
        reading_count=reading_count,
        digest=digest,
        start_mileage=65076,
        end_mileage=65119,
        total_distance=43,
    )


# ============================================================================
# Helpers
# ============================================================================


class TestHelpers:
    def test_as_utc_attaches_utc_to_naive(self) -> None:
        naive = datetime(2026, 10, 18, 12, 0)
        assert as_utc(naive) == datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
        assert as_utc(None) is None

    def test_day_bounds_cover_one_utc_day(self) -> None:
        start, end = day_bounds(DAY)
        assert start == datetime(2026, 10, 18, tzinfo=UTC)
        assert end - start == timedelta(days=1)

    def test_reading_from_model_is_utc(self) -> None:
        model = TelemetryReadingModel(
            id="r-1",
            vehicle_id="veh-1",
            device_id="dev-1",
            reported_mileage=65081,
            received_at=datetime(2026, 10, 18, 12, 0),
            validation_status="PENDING",
        )

        reading = TelemetryReadingDTO.from_model(model)

        assert reading.received_at == datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
        assert reading.validated_at is None


# ============================================================================
# VehicleStateRepository Tests
# ============================================================================


class TestVehicleStateRepository:
    @pytest.mark.asyncio
    async def test_create_starts_at_full_trust(self, async_session: AsyncSession, vehicle: str) -> None:
        state = await VehicleStateRepository(async_session).get(vehicle)
        assert state is not None
        assert state.last_verified_mileage == 65076
        assert state.trust_score == 100
        assert state.vin == "WVWZZZ1JZXW000001"

    @pytest.mark.asyncio
    async def test_get_by_vin_is_case_insensitive(self, async_session: AsyncSession, vehicle: str) -> None:
        state = await VehicleStateRepository(async_session).get_by_vin("WVWzzz1jzxw000001")
        assert state is not None
        assert state.vehicle_id == vehicle

    @pytest.mark.asyncio
    async def test_compare_and_swap_mileage(self, async_session: AsyncSession, vehicle: str) -> None:
        repo = VehicleStateRepository(async_session)
        now = datetime.now(UTC)

        assert await repo.compare_and_swap_mileage(
            vehicle, expected=65076, new_mileage=65081, updated_at=now
        )
        # Stale expectation loses
        assert not await repo.compare_and_swap_mileage(
            vehicle, expected=65076, new_mileage=65090, updated_at=now
        )

        state = await repo.get(vehicle)
        assert state is not None
        assert state.last_verified_mileage == 65081
        assert state.version == 1
        assert state.last_mileage_update_at is not None

    @pytest.mark.asyncio
    async def test_compare_and_swap_unchanged_mileage(
        self, async_session: AsyncSession, vehicle: str
    ) -> None:
        repo = VehicleStateRepository(async_session)
        now = datetime.now(UTC)

        assert await repo.compare_and_swap_mileage(
            vehicle, expected=65076, new_mileage=65076, updated_at=now
        )
        # Still guarded by the expected value
        assert not await repo.compare_and_swap_mileage(
            vehicle, expected=65000, new_mileage=65000, updated_at=now
        )

        state = await repo.get(vehicle)
        assert state is not None
        assert state.last_verified_mileage == 65076
        assert state.version == 0
        assert state.last_mileage_update_at is None

    @pytest.mark.asyncio
    async def test_compare_and_swap_trust_score(self, async_session: AsyncSession, vehicle: str) -> None:
        repo = VehicleStateRepository(async_session)
        assert await repo.compare_and_swap_trust_score(vehicle, expected=100, new_score=70)
        assert not await repo.compare_and_swap_trust_score(vehicle, expected=100, new_score=40)
        state = await repo.get(vehicle)
        assert state is not None
        assert state.trust_score == 70


# ============================================================================
# TelemetryReadingRepository Tests
# ============================================================================


class TestTelemetryReadingRepository:
    @pytest.mark.asyncio
    async def test_insert_and_find_delivery(self, async_session: AsyncSession, vehicle: str) -> None:
        repo = TelemetryReadingRepository(async_session)
        received = datetime(2026, 10, 18, 9, 30, tzinfo=UTC)
        reading = await repo.insert_pending(
            vehicle_id=vehicle, device_id="dev-1", reported_mileage=65081, received_at=received
        )
        assert reading.is_pending

        found = await repo.find_delivery(
            vehicle_id=vehicle, device_id="dev-1", received_at=received, reported_mileage=65081
        )
        assert found is not None
        assert found.id == reading.id
        assert found.received_at == received

        other = await repo.find_delivery(
            vehicle_id=vehicle, device_id="dev-2", received_at=received, reported_mileage=65081
        )
        assert other is None

    @pytest.mark.asyncio
    async def test_set_validation_only_once(self, async_session: AsyncSession, vehicle: str) -> None:
        repo = TelemetryReadingRepository(async_session)
        reading = await repo.insert_pending(
            vehicle_id=vehicle,
            device_id="dev-1",
            reported_mileage=65081,
            received_at=datetime(2026, 10, 18, 9, 30, tzinfo=UTC),
        )
        now = datetime.now(UTC)
        assert await repo.set_validation(
            reading.id, status="VALID", previous_mileage=65076, delta=5, reason="ok", validated_at=now
        )
        assert not await repo.set_validation(
            reading.id,
            status="SUSPICIOUS",
            previous_mileage=65076,
            delta=5,
            reason="again",
            validated_at=now,
        )
        stored = await repo.get(reading.id)
        assert stored is not None
        assert stored.validation_status == "VALID"
        assert stored.delta == 5

    @pytest.mark.asyncio
    async def test_list_accepted_for_day(self, async_session: AsyncSession, vehicle: str) -> None:
        repo = TelemetryReadingRepository(async_session)
        now = datetime.now(UTC)
        samples = [
            (datetime(2026, 10, 18, 15, 0, tzinfo=UTC), 65093, "VALID"),
            (datetime(2026, 10, 18, 8, 0, tzinfo=UTC), 65081, "SUSPICIOUS"),
            (datetime(2026, 10, 18, 16, 0, tzinfo=UTC), 45119, "ROLLBACK_DETECTED"),
            (datetime(2026, 10, 19, 0, 0, tzinfo=UTC), 65101, "VALID"),
            (datetime(2026, 10, 17, 23, 59, tzinfo=UTC), 65070, "VALID"),
        ]
        for received, mileage, status in samples:
            reading = await repo.insert_pending(
                vehicle_id=vehicle, device_id="dev-1", reported_mileage=mileage, received_at=received
            )
            await repo.set_validation(
                reading.id, status=status, previous_mileage=0, delta=0, reason="", validated_at=now
            )
        await async_session.commit()

        accepted = await repo.list_accepted_for_day(vehicle, DAY)
        assert [r.reported_mileage for r in accepted] == [65081, 65093]
        assert await repo.list_vehicles_with_accepted(DAY) == [vehicle]
        assert await repo.list_vehicles_with_accepted(date(2026, 10, 16)) == []

        counts = await repo.count_by_status(vehicle)
        assert counts["VALID"] == 3
        assert counts["ROLLBACK_DETECTED"] == 1


# ============================================================================
# TrustEventRepository Tests
# ============================================================================


class TestTrustEventRepository:
    @pytest.mark.asyncio
    async def test_append_and_order(self, async_session: AsyncSession, vehicle: str) -> None:
        repo = TrustEventRepository(async_session)
        for change, new in ((-30, 70), (-30, 40), (10, 50)):
            await repo.append(
                TrustEventDTO(
                    vehicle_id=vehicle,
                    change=change,
                    previous_score=new - change,
                    new_score=new,
                    reason="test",
                    source="admin",
                )
            )
        await async_session.commit()

        recent = await repo.list_recent(vehicle, limit=2)
        assert [e.new_score for e in recent] == [50, 40]
        assert await repo.iter_changes(vehicle) == [-30, -30, 10]


# ============================================================================
# FraudAlertRepository Tests
# ============================================================================


class TestFraudAlertRepository:
    @pytest.mark.asyncio
    async def test_insert_is_active(self, async_session: AsyncSession, vehicle: str) -> None:
        repo = FraudAlertRepository(async_session)
        alert = await repo.insert(
            vehicle_id=vehicle,
            telemetry_id=None,
            alert_type="odometer_rollback",
            severity="high",
            description="rollback",
        )
        assert alert.status == "active"
        assert [a.id for a in await repo.find(vehicle_id=vehicle, statuses=("active",))] == [alert.id]
        assert await repo.find(statuses=("resolved",)) == []

    @pytest.mark.asyncio
    async def test_transition_requires_allowed_source(
        self, async_session: AsyncSession, vehicle: str
    ) -> None:
        repo = FraudAlertRepository(async_session)
        alert = await repo.insert(
            vehicle_id=vehicle,
            telemetry_id=None,
            alert_type="odometer_rollback",
            severity="high",
            description="rollback",
        )
        resolved_at = datetime.now(UTC)
        assert await repo.transition(
            alert.id,
            from_statuses=("active",),
            to_status="resolved",
            notes="confirmed",
            actor="reviewer",
            resolved_at=resolved_at,
        )
        assert not await repo.transition(
            alert.id, from_statuses=("active",), to_status="investigating", notes=None, actor="x"
        )
        stored = await repo.get(alert.id)
        assert stored is not None
        assert stored.status == "resolved"
        assert stored.resolved_by == "reviewer"
        assert stored.investigation_notes == "confirmed"


# ============================================================================
# DailyBatchRepository Tests
# ============================================================================


class TestDailyBatchRepository:
    @pytest.mark.asyncio
    async def test_upsert_creates_pending(self, async_session: AsyncSession) -> None:
        repo = DailyBatchRepository(async_session)
        batch = await repo.upsert_for_day(_batch())
        assert batch is not None
        assert batch.id is not None
        assert batch.anchor_status == "pending"
        assert batch.attempts == 0

    @pytest.mark.asyncio
    async def test_upsert_refreshes_digest_but_keeps_status(self, async_session: AsyncSession) -> None:
        repo = DailyBatchRepository(async_session)
        batch = await repo.upsert_for_day(_batch())
        assert batch is not None
        await repo.mark_failed("veh-1", DAY, error="rpc down")

        refreshed = await repo.upsert_for_day(_batch(digest="b" * 64, reading_count=4))
        assert refreshed is not None
        assert refreshed.id == batch.id
        assert refreshed.digest == "b" * 64
        assert refreshed.reading_count == 4
        assert refreshed.anchor_status == "failed"

    @pytest.mark.asyncio
    async def test_upsert_never_touches_anchored(self, async_session: AsyncSession) -> None:
        repo = DailyBatchRepository(async_session)
        batch = await repo.upsert_for_day(_batch())
        assert batch is not None and batch.id is not None
        now = datetime.now(UTC)
        assert await repo.claim_attempt(batch.id, seen_attempts=0, now=now, lease_cutoff=now)
        assert await repo.mark_anchored(
            batch.id, attempt=1, digest="a" * 64, anchor_reference="0xabc", anchored_at=now
        )

        assert await repo.upsert_for_day(_batch(digest="c" * 64)) is None
        stored = await repo.get("veh-1", DAY)
        assert stored is not None
        assert stored.is_anchored
        assert stored.digest == "a" * 64
        assert stored.anchor_reference == "0xabc"

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, async_session: AsyncSession) -> None:
        repo = DailyBatchRepository(async_session)
        batch = await repo.upsert_for_day(_batch())
        assert batch is not None and batch.id is not None
        now = datetime.now(UTC)
        cutoff = now - timedelta(minutes=3)

        assert await repo.claim_attempt(batch.id, seen_attempts=0, now=now, lease_cutoff=cutoff)
        # Same observed counter loses
        assert not await repo.claim_attempt(batch.id, seen_attempts=0, now=now, lease_cutoff=cutoff)
        # Fresh counter still blocked by the in-flight lease
        assert not await repo.claim_attempt(batch.id, seen_attempts=1, now=now, lease_cutoff=cutoff)
        # ... unless the lease is ignored
        assert await repo.claim_attempt(
            batch.id, seen_attempts=1, now=now, lease_cutoff=cutoff, ignore_lease=True
        )

    @pytest.mark.asyncio
    async def test_failed_batch_can_be_claimed_immediately(self, async_session: AsyncSession) -> None:
        repo = DailyBatchRepository(async_session)
        batch = await repo.upsert_for_day(_batch())
        assert batch is not None and batch.id is not None
        now = datetime.now(UTC)
        cutoff = now - timedelta(minutes=3)
        assert await repo.claim_attempt(batch.id, seen_attempts=0, now=now, lease_cutoff=cutoff)
        assert await repo.mark_failed("veh-1", DAY, error="timeout", attempt=1)

        assert await repo.claim_attempt(batch.id, seen_attempts=1, now=now, lease_cutoff=cutoff)
        stored = await repo.get("veh-1", DAY)
        assert stored is not None
        assert stored.anchor_status == "pending"
        assert stored.attempts == 2

    @pytest.mark.asyncio
    async def test_mark_anchored_requires_submitted_digest(self, async_session: AsyncSession) -> None:
        repo = DailyBatchRepository(async_session)
        batch = await repo.upsert_for_day(_batch())
        assert batch is not None and batch.id is not None
        now = datetime.now(UTC)
        assert await repo.claim_attempt(batch.id, seen_attempts=0, now=now, lease_cutoff=now)
        await repo.upsert_for_day(_batch(digest="d" * 64))

        assert not await repo.mark_anchored(
            batch.id, attempt=1, digest="a" * 64, anchor_reference="0xabc", anchored_at=now
        )
        stored = await repo.get("veh-1", DAY)
        assert stored is not None
        assert stored.anchor_status == "pending"

    @pytest.mark.asyncio
    async def test_mark_failed_with_stale_attempt_is_ignored(self, async_session: AsyncSession) -> None:
        repo = DailyBatchRepository(async_session)
        batch = await repo.upsert_for_day(_batch())
        assert batch is not None and batch.id is not None
        now = datetime.now(UTC)
        assert await repo.claim_attempt(batch.id, seen_attempts=0, now=now, lease_cutoff=now)
        assert await repo.claim_attempt(
            batch.id, seen_attempts=1, now=now, lease_cutoff=now, ignore_lease=True
        )
        assert not await repo.mark_failed("veh-1", DAY, error="late", attempt=1)

    @pytest.mark.asyncio
    async def test_list_retryable_and_exhausted(self, async_session: AsyncSession) -> None:
        repo = DailyBatchRepository(async_session)
        now = datetime.now(UTC)
        retry = await repo.upsert_for_day(_batch())
        exhausted = await repo.upsert_for_day(
            DailyBatchDTO(vehicle_id="veh-2", batch_date=DAY, reading_count=1, digest="e" * 64)
        )
        assert retry is not None and retry.id is not None
        assert exhausted is not None and exhausted.id is not None

        earlier = now - timedelta(hours=1)
        await repo.claim_attempt(retry.id, seen_attempts=0, now=earlier, lease_cutoff=now)
        await repo.mark_failed("veh-1", DAY, error="rpc down")
        for seen in range(2):
            await repo.claim_attempt(
                exhausted.id, seen_attempts=seen, now=earlier, lease_cutoff=now, ignore_lease=True
            )
        await repo.mark_failed("veh-2", DAY, error="rpc down")

        retryable = await repo.list_retryable(attempted_before=now, max_attempts=2, limit=10)
        assert [b.vehicle_id for b in retryable] == ["veh-1"]
        assert await repo.list_retryable(attempted_before=earlier, max_attempts=2, limit=10) == []

        stuck = await repo.list_exhausted(max_attempts=2)
        assert [b.vehicle_id for b in stuck] == ["veh-2"]
        assert stuck[0].last_error == "rpc down"

    @pytest.mark.asyncio
    async def test_list_anchored_for_date(self, async_session: AsyncSession) -> None:
        repo = DailyBatchRepository(async_session)
        batch = await repo.upsert_for_day(_batch())
        assert batch is not None and batch.id is not None
        assert await repo.list_anchored_for_date(DAY) == []

        now = datetime.now(UTC)
        await repo.claim_attempt(batch.id, seen_attempts=0, now=now, lease_cutoff=now)
        await repo.mark_anchored(
            batch.id, attempt=1, digest="a" * 64, anchor_reference="0xabc", anchored_at=now
        )
        assert await repo.list_anchored_for_date(DAY) == ["veh-1"]
