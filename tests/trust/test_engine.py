"""Tests for the trust score engine."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from odometer_guard.exceptions import InvalidInputError, VehicleNotFoundError
from odometer_guard.storage.database import DatabaseManager
from odometer_guard.storage.models import VehicleStateModel
from odometer_guard.storage.repos import VehicleStateRepository
from odometer_guard.trust.engine import (
    TrustEventDetails,
    TrustScoreEngine,
    TrustSource,
    clamp_score,
    fold_changes,
)


@pytest.fixture
async def vehicle(db: DatabaseManager) -> str:
    async with db.get_async_session() as session:
        await VehicleStateRepository(session).create("veh-1", initial_mileage=1000)
    return "veh-1"


class TestScoreArithmetic:
    @pytest.mark.parametrize(("value", "expected"), [(-5, 0), (0, 0), (55, 55), (100, 100), (130, 100)])
    def test_clamp_score(self, value: int, expected: int) -> None:
        assert clamp_score(value) == expected

    def test_fold_clamps_each_step(self) -> None:
        # 100 -> 100 (clamped) -> 70 rather than 110 -> 80
        assert fold_changes([10, -30]) == 70
        assert fold_changes([-30] * 5) == 0
        assert fold_changes([-30] * 5 + [20]) == 20
        assert fold_changes([]) == 100


class TestApplyDelta:
    @pytest.mark.asyncio
    async def test_penalty_is_recorded(self, trust_engine: TrustScoreEngine, vehicle: str) -> None:
        event = await trust_engine.apply_delta(
            vehicle,
            -30,
            "Odometer rollback",
            TrustSource.FRAUD_ENGINE,
            details=TrustEventDetails(telemetry_id="r-1", reported_mileage=900, previous_mileage=1000),
        )

        assert event.id is not None
        assert event.previous_score == 100
        assert event.new_score == 70
        assert event.source == "fraudEngine"
        assert event.telemetry_id == "r-1"
        assert await trust_engine.get_score(vehicle) == 70

    @pytest.mark.asyncio
    async def test_change_is_clamped_but_recorded_as_intended(
        self, trust_engine: TrustScoreEngine, vehicle: str
    ) -> None:
        event = await trust_engine.apply_delta(vehicle, 25, "Manual bonus", "admin")

        assert event.change == 25
        assert event.new_score == 100

    @pytest.mark.asyncio
    async def test_score_never_below_zero(self, trust_engine: TrustScoreEngine, vehicle: str) -> None:
        for _ in range(4):
            await trust_engine.apply_delta(vehicle, -30, "rollback", TrustSource.FRAUD_ENGINE)
        assert await trust_engine.get_score(vehicle) == 0

    @pytest.mark.asyncio
    async def test_unknown_vehicle(self, trust_engine: TrustScoreEngine) -> None:
        with pytest.raises(VehicleNotFoundError):
            await trust_engine.apply_delta("ghost", -30, "rollback", TrustSource.FRAUD_ENGINE)

    @pytest.mark.asyncio
    async def test_rejects_bad_input(self, trust_engine: TrustScoreEngine, vehicle: str) -> None:
        with pytest.raises(InvalidInputError):
            await trust_engine.apply_delta(vehicle, 1.5, "bad", TrustSource.ADMIN)  # type: ignore[arg-type]
        with pytest.raises(ValueError):
            await trust_engine.apply_delta(vehicle, 1, "bad", "somebody")

    @pytest.mark.asyncio
    async def test_history_newest_first(self, trust_engine: TrustScoreEngine, vehicle: str) -> None:
        await trust_engine.apply_delta(vehicle, -30, "first", TrustSource.FRAUD_ENGINE)
        await trust_engine.apply_delta(vehicle, 10, "second", TrustSource.ADMIN)

        history = await trust_engine.history(vehicle)
        assert [e.reason for e in history] == ["second", "first"]
        assert [e.new_score for e in history] == [80, 70]
        assert len(await trust_engine.history(vehicle, limit=1)) == 1


class TestNotification:
    @pytest.mark.asyncio
    async def test_notifier_called_with_committed_event(self, db: DatabaseManager, vehicle: str) -> None:
        notifier = AsyncMock()
        engine = TrustScoreEngine(db.get_async_session, notifier=notifier)

        event = await engine.apply_delta(vehicle, -30, "rollback", TrustSource.FRAUD_ENGINE)

        notifier.trust_score_changed.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_joined_session_defers_notification(self, db: DatabaseManager, vehicle: str) -> None:
        notifier = AsyncMock()
        engine = TrustScoreEngine(db.get_async_session, notifier=notifier)

        async with db.get_async_session() as session:
            event = await engine.apply_delta(
                vehicle, -30, "rollback", TrustSource.FRAUD_ENGINE, session=session
            )
        notifier.trust_score_changed.assert_not_awaited()

        await engine.notify(event)
        notifier.trust_score_changed.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_undo_change(self, db: DatabaseManager, vehicle: str) -> None:
        notifier = AsyncMock()
        notifier.trust_score_changed.side_effect = ConnectionError("redis down")
        engine = TrustScoreEngine(db.get_async_session, notifier=notifier)

        event = await engine.apply_delta(vehicle, -30, "rollback", TrustSource.FRAUD_ENGINE)

        assert event.new_score == 70
        assert await engine.get_score(vehicle) == 70


class TestRecompute:
    @pytest.mark.asyncio
    async def test_consistent_log(self, trust_engine: TrustScoreEngine, vehicle: str) -> None:
        for change in (-30, -30, 20, -30, -30, -30):
            await trust_engine.apply_delta(vehicle, change, "x", TrustSource.ADMIN)

        result = await trust_engine.recompute(vehicle)

        assert result.consistent
        assert result.stored_score == 0
        assert result.event_count == 6

    @pytest.mark.asyncio
    async def test_detects_drift(
        self, trust_engine: TrustScoreEngine, db: DatabaseManager, vehicle: str
    ) -> None:
        await trust_engine.apply_delta(vehicle, -30, "rollback", TrustSource.FRAUD_ENGINE)
        async with db.get_async_session() as session:
            await session.execute(
                update(VehicleStateModel)
                .where(VehicleStateModel.vehicle_id == vehicle)
                .values(trust_score=95)
            )

        result = await trust_engine.recompute(vehicle)

        assert not result.consistent
        assert result.stored_score == 95
        assert result.computed_score == 70

    @pytest.mark.asyncio
    async def test_unknown_vehicle(self, trust_engine: TrustScoreEngine) -> None:
        with pytest.raises(VehicleNotFoundError):
            await trust_engine.recompute("ghost")
