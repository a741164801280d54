"""Trust score engine.

Applies bounded score deltas and keeps the append-only trust event log
consistent with the stored score: the score on ``vehicle_states`` always
equals folding the event log from 100 with clamping at every step.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from odometer_guard.exceptions import InvalidInputError, RetryExhaustedError, VehicleNotFoundError
from odometer_guard.storage.repos import (
    TrustEventDTO,
    TrustEventRepository,
    VehicleStateRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from odometer_guard.trust.notifier import TrustNotifier

logger = logging.getLogger(__name__)

MIN_SCORE = 0
MAX_SCORE = 100
INITIAL_SCORE = 100
DEFAULT_MAX_RETRIES = 3
DEFAULT_HISTORY_LIMIT = 50

SessionFactory = Callable[[], AbstractAsyncContextManager["AsyncSession"]]


class TrustSource(str, Enum):
    """Origin of a trust score change."""

    TELEMETRY = "telemetry"
    FRAUD_ENGINE = "fraudEngine"
    ADMIN = "admin"
    ANCHOR = "anchor"


@dataclass(frozen=True)
class TrustEventDetails:
    """Optional context stored alongside a trust event."""

    telemetry_id: str | None = None
    fraud_alert_id: str | None = None
    device_id: str | None = None
    reported_mileage: int | None = None
    previous_mileage: int | None = None


@dataclass(frozen=True)
class TrustRecomputation:
    """Result of replaying the trust event log."""

    vehicle_id: str
    stored_score: int
    computed_score: int
    event_count: int

    @property
    def consistent(self) -> bool:
        return self.stored_score == self.computed_score


def clamp_score(value: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, value))


def fold_changes(changes: list[int], *, start: int = INITIAL_SCORE) -> int:
    """Replay intended changes, clamping after each step."""
    score = start
    for change in changes:
        score = clamp_score(score + change)
    return score


class TrustScoreEngine:
    """Applies trust score deltas and records them in the event log.

    ``apply_delta`` can join a caller's transaction (``session=...``), in
    which case the caller must invoke ``notify`` after committing. Without a
    session the engine opens its own unit of work and notifies itself.

    Example:
        ```python
        engine = TrustScoreEngine(db.get_async_session, notifier=RedisTrustNotifier(redis))
        event = await engine.apply_delta("veh-1", -30, "Odometer rollback", TrustSource.FRAUD_ENGINE)
        print(event.new_score)
        ```
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        notifier: TrustNotifier | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._max_retries = max_retries

    @asynccontextmanager
    async def _unit_of_work(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self._session_factory() as own:
            yield own

    async def apply_delta(
        self,
        vehicle_id: str,
        change: int,
        reason: str,
        source: TrustSource | str,
        *,
        details: TrustEventDetails | None = None,
        session: AsyncSession | None = None,
    ) -> TrustEventDTO:
        """Apply a clamped score change and append its trust event.

        Args:
            vehicle_id: Vehicle whose score changes.
            change: Intended signed delta, recorded as-is on the event.
            reason: Human-readable reason for the audit log.
            source: Who caused the change.
            details: Optional reading/alert context.
            session: Join this transaction instead of opening one.

        Returns:
            The appended event; ``new_score`` is the clamped score.

        Raises:
            VehicleNotFoundError: If the vehicle has no state row.
            RetryExhaustedError: If the score kept changing underneath us.
        """
        if isinstance(change, bool) or not isinstance(change, int):
            raise InvalidInputError("Trust change must be an integer", field="change")
        source_value = TrustSource(source).value
        details = details or TrustEventDetails()

        async with self._unit_of_work(session) as uow:
            event = await self._apply(uow, vehicle_id, change, reason, source_value, details)

        if session is None:
            await self.notify(event)
        return event

    async def _apply(
        self,
        session: AsyncSession,
        vehicle_id: str,
        change: int,
        reason: str,
        source: str,
        details: TrustEventDetails,
    ) -> TrustEventDTO:
        states = VehicleStateRepository(session)
        events = TrustEventRepository(session)

        for _ in range(self._max_retries):
            state = await states.get(vehicle_id)
            if state is None:
                raise VehicleNotFoundError(vehicle_id)

            previous = state.trust_score
            new_score = clamp_score(previous + change)
            if not await states.compare_and_swap_trust_score(
                vehicle_id, expected=previous, new_score=new_score
            ):
                logger.debug("Trust score CAS conflict for %s, retrying", vehicle_id)
                continue

            event = await events.append(
                TrustEventDTO(
                    vehicle_id=vehicle_id,
                    change=change,
                    previous_score=previous,
                    new_score=new_score,
                    reason=reason,
                    source=source,
                    telemetry_id=details.telemetry_id,
                    fraud_alert_id=details.fraud_alert_id,
                    device_id=details.device_id,
                    reported_mileage=details.reported_mileage,
                    previous_mileage=details.previous_mileage,
                    created_at=datetime.now(UTC),
                )
            )
            if previous + change != new_score:
                logger.info(
                    "Trust change for %s clamped: %d%+d -> %d", vehicle_id, previous, change, new_score
                )
            logger.info(
                "Trust score %s: %d -> %d (%s, source=%s)",
                vehicle_id,
                previous,
                new_score,
                reason,
                source,
            )
            return event

        raise RetryExhaustedError(vehicle_id, attempts=self._max_retries)

    async def notify(self, event: TrustEventDTO) -> None:
        """Fire the outbound hook for a committed event."""
        if self._notifier is None:
            return
        try:
            await self._notifier.trust_score_changed(event)
        except Exception as e:
            logger.warning("Trust notifier raised for %s: %s", event.vehicle_id, e)

    async def get_score(self, vehicle_id: str) -> int:
        async with self._session_factory() as session:
            state = await VehicleStateRepository(session).get(vehicle_id)
        if state is None:
            raise VehicleNotFoundError(vehicle_id)
        return state.trust_score

    async def history(self, vehicle_id: str, *, limit: int = DEFAULT_HISTORY_LIMIT) -> list[TrustEventDTO]:
        """Most recent trust events first."""
        async with self._session_factory() as session:
            return await TrustEventRepository(session).list_recent(vehicle_id, limit=limit)

    async def recompute(self, vehicle_id: str) -> TrustRecomputation:
        """Replay the event log and compare it with the stored score.

        This is read-only; a mismatch is logged, not repaired.
        """
        async with self._session_factory() as session:
            state = await VehicleStateRepository(session).get(vehicle_id)
            if state is None:
                raise VehicleNotFoundError(vehicle_id)
            changes = await TrustEventRepository(session).iter_changes(vehicle_id)

        result = TrustRecomputation(
            vehicle_id=vehicle_id,
            stored_score=state.trust_score,
            computed_score=fold_changes(changes),
            event_count=len(changes),
        )
        if not result.consistent:
            logger.error(
                "Trust score drift for %s: stored=%d computed=%d over %d events",
                vehicle_id,
                result.stored_score,
                result.computed_score,
                result.event_count,
            )
        return result
