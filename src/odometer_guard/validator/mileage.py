"""Mileage validation with optimistic concurrency.

This module provides the MileageValidator, the central decision unit that
classifies each reading against the vehicle's last accepted mileage,
moves the authoritative mileage with a bounded-retry compare-and-swap, and
raises fraud alerts and trust penalties on rollback.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from odometer_guard.alerter.formatter import rollback_description, rollback_evidence
from odometer_guard.alerter.manager import (
    ALERT_TYPE_ODOMETER_ROLLBACK,
    AlertSeverity,
    FraudAlertManager,
)
from odometer_guard.exceptions import (
    InvalidInputError,
    PersistenceError,
    RetryExhaustedError,
    VehicleNotFoundError,
)
from odometer_guard.storage.repos import (
    FraudAlertDTO,
    TelemetryReadingDTO,
    TelemetryReadingRepository,
    TrustEventDTO,
    VehicleStateDTO,
    VehicleStateRepository,
)
from odometer_guard.trust.engine import TrustEventDetails, TrustScoreEngine, TrustSource
from odometer_guard.validator.models import (
    MAX_MILEAGE,
    Classification,
    ValidationOutcome,
    ValidationStatus,
    ValidationThresholds,
    classify,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from odometer_guard.trust.engine import SessionFactory

logger = logging.getLogger(__name__)

DEFAULT_CAS_RETRIES = 1


def _check_identifier(value: object, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{field} must be a non-empty string", field=field)
    return value.strip()


class MileageValidator:
    """Classifies readings and maintains the authoritative mileage.

    Every reading is validated in its own transaction:

    1. Record the reading as PENDING (or reuse an earlier PENDING delivery).
    2. Classify it against the last accepted mileage.
    3. Accepted: compare-and-swap the mileage, re-reading once on conflict.
       Rollback: raise one alert and apply the trust penalty; mileage stays.
    4. Store the terminal status.

    When the compare-and-swap still conflicts after the allowed retries, the
    PENDING reading is committed and ``RetryExhaustedError`` is raised so the
    producer can re-submit it.

    Example:
        ```python
        validator = MileageValidator(db.get_async_session, trust_engine, alert_manager)
        outcome = await validator.validate(
            "veh-1", 65081, datetime.now(UTC), device_id="dev-42"
        )
        if outcome.flagged:
            ...
        ```
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        trust_engine: TrustScoreEngine,
        alert_manager: FraudAlertManager,
        *,
        thresholds: ValidationThresholds | None = None,
        cas_retries: int = DEFAULT_CAS_RETRIES,
    ) -> None:
        """Initialize the validator.

        Args:
            session_factory: Unit-of-work factory (``DatabaseManager.get_async_session``).
            trust_engine: Engine used for the rollback penalty.
            alert_manager: Manager used to raise rollback alerts.
            thresholds: Classification thresholds (defaults: 5 / 1000 / -30).
            cas_retries: Re-read rounds after a compare-and-swap conflict.
        """
        self._session_factory = session_factory
        self._trust = trust_engine
        self._alerts = alert_manager
        self._thresholds = thresholds or ValidationThresholds()
        self._cas_retries = cas_retries

    @property
    def thresholds(self) -> ValidationThresholds:
        return self._thresholds

    async def validate(
        self,
        vehicle_id: str,
        reported_mileage: int,
        received_at: datetime,
        *,
        device_id: str,
    ) -> ValidationOutcome:
        """Validate one reading.

        Args:
            vehicle_id: Vehicle the reading belongs to.
            reported_mileage: Odometer value, a non-negative integer.
            received_at: Timezone-aware time the reading was taken/received.
            device_id: Reporting device.

        Returns:
            The classification outcome. Fraud is an outcome, not an error.

        Raises:
            InvalidInputError: Malformed input or unknown vehicle; nothing stored.
            RetryExhaustedError: Concurrent updates kept winning; reading left PENDING.
            PersistenceError: Storage failure; nothing committed.
        """
        vehicle_id = _check_identifier(vehicle_id, "vehicleId")
        device_id = _check_identifier(device_id, "deviceId")
        if isinstance(reported_mileage, bool) or not isinstance(reported_mileage, int):
            raise InvalidInputError("reportedMileage must be an integer", field="reportedMileage")
        if reported_mileage < 0:
            raise InvalidInputError("reportedMileage must be >= 0", field="reportedMileage")
        if reported_mileage > MAX_MILEAGE:
            raise InvalidInputError(
                f"reportedMileage must be <= {MAX_MILEAGE}", field="reportedMileage"
            )
        if not isinstance(received_at, datetime) or received_at.tzinfo is None:
            raise InvalidInputError("receivedAt must be a timezone-aware datetime", field="receivedAt")
        received_at = received_at.astimezone(UTC)

        try:
            async with self._session_factory() as session:
                outcome, trust_event, alert = await self._validate_in_session(
                    session,
                    vehicle_id=vehicle_id,
                    device_id=device_id,
                    reported_mileage=reported_mileage,
                    received_at=received_at,
                )
        except SQLAlchemyError as e:
            logger.error("Persistence failure validating reading for %s: %s", vehicle_id, e)
            raise PersistenceError(f"Failed to persist reading for {vehicle_id}") from e

        # Hooks fire only once the transaction is committed.
        if alert is not None:
            await self._alerts.notify(alert)
        if trust_event is not None:
            await self._trust.notify(trust_event)
        return outcome

    async def _validate_in_session(
        self,
        session: AsyncSession,
        *,
        vehicle_id: str,
        device_id: str,
        reported_mileage: int,
        received_at: datetime,
    ) -> tuple[ValidationOutcome, TrustEventDTO | None, FraudAlertDTO | None]:
        states = VehicleStateRepository(session)
        readings = TelemetryReadingRepository(session)

        state = await states.get(vehicle_id)
        if state is None:
            raise VehicleNotFoundError(vehicle_id)

        reading = await readings.find_delivery(
            vehicle_id=vehicle_id,
            device_id=device_id,
            received_at=received_at,
            reported_mileage=reported_mileage,
        )
        if reading is not None and not reading.is_pending:
            logger.info("Duplicate delivery of reading %s; replaying stored outcome", reading.id)
            return self._replay(reading, state), None, None
        if reading is None:
            reading = await readings.insert_pending(
                vehicle_id=vehicle_id,
                device_id=device_id,
                reported_mileage=reported_mileage,
                received_at=received_at,
            )

        max_attempts = self._cas_retries + 1
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                refreshed = await states.get(vehicle_id)
                if refreshed is None:
                    raise VehicleNotFoundError(vehicle_id)
                state = refreshed

            previous = state.last_verified_mileage
            result = classify(reported_mileage, previous, self._thresholds)

            if result.status is ValidationStatus.ROLLBACK_DETECTED:
                return await self._handle_rollback(session, state, reading, result)

            # Within-tolerance decreases are VALID but never move mileage backward.
            new_mileage = max(previous, reported_mileage)
            if await states.compare_and_swap_mileage(
                vehicle_id,
                expected=previous,
                new_mileage=new_mileage,
                updated_at=received_at,
            ):
                await readings.set_validation(
                    reading.id,
                    status=result.status.value,
                    previous_mileage=previous,
                    delta=result.delta,
                    reason=result.reason,
                    validated_at=datetime.now(UTC),
                )
                log = logger.warning if result.status is ValidationStatus.SUSPICIOUS else logger.debug
                log(
                    "Reading %s for %s: %s (%d -> %d, delta=%d)",
                    reading.id,
                    vehicle_id,
                    result.status.value,
                    previous,
                    new_mileage,
                    result.delta,
                )
                outcome = ValidationOutcome(
                    reading_id=reading.id,
                    vehicle_id=vehicle_id,
                    validation_status=result.status,
                    previous_mileage=previous,
                    reported_mileage=reported_mileage,
                    delta=result.delta,
                    reason=result.reason,
                    trust_score=state.trust_score,
                )
                return outcome, None, None

            logger.info(
                "Mileage CAS conflict for %s (attempt %d/%d, expected %d)",
                vehicle_id,
                attempt,
                max_attempts,
                previous,
            )

        # Keep the PENDING reading so a re-submission picks it up again.
        await session.commit()
        logger.warning(
            "Retry exhausted for reading %s (vehicle=%s); left PENDING", reading.id, vehicle_id
        )
        raise RetryExhaustedError(vehicle_id, attempts=max_attempts, reading_id=reading.id)

    async def _handle_rollback(
        self,
        session: AsyncSession,
        state: VehicleStateDTO,
        reading: TelemetryReadingDTO,
        result: Classification,
    ) -> tuple[ValidationOutcome, TrustEventDTO, FraudAlertDTO]:
        previous = state.last_verified_mileage
        alert = await self._alerts.raise_alert(
            state.vehicle_id,
            reading.id,
            ALERT_TYPE_ODOMETER_ROLLBACK,
            AlertSeverity.HIGH,
            rollback_description(previous_mileage=previous, reported_mileage=reading.reported_mileage),
            evidence=rollback_evidence(
                previous_mileage=previous,
                reported_mileage=reading.reported_mileage,
                device_id=reading.device_id,
                received_at=reading.received_at.isoformat(),
                tolerance=self._thresholds.rollback_tolerance,
            ),
            session=session,
        )
        event = await self._trust.apply_delta(
            state.vehicle_id,
            self._thresholds.rollback_penalty,
            f"Odometer rollback detected: {result.reason}",
            TrustSource.FRAUD_ENGINE,
            details=TrustEventDetails(
                telemetry_id=reading.id,
                fraud_alert_id=alert.id,
                device_id=reading.device_id,
                reported_mileage=reading.reported_mileage,
                previous_mileage=previous,
            ),
            session=session,
        )
        await TelemetryReadingRepository(session).set_validation(
            reading.id,
            status=ValidationStatus.ROLLBACK_DETECTED.value,
            previous_mileage=previous,
            delta=result.delta,
            reason=result.reason,
            validated_at=datetime.now(UTC),
        )
        outcome = ValidationOutcome(
            reading_id=reading.id,
            vehicle_id=state.vehicle_id,
            validation_status=ValidationStatus.ROLLBACK_DETECTED,
            previous_mileage=previous,
            reported_mileage=reading.reported_mileage,
            delta=result.delta,
            reason=result.reason,
            trust_score=event.new_score,
            alert_id=alert.id,
        )
        return outcome, event, alert

    def _replay(self, reading: TelemetryReadingDTO, state: VehicleStateDTO) -> ValidationOutcome:
        return ValidationOutcome(
            reading_id=reading.id,
            vehicle_id=reading.vehicle_id,
            validation_status=ValidationStatus(reading.validation_status),
            previous_mileage=reading.previous_mileage if reading.previous_mileage is not None else 0,
            reported_mileage=reading.reported_mileage,
            delta=reading.delta if reading.delta is not None else 0,
            reason=reading.validation_reason or "",
            trust_score=state.trust_score,
            replayed=True,
        )

    async def register_vehicle(
        self,
        vehicle_id: str,
        *,
        initial_mileage: int = 0,
        vin: str | None = None,
    ) -> VehicleStateDTO:
        """Create mileage state for a new vehicle with a trust score of 100."""
        vehicle_id = _check_identifier(vehicle_id, "vehicleId")
        if (
            isinstance(initial_mileage, bool)
            or not isinstance(initial_mileage, int)
            or not 0 <= initial_mileage <= MAX_MILEAGE
        ):
            raise InvalidInputError("initial mileage out of range", field="mileage")
        async with self._session_factory() as session:
            repo = VehicleStateRepository(session)
            if await repo.get(vehicle_id) is not None:
                raise InvalidInputError(f"Vehicle already registered: {vehicle_id}", field="vehicleId")
            state = await repo.create(vehicle_id, initial_mileage=initial_mileage, vin=vin)
        logger.info("Registered vehicle %s at %d km", vehicle_id, initial_mileage)
        return state

    async def get_state(self, vehicle_id: str) -> VehicleStateDTO:
        async with self._session_factory() as session:
            state = await VehicleStateRepository(session).get(vehicle_id)
        if state is None:
            raise VehicleNotFoundError(vehicle_id)
        return state

    async def override_mileage(
        self,
        vehicle_id: str,
        new_mileage: int,
        *,
        reason: str,
        actor: str,
    ) -> VehicleStateDTO:
        """Administratively set the authoritative mileage.

        This is the only path that may lower the mileage. It is logged as a
        zero-change trust event with ``source=admin``.
        """
        if (
            isinstance(new_mileage, bool)
            or not isinstance(new_mileage, int)
            or not 0 <= new_mileage <= MAX_MILEAGE
        ):
            raise InvalidInputError("mileage out of range", field="mileage")
        actor = _check_identifier(actor, "actor")

        async with self._session_factory() as session:
            states = VehicleStateRepository(session)
            state = await states.get(vehicle_id)
            if state is None:
                raise VehicleNotFoundError(vehicle_id)
            old = state.last_verified_mileage
            await states.set_mileage(vehicle_id, new_mileage=new_mileage, updated_at=datetime.now(UTC))
            event = await self._trust.apply_delta(
                vehicle_id,
                0,
                f"Mileage override {old} -> {new_mileage} by {actor}: {reason}",
                TrustSource.ADMIN,
                details=TrustEventDetails(reported_mileage=new_mileage, previous_mileage=old),
                session=session,
            )
            updated = await states.get(vehicle_id)
            if updated is None:
                raise VehicleNotFoundError(vehicle_id)

        await self._trust.notify(event)
        logger.warning("Mileage override for %s: %d -> %d by %s", vehicle_id, old, new_mileage, actor)
        return updated
