"""Exception hierarchy for odometer_guard.

Classification outcomes (SUSPICIOUS, ROLLBACK_DETECTED) are never raised;
they are returned on ``ValidationOutcome``. Everything here is a real failure.
"""

from __future__ import annotations

from datetime import date


class OdometerGuardError(Exception):
    """Base exception for all odometer_guard errors."""


class InvalidInputError(OdometerGuardError):
    """Malformed or missing reading fields; rejected before validation."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class VehicleNotFoundError(InvalidInputError):
    """Reading references a vehicle with no mileage state."""

    def __init__(self, vehicle_id: str) -> None:
        self.vehicle_id = vehicle_id
        super().__init__(f"Unknown vehicle: {vehicle_id}", field="vehicleId")


class RetryExhaustedError(OdometerGuardError):
    """Optimistic update kept conflicting after the allowed retries."""

    def __init__(
        self,
        vehicle_id: str,
        *,
        attempts: int,
        reading_id: str | None = None,
    ) -> None:
        self.vehicle_id = vehicle_id
        self.attempts = attempts
        self.reading_id = reading_id
        super().__init__(
            f"Concurrent update conflict for vehicle {vehicle_id} after {attempts} attempts"
        )


class PersistenceError(OdometerGuardError):
    """Storage layer unavailable or failed mid-transaction."""


class AnchorError(OdometerGuardError):
    """Anchor submission failed or timed out."""

    def __init__(
        self,
        message: str,
        *,
        vehicle_id: str | None = None,
        batch_date: date | None = None,
    ) -> None:
        self.vehicle_id = vehicle_id
        self.batch_date = batch_date
        super().__init__(message)


class AlertNotFoundError(OdometerGuardError):
    """Fraud alert does not exist."""


class AlertTransitionError(OdometerGuardError):
    """Requested fraud alert status change is not allowed."""
