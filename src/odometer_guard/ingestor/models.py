"""Data models for the ingestor module."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from odometer_guard.exceptions import InvalidInputError
from odometer_guard.validator.models import MAX_MILEAGE

# First present, non-null key wins.
MILEAGE_KEYS = (
    "reportedMileage",
    "reported_mileage",
    "mileage",
    "currentMileage",
    "current_mileage",
    "newMileage",
    "new_mileage",
)
VEHICLE_KEYS = ("vehicleId", "vehicle_id")
VIN_KEYS = ("vin", "VIN")
DEVICE_KEYS = ("deviceId", "device_id", "deviceID")
RECEIVED_AT_KEYS = ("receivedAt", "received_at", "timestamp")

# Epoch values above this are milliseconds.
_EPOCH_MS_THRESHOLD = 1e12


def _first_present(data: dict[str, Any], keys: tuple[str, ...]) -> tuple[str, Any] | None:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return key, value
    return None


def _optional_str(data: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    found = _first_present(data, keys)
    if found is None:
        return None
    text = str(found[1]).strip()
    return text or None


def parse_mileage(value: Any, field: str = "reportedMileage") -> int:
    """Parse an odometer value: integers, integral floats or numeric strings.

    Raises:
        InvalidInputError: Fractional, negative, too large or non-numeric values.
    """
    if isinstance(value, bool):
        raise InvalidInputError(f"{field} must be a number", field=field)
    if isinstance(value, int):
        number = Decimal(value)
    elif isinstance(value, float | str):
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise InvalidInputError(f"{field} is not a number: {value!r}", field=field) from e
    else:
        raise InvalidInputError(f"{field} must be a number", field=field)

    if not number.is_finite():
        raise InvalidInputError(f"{field} must be finite", field=field)
    if number != number.to_integral_value():
        raise InvalidInputError(f"{field} must be a whole number: {value!r}", field=field)
    if number < 0:
        raise InvalidInputError(f"{field} must be >= 0", field=field)
    if number > MAX_MILEAGE:
        raise InvalidInputError(f"{field} must be <= {MAX_MILEAGE}", field=field)
    return int(number)


def _from_epoch(value: float) -> datetime:
    if value > _EPOCH_MS_THRESHOLD:
        value /= 1000.0
    try:
        return datetime.fromtimestamp(value, tz=UTC)
    except (OverflowError, OSError, ValueError) as e:
        raise InvalidInputError(f"receivedAt out of range: {value}", field="receivedAt") from e


def parse_received_at(value: Any, *, now: datetime | None = None) -> datetime:
    """Parse an ISO-8601 string or epoch seconds/milliseconds; naive means UTC."""
    if value is None:
        return now or datetime.now(UTC)
    if isinstance(value, bool):
        raise InvalidInputError("receivedAt must be a timestamp", field="receivedAt")
    if isinstance(value, int | float):
        return _from_epoch(float(value))
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            return _from_epoch(float(text))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidInputError(f"receivedAt is not ISO-8601: {value!r}", field="receivedAt") from e
    else:
        raise InvalidInputError("receivedAt must be a timestamp", field="receivedAt")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass(frozen=True)
class ReadingPayload:
    """A normalized device reading.

    Either ``vehicle_id`` or ``vin`` is set; the gateway resolves a VIN to
    its vehicle before validation.
    """

    device_id: str
    reported_mileage: int
    received_at: datetime
    vehicle_id: str | None = None
    vin: str | None = None
    mileage_field: str = "reportedMileage"

    @classmethod
    def from_dict(cls, data: Any, *, now: datetime | None = None) -> ReadingPayload:
        """Create a ReadingPayload from a device message.

        Raises:
            InvalidInputError: Missing or malformed fields.
        """
        if not isinstance(data, dict):
            raise InvalidInputError("payload must be a JSON object")

        vehicle_id = _optional_str(data, VEHICLE_KEYS)
        vin = _optional_str(data, VIN_KEYS)
        if vehicle_id is None and vin is None:
            raise InvalidInputError("vehicleId or vin is required", field="vehicleId")

        device_id = _optional_str(data, DEVICE_KEYS)
        if device_id is None:
            raise InvalidInputError("deviceId is required", field="deviceId")

        found = _first_present(data, MILEAGE_KEYS)
        if found is None:
            raise InvalidInputError("reportedMileage is required", field="reportedMileage")
        mileage_field, raw_mileage = found

        raw_time = _first_present(data, RECEIVED_AT_KEYS)
        return cls(
            device_id=device_id,
            reported_mileage=parse_mileage(raw_mileage, mileage_field),
            received_at=parse_received_at(raw_time[1] if raw_time else None, now=now),
            vehicle_id=vehicle_id,
            vin=vin.upper() if vin else None,
            mileage_field=mileage_field,
        )


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    FLAGGED = "flagged"
    REJECTED = "rejected"
    RETRY = "retry"
    ERROR = "error"


@dataclass(frozen=True)
class IngestResponse:
    """Transport-neutral result of handling one device message."""

    status: IngestStatus
    http_status: int
    body: dict[str, Any]
