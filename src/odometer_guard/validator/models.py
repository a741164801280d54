"""Data models for the mileage validator."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

# Default thresholds (km)
DEFAULT_ROLLBACK_TOLERANCE = 5
DEFAULT_SUSPICIOUS_THRESHOLD = 1000
DEFAULT_ROLLBACK_PENALTY = -30

# Mileage columns are 32-bit INTEGER.
MAX_MILEAGE = 2**31 - 1


class ValidationStatus(str, Enum):
    """Terminal (or pending) classification of a telemetry reading."""

    PENDING = "PENDING"
    VALID = "VALID"
    SUSPICIOUS = "SUSPICIOUS"
    ROLLBACK_DETECTED = "ROLLBACK_DETECTED"
    # Reserved for review tooling; the validator never assigns it.
    INVALID = "INVALID"

    @property
    def is_accepted(self) -> bool:
        """Accepted readings move the authoritative mileage."""
        return self in (ValidationStatus.VALID, ValidationStatus.SUSPICIOUS)

    @property
    def is_flagged(self) -> bool:
        return self in (ValidationStatus.SUSPICIOUS, ValidationStatus.ROLLBACK_DETECTED)


@dataclass(frozen=True)
class ValidationThresholds:
    """Classification thresholds.

    Attributes:
        rollback_tolerance: Decrease tolerated before a reading is a rollback.
        suspicious_threshold: Increase above which a reading is flagged.
        rollback_penalty: Trust change applied on rollback.
    """

    rollback_tolerance: int = DEFAULT_ROLLBACK_TOLERANCE
    suspicious_threshold: int = DEFAULT_SUSPICIOUS_THRESHOLD
    rollback_penalty: int = DEFAULT_ROLLBACK_PENALTY


@dataclass(frozen=True)
class Classification:
    status: ValidationStatus
    delta: int
    reason: str


def classify(reported_mileage: int, previous_mileage: int, thresholds: ValidationThresholds) -> Classification:
    """Classify a reading against the last accepted mileage.

    Rules are evaluated in order and the first match wins:
    rollback beyond tolerance, jump beyond the suspicious threshold, valid.
    """
    delta = reported_mileage - previous_mileage
    if delta < -thresholds.rollback_tolerance:
        return Classification(
            ValidationStatus.ROLLBACK_DETECTED,
            delta,
            f"Mileage decreased by {-delta} km (tolerance {thresholds.rollback_tolerance} km)",
        )
    if delta > thresholds.suspicious_threshold:
        return Classification(
            ValidationStatus.SUSPICIOUS,
            delta,
            f"Mileage increased by {delta} km (threshold {thresholds.suspicious_threshold} km)",
        )
    if delta < 0:
        reason = f"Mileage {-delta} km below last verified, within tolerance"
    else:
        reason = f"Mileage increased by {delta} km"
    return Classification(ValidationStatus.VALID, delta, reason)


@dataclass(frozen=True)
class ValidationOutcome:
    """Result surfaced to ingestion callers.

    ``flagged`` is True for SUSPICIOUS and ROLLBACK_DETECTED; callers map it
    to a "flagged for review" response rather than an error.
    """

    reading_id: str
    vehicle_id: str
    validation_status: ValidationStatus
    previous_mileage: int
    reported_mileage: int
    delta: int
    reason: str
    trust_score: int | None = None
    alert_id: str | None = None
    replayed: bool = False

    @property
    def flagged(self) -> bool:
        return self.validation_status.is_flagged

    def to_dict(self) -> dict[str, object]:
        """Serialize to the caller-facing response body."""
        body: dict[str, object] = {
            "validationStatus": self.validation_status.value,
            "previousMileage": self.previous_mileage,
            "reportedMileage": self.reported_mileage,
            "delta": self.delta,
            "flagged": self.flagged,
            "reason": self.reason,
            "readingId": self.reading_id,
        }
        if self.trust_score is not None:
            body["trustScore"] = self.trust_score
        if self.alert_id is not None:
            body["alertId"] = self.alert_id
        if self.replayed:
            body["replayed"] = True
        return body
