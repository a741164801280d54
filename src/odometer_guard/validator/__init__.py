"""Mileage validation - classification and authoritative mileage updates."""

from odometer_guard.validator.mileage import MileageValidator
from odometer_guard.validator.models import (
    MAX_MILEAGE,
    ValidationOutcome,
    ValidationStatus,
    ValidationThresholds,
    classify,
)

__all__ = [
    "MAX_MILEAGE",
    "MileageValidator",
    "ValidationOutcome",
    "ValidationStatus",
    "ValidationThresholds",
    "classify",
]
