"""Fraud alert creation and lifecycle."""

from odometer_guard.alerter.manager import (
    ALERT_TYPE_ODOMETER_ROLLBACK,
    AlertSeverity,
    AlertStatus,
    FraudAlertManager,
)

__all__ = [
    "ALERT_TYPE_ODOMETER_ROLLBACK",
    "AlertSeverity",
    "AlertStatus",
    "FraudAlertManager",
]
