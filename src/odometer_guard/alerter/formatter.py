"""Human-readable text for fraud alerts.

Builds the description/evidence stored on rollback alerts and the plain
text rendering used by the CLI.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from odometer_guard.storage.repos import FraudAlertDTO

SEVERITY_MARKERS = {
    "critical": "[!!!]",
    "high": "[!!]",
    "medium": "[!]",
    "low": "[.]",
}


def format_km(value: int) -> str:
    """Format a mileage value with thousands separators."""
    return f"{value:,} km"


def rollback_description(*, previous_mileage: int, reported_mileage: int) -> str:
    decrease = previous_mileage - reported_mileage
    return (
        f"Odometer rollback detected: reported {format_km(reported_mileage)} "
        f"is {format_km(decrease)} below last verified {format_km(previous_mileage)}"
    )


def rollback_evidence(
    *,
    previous_mileage: int,
    reported_mileage: int,
    device_id: str,
    received_at: str,
    tolerance: int,
) -> dict[str, object]:
    return {
        "previous_mileage": previous_mileage,
        "reported_mileage": reported_mileage,
        "delta": reported_mileage - previous_mileage,
        "device_id": device_id,
        "received_at": received_at,
        "tolerance": tolerance,
    }


def format_alert_text(alert: FraudAlertDTO) -> str:
    """Render an alert as a short multi-line block."""
    marker = SEVERITY_MARKERS.get(alert.severity, "[?]")
    reported = alert.reported_at.strftime("%Y-%m-%d %H:%M UTC") if alert.reported_at else "-"
    lines = [
        f"{marker} {alert.alert_type} ({alert.severity}) - {alert.status}",
        f"  alert:    {alert.id}",
        f"  vehicle:  {alert.vehicle_id}",
        f"  reading:  {alert.telemetry_id or '-'}",
        f"  reported: {reported}",
        f"  {alert.description}",
    ]
    if alert.evidence_json:
        evidence = json.loads(alert.evidence_json)
        lines.append("  evidence: " + ", ".join(f"{k}={v}" for k, v in sorted(evidence.items())))
    if alert.investigation_notes:
        lines.append(f"  notes:    {alert.investigation_notes}")
    if alert.resolved_by:
        lines.append(f"  closed by {alert.resolved_by}")
    return "\n".join(lines)
