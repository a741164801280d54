"""Fraud alert manager.

Alerts are always created ``active``. Every later status change is an
explicit, externally triggered call; nothing here moves an alert on a
timer or in reaction to new readings.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from odometer_guard.exceptions import AlertNotFoundError, AlertTransitionError, InvalidInputError
from odometer_guard.storage.repos import FraudAlertDTO, FraudAlertRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from odometer_guard.trust.engine import SessionFactory

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


ALERT_TYPE_ODOMETER_ROLLBACK = "odometer_rollback"

# Allowed source statuses for each target status.
_TRANSITIONS: dict[AlertStatus, tuple[str, ...]] = {
    AlertStatus.INVESTIGATING: (AlertStatus.ACTIVE.value,),
    AlertStatus.RESOLVED: (AlertStatus.ACTIVE.value, AlertStatus.INVESTIGATING.value),
    AlertStatus.FALSE_POSITIVE: (AlertStatus.ACTIVE.value, AlertStatus.INVESTIGATING.value),
}

AlertCallback = Callable[[FraudAlertDTO], Awaitable[None]]


class FraudAlertManager:
    """Creates fraud alerts and applies reviewer-driven status changes.

    Args:
        session_factory: Unit-of-work factory (``DatabaseManager.get_async_session``).
        on_alert_raised: Optional async callback invoked for alerts raised in
            the manager's own transaction. Callers passing ``session`` call
            ``notify`` after committing.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        on_alert_raised: AlertCallback | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._on_alert_raised = on_alert_raised

    @asynccontextmanager
    async def _unit_of_work(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self._session_factory() as own:
            yield own

    async def raise_alert(
        self,
        vehicle_id: str,
        telemetry_id: str | None,
        alert_type: str,
        severity: AlertSeverity | str,
        description: str,
        *,
        evidence: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
    ) -> FraudAlertDTO:
        """Create a new alert in ``active`` status.

        Idempotency is the caller's job: every call creates a new alert.
        """
        try:
            severity_value = AlertSeverity(severity).value
        except ValueError as e:
            raise InvalidInputError(f"Unknown alert severity: {severity}", field="severity") from e

        async with self._unit_of_work(session) as uow:
            alert = await FraudAlertRepository(uow).insert(
                vehicle_id=vehicle_id,
                telemetry_id=telemetry_id,
                alert_type=alert_type,
                severity=severity_value,
                description=description,
                evidence_json=json.dumps(evidence, sort_keys=True) if evidence else None,
            )

        logger.warning(
            "Fraud alert raised: id=%s vehicle=%s type=%s severity=%s",
            alert.id,
            vehicle_id,
            alert_type,
            severity_value,
        )
        if session is None:
            await self.notify(alert)
        return alert

    async def notify(self, alert: FraudAlertDTO) -> None:
        """Invoke the raised-alert callback for a committed alert."""
        if self._on_alert_raised is None:
            return
        try:
            await self._on_alert_raised(alert)
        except Exception as e:
            logger.warning("Alert callback failed for %s: %s", alert.id, e)

    async def get(self, alert_id: str) -> FraudAlertDTO:
        async with self._session_factory() as session:
            alert = await FraudAlertRepository(session).get(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Fraud alert not found: {alert_id}")
        return alert

    async def list_active(self, vehicle_id: str | None = None) -> list[FraudAlertDTO]:
        """Alerts still awaiting a verdict (active or investigating)."""
        async with self._session_factory() as session:
            return await FraudAlertRepository(session).find(
                vehicle_id=vehicle_id,
                statuses=(AlertStatus.ACTIVE.value, AlertStatus.INVESTIGATING.value),
            )

    async def start_investigation(
        self, alert_id: str, *, actor: str, notes: str | None = None
    ) -> FraudAlertDTO:
        return await self._transition(alert_id, AlertStatus.INVESTIGATING, actor=actor, notes=notes)

    async def resolve(self, alert_id: str, *, actor: str, notes: str | None = None) -> FraudAlertDTO:
        """Close the alert as confirmed and handled."""
        return await self._transition(alert_id, AlertStatus.RESOLVED, actor=actor, notes=notes)

    async def mark_false_positive(
        self, alert_id: str, *, actor: str, notes: str | None = None
    ) -> FraudAlertDTO:
        """Close the alert as not fraudulent.

        The trust penalty applied at detection time is not reverted here;
        a reviewer who wants to restore the score calls the trust engine
        with ``source=admin``.
        """
        return await self._transition(alert_id, AlertStatus.FALSE_POSITIVE, actor=actor, notes=notes)

    async def _transition(
        self,
        alert_id: str,
        target: AlertStatus,
        *,
        actor: str,
        notes: str | None,
    ) -> FraudAlertDTO:
        allowed_from = _TRANSITIONS[target]
        final = target in (AlertStatus.RESOLVED, AlertStatus.FALSE_POSITIVE)

        async with self._session_factory() as session:
            repo = FraudAlertRepository(session)
            current = await repo.get(alert_id)
            if current is None:
                raise AlertNotFoundError(f"Fraud alert not found: {alert_id}")
            moved = await repo.transition(
                alert_id,
                from_statuses=allowed_from,
                to_status=target.value,
                notes=notes,
                actor=actor,
                resolved_at=datetime.now(UTC) if final else None,
            )
            if not moved:
                latest = await repo.get(alert_id)
                status = latest.status if latest else current.status
                raise AlertTransitionError(
                    f"Cannot move alert {alert_id} from {status} to {target.value}"
                )
            updated = await repo.get(alert_id)
            if updated is None:
                raise AlertNotFoundError(f"Fraud alert not found: {alert_id}")

        logger.info("Fraud alert %s -> %s by %s", alert_id, target.value, actor)
        return updated
