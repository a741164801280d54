"""Repository pattern implementations for data access.

This module provides data access abstractions for vehicle mileage state,
telemetry readings, trust events, fraud alerts and daily batches.

Mutations of ``vehicle_states`` are conditional UPDATEs (compare-and-swap);
callers check the returned boolean instead of taking row locks.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from odometer_guard.storage.models import (
    DailyBatchModel,
    FraudAlertModel,
    TelemetryReadingModel,
    TrustEventModel,
    VehicleStateModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ACCEPTED_STATUSES = ("VALID", "SUSPICIOUS")


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    return _to_utc(value)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Return the [start, end) UTC datetimes of a calendar day."""
    start = datetime.combine(day, time.min, tzinfo=UTC)
    return start, start + timedelta(days=1)


def _insert_for(session: AsyncSession) -> Any:
    bind = session.bind
    if bind is not None and bind.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


# ============================================================================
# Vehicle state
# ============================================================================


@dataclass
class VehicleStateDTO:
    """Data transfer object for per-vehicle mileage state."""

    vehicle_id: str
    last_verified_mileage: int
    trust_score: int
    vin: str | None = None
    last_mileage_update_at: datetime | None = None
    version: int = 0
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: VehicleStateModel) -> VehicleStateDTO:
        return cls(
            vehicle_id=model.vehicle_id,
            last_verified_mileage=model.last_verified_mileage,
            trust_score=model.trust_score,
            vin=model.vin,
            last_mileage_update_at=as_utc(model.last_mileage_update_at),
            version=model.version,
            created_at=as_utc(model.created_at),
        )


class VehicleStateRepository:
    """Repository for authoritative mileage and trust score."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, vehicle_id: str) -> VehicleStateDTO | None:
        # populate_existing: the CAS updates below bypass the identity map.
        result = await self.session.execute(
            select(VehicleStateModel)
            .where(VehicleStateModel.vehicle_id == vehicle_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return VehicleStateDTO.from_model(model) if model else None

    async def get_by_vin(self, vin: str) -> VehicleStateDTO | None:
        result = await self.session.execute(
            select(VehicleStateModel)
            .where(VehicleStateModel.vin == vin.upper())
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return VehicleStateDTO.from_model(model) if model else None

    async def create(
        self,
        vehicle_id: str,
        *,
        initial_mileage: int = 0,
        vin: str | None = None,
    ) -> VehicleStateDTO:
        now = datetime.now(UTC)
        model = VehicleStateModel(
            vehicle_id=vehicle_id,
            vin=vin.upper() if vin else None,
            last_verified_mileage=initial_mileage,
            trust_score=100,
            last_mileage_update_at=None,
            version=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(model)
        await self.session.flush()
        return VehicleStateDTO.from_model(model)

    async def compare_and_swap_mileage(
        self,
        vehicle_id: str,
        *,
        expected: int,
        new_mileage: int,
        updated_at: datetime,
    ) -> bool:
        """Set mileage only if it still equals ``expected``.

        When ``new_mileage == expected`` the row is only checked, so the
        version and mileage timestamp stay as they are.

        Returns:
            True if the row matched, False on conflict.
        """
        values: dict[str, Any] = {"updated_at": datetime.now(UTC)}
        if new_mileage != expected:
            values.update(
                last_verified_mileage=new_mileage,
                last_mileage_update_at=updated_at,
                version=VehicleStateModel.version + 1,
            )
        result = await self.session.execute(
            update(VehicleStateModel)
            .where(
                VehicleStateModel.vehicle_id == vehicle_id,
                VehicleStateModel.last_verified_mileage == expected,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_mileage(self, vehicle_id: str, *, new_mileage: int, updated_at: datetime) -> bool:
        """Unconditional mileage write, reserved for administrative overrides."""
        result = await self.session.execute(
            update(VehicleStateModel)
            .where(VehicleStateModel.vehicle_id == vehicle_id)
            .values(
                last_verified_mileage=new_mileage,
                last_mileage_update_at=updated_at,
                version=VehicleStateModel.version + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def compare_and_swap_trust_score(
        self,
        vehicle_id: str,
        *,
        expected: int,
        new_score: int,
    ) -> bool:
        result = await self.session.execute(
            update(VehicleStateModel)
            .where(
                VehicleStateModel.vehicle_id == vehicle_id,
                VehicleStateModel.trust_score == expected,
            )
            .values(trust_score=new_score, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


# ============================================================================
# Telemetry readings
# ============================================================================


@dataclass
class TelemetryReadingDTO:
    """Data transfer object for telemetry readings."""

    id: str
    vehicle_id: str
    device_id: str
    reported_mileage: int
    received_at: datetime
    validation_status: str = "PENDING"
    previous_mileage: int | None = None
    delta: int | None = None
    validation_reason: str | None = None
    validated_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.validation_status == "PENDING"

    @classmethod
    def from_model(cls, model: TelemetryReadingModel) -> TelemetryReadingDTO:
        return cls(
            id=model.id,
            vehicle_id=model.vehicle_id,
            device_id=model.device_id,
            reported_mileage=model.reported_mileage,
            received_at=_to_utc(model.received_at),
            validation_status=model.validation_status,
            previous_mileage=model.previous_mileage,
            delta=model.delta,
            validation_reason=model.validation_reason,
            validated_at=as_utc(model.validated_at),
        )


class TelemetryReadingRepository:
    """Repository for telemetry readings."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, reading_id: str) -> TelemetryReadingDTO | None:
        result = await self.session.execute(
            select(TelemetryReadingModel)
            .where(TelemetryReadingModel.id == reading_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return TelemetryReadingDTO.from_model(model) if model else None

    async def find_delivery(
        self,
        *,
        vehicle_id: str,
        device_id: str,
        received_at: datetime,
        reported_mileage: int,
    ) -> TelemetryReadingDTO | None:
        """Find an earlier delivery of the same device reading."""
        result = await self.session.execute(
            select(TelemetryReadingModel)
            .where(
                TelemetryReadingModel.vehicle_id == vehicle_id,
                TelemetryReadingModel.device_id == device_id,
                TelemetryReadingModel.received_at == received_at,
                TelemetryReadingModel.reported_mileage == reported_mileage,
            )
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return TelemetryReadingDTO.from_model(model) if model else None

    async def insert_pending(
        self,
        *,
        vehicle_id: str,
        device_id: str,
        reported_mileage: int,
        received_at: datetime,
    ) -> TelemetryReadingDTO:
        model = TelemetryReadingModel(
            vehicle_id=vehicle_id,
            device_id=device_id,
            reported_mileage=reported_mileage,
            received_at=received_at,
            validation_status="PENDING",
            created_at=datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return TelemetryReadingDTO.from_model(model)

    async def set_validation(
        self,
        reading_id: str,
        *,
        status: str,
        previous_mileage: int,
        delta: int,
        reason: str,
        validated_at: datetime,
    ) -> bool:
        """Record the terminal status. Only a PENDING reading can be resolved."""
        result = await self.session.execute(
            update(TelemetryReadingModel)
            .where(
                TelemetryReadingModel.id == reading_id,
                TelemetryReadingModel.validation_status == "PENDING",
            )
            .values(
                validation_status=status,
                previous_mileage=previous_mileage,
                delta=delta,
                validation_reason=reason,
                validated_at=validated_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_accepted_for_day(self, vehicle_id: str, day: date) -> list[TelemetryReadingDTO]:
        """Accepted readings of one UTC day, ordered by receipt time then id."""
        start, end = day_bounds(day)
        result = await self.session.execute(
            select(TelemetryReadingModel)
            .where(
                TelemetryReadingModel.vehicle_id == vehicle_id,
                TelemetryReadingModel.received_at >= start,
                TelemetryReadingModel.received_at < end,
                TelemetryReadingModel.validation_status.in_(ACCEPTED_STATUSES),
            )
            .order_by(TelemetryReadingModel.received_at.asc(), TelemetryReadingModel.id.asc())
        )
        return [TelemetryReadingDTO.from_model(m) for m in result.scalars().all()]

    async def list_vehicles_with_accepted(self, day: date) -> list[str]:
        start, end = day_bounds(day)
        result = await self.session.execute(
            select(TelemetryReadingModel.vehicle_id)
            .where(
                TelemetryReadingModel.received_at >= start,
                TelemetryReadingModel.received_at < end,
                TelemetryReadingModel.validation_status.in_(ACCEPTED_STATUSES),
            )
            .distinct()
            .order_by(TelemetryReadingModel.vehicle_id)
        )
        return [str(v) for v in result.scalars().all()]

    async def count_by_status(self, vehicle_id: str) -> dict[str, int]:
        result = await self.session.execute(
            select(TelemetryReadingModel.validation_status, func.count())
            .where(TelemetryReadingModel.vehicle_id == vehicle_id)
            .group_by(TelemetryReadingModel.validation_status)
        )
        return {str(status): int(count) for status, count in result.all()}


# ============================================================================
# Trust events
# ============================================================================


@dataclass
class TrustEventDTO:
    """Data transfer object for trust score events."""

    vehicle_id: str
    change: int
    previous_score: int
    new_score: int
    reason: str
    source: str
    telemetry_id: str | None = None
    fraud_alert_id: str | None = None
    device_id: str | None = None
    reported_mileage: int | None = None
    previous_mileage: int | None = None
    id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TrustEventModel) -> TrustEventDTO:
        return cls(
            id=model.id,
            vehicle_id=model.vehicle_id,
            change=model.change,
            previous_score=model.previous_score,
            new_score=model.new_score,
            reason=model.reason,
            source=model.source,
            telemetry_id=model.telemetry_id,
            fraud_alert_id=model.fraud_alert_id,
            device_id=model.device_id,
            reported_mileage=model.reported_mileage,
            previous_mileage=model.previous_mileage,
            created_at=as_utc(model.created_at),
        )


class TrustEventRepository:
    """Append-only repository for the trust event log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(self, dto: TrustEventDTO) -> TrustEventDTO:
        model = TrustEventModel(
            vehicle_id=dto.vehicle_id,
            change=dto.change,
            previous_score=dto.previous_score,
            new_score=dto.new_score,
            reason=dto.reason,
            source=dto.source,
            telemetry_id=dto.telemetry_id,
            fraud_alert_id=dto.fraud_alert_id,
            device_id=dto.device_id,
            reported_mileage=dto.reported_mileage,
            previous_mileage=dto.previous_mileage,
            created_at=dto.created_at or datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return TrustEventDTO.from_model(model)

    async def list_recent(self, vehicle_id: str, *, limit: int = 50) -> list[TrustEventDTO]:
        result = await self.session.execute(
            select(TrustEventModel)
            .where(TrustEventModel.vehicle_id == vehicle_id)
            .order_by(TrustEventModel.id.desc())
            .limit(limit)
        )
        return [TrustEventDTO.from_model(m) for m in result.scalars().all()]

    async def iter_changes(self, vehicle_id: str) -> list[int]:
        """All intended changes for a vehicle in application order."""
        result = await self.session.execute(
            select(TrustEventModel.change)
            .where(TrustEventModel.vehicle_id == vehicle_id)
            .order_by(TrustEventModel.id.asc())
        )
        return [int(c) for c in result.scalars().all()]


# ============================================================================
# Fraud alerts
# ============================================================================


@dataclass
class FraudAlertDTO:
    """Data transfer object for fraud alerts."""

    id: str
    vehicle_id: str
    telemetry_id: str | None
    alert_type: str
    severity: str
    status: str
    description: str
    evidence_json: str | None = None
    reported_at: datetime | None = None
    investigation_notes: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @classmethod
    def from_model(cls, model: FraudAlertModel) -> FraudAlertDTO:
        return cls(
            id=model.id,
            vehicle_id=model.vehicle_id,
            telemetry_id=model.telemetry_id,
            alert_type=model.alert_type,
            severity=model.severity,
            status=model.status,
            description=model.description,
            evidence_json=model.evidence_json,
            reported_at=as_utc(model.reported_at),
            investigation_notes=model.investigation_notes,
            resolved_at=as_utc(model.resolved_at),
            resolved_by=model.resolved_by,
        )


class FraudAlertRepository:
    """Repository for fraud alerts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(
        self,
        *,
        vehicle_id: str,
        telemetry_id: str | None,
        alert_type: str,
        severity: str,
        description: str,
        evidence_json: str | None = None,
    ) -> FraudAlertDTO:
        now = datetime.now(UTC)
        model = FraudAlertModel(
            vehicle_id=vehicle_id,
            telemetry_id=telemetry_id,
            alert_type=alert_type,
            severity=severity,
            status="active",
            description=description,
            evidence_json=evidence_json,
            reported_at=now,
            updated_at=now,
        )
        self.session.add(model)
        await self.session.flush()
        return FraudAlertDTO.from_model(model)

    async def get(self, alert_id: str) -> FraudAlertDTO | None:
        result = await self.session.execute(
            select(FraudAlertModel)
            .where(FraudAlertModel.id == alert_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return FraudAlertDTO.from_model(model) if model else None

    async def find(
        self,
        *,
        vehicle_id: str | None = None,
        statuses: Iterable[str] | None = None,
        limit: int = 100,
    ) -> list[FraudAlertDTO]:
        stmt = select(FraudAlertModel)
        if vehicle_id is not None:
            stmt = stmt.where(FraudAlertModel.vehicle_id == vehicle_id)
        if statuses is not None:
            stmt = stmt.where(FraudAlertModel.status.in_(tuple(statuses)))
        stmt = stmt.order_by(FraudAlertModel.reported_at.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [FraudAlertDTO.from_model(m) for m in result.scalars().all()]

    async def transition(
        self,
        alert_id: str,
        *,
        from_statuses: tuple[str, ...],
        to_status: str,
        notes: str | None,
        actor: str | None,
        resolved_at: datetime | None = None,
    ) -> bool:
        """Conditionally move an alert between statuses."""
        values: dict[str, Any] = {"status": to_status, "updated_at": datetime.now(UTC)}
        if notes is not None:
            values["investigation_notes"] = notes
        if resolved_at is not None:
            values["resolved_at"] = resolved_at
            values["resolved_by"] = actor
        result = await self.session.execute(
            update(FraudAlertModel)
            .where(FraudAlertModel.id == alert_id, FraudAlertModel.status.in_(from_statuses))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


# ============================================================================
# Daily batches
# ============================================================================


@dataclass
class DailyBatchDTO:
    """Data transfer object for daily consolidation batches."""

    vehicle_id: str
    batch_date: date
    reading_count: int
    digest: str
    anchor_status: str = "pending"
    anchor_reference: str | None = None
    start_mileage: int | None = None
    end_mileage: int | None = None
    total_distance: int = 0
    segment_count: int = 0
    segments_json: str | None = None
    attempts: int = 0
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    anchored_at: datetime | None = None
    id: int | None = None

    @property
    def is_anchored(self) -> bool:
        return self.anchor_status == "anchored"

    @classmethod
    def from_model(cls, model: DailyBatchModel) -> DailyBatchDTO:
        return cls(
            id=model.id,
            vehicle_id=model.vehicle_id,
            batch_date=model.batch_date,
            reading_count=model.reading_count,
            digest=model.digest,
            anchor_status=model.anchor_status,
            anchor_reference=model.anchor_reference,
            start_mileage=model.start_mileage,
            end_mileage=model.end_mileage,
            total_distance=model.total_distance,
            segment_count=model.segment_count,
            segments_json=model.segments_json,
            attempts=model.attempts,
            last_error=model.last_error,
            last_attempt_at=as_utc(model.last_attempt_at),
            anchored_at=as_utc(model.anchored_at),
        )


class DailyBatchRepository:
    """Repository for daily batches (one row per vehicle/date)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, vehicle_id: str, batch_date: date) -> DailyBatchDTO | None:
        result = await self.session.execute(
            select(DailyBatchModel)
            .where(
                DailyBatchModel.vehicle_id == vehicle_id,
                DailyBatchModel.batch_date == batch_date,
            )
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return DailyBatchDTO.from_model(model) if model else None

    async def upsert_for_day(self, dto: DailyBatchDTO) -> DailyBatchDTO | None:
        """Insert the batch as pending, or refresh its digest and stats.

        An existing row keeps its anchor status and attempt counter; an
        anchored row is never touched.

        Returns:
            The stored batch, or None if it is already anchored.
        """
        now = datetime.now(UTC)
        values = {
            "vehicle_id": dto.vehicle_id,
            "batch_date": dto.batch_date,
            "reading_count": dto.reading_count,
            "digest": dto.digest,
            "start_mileage": dto.start_mileage,
            "end_mileage": dto.end_mileage,
            "total_distance": dto.total_distance,
            "segment_count": dto.segment_count,
            "segments_json": dto.segments_json,
            "anchor_status": "pending",
        }
        insert = _insert_for(self.session)
        stmt = insert(DailyBatchModel).values(**values, attempts=0, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["vehicle_id", "batch_date"],
            set_={
                "reading_count": stmt.excluded.reading_count,
                "digest": stmt.excluded.digest,
                "start_mileage": stmt.excluded.start_mileage,
                "end_mileage": stmt.excluded.end_mileage,
                "total_distance": stmt.excluded.total_distance,
                "segment_count": stmt.excluded.segment_count,
                "segments_json": stmt.excluded.segments_json,
                "updated_at": now,
            },
            where=DailyBatchModel.anchor_status != "anchored",
        )
        await self.session.execute(stmt)
        await self.session.flush()
        stored = await self.get(dto.vehicle_id, dto.batch_date)
        if stored is None or stored.is_anchored:
            return None
        return stored

    async def claim_attempt(
        self,
        batch_id: int,
        *,
        seen_attempts: int,
        now: datetime,
        lease_cutoff: datetime,
        ignore_lease: bool = False,
    ) -> bool:
        """Reserve the next anchor attempt.

        The claim succeeds only if nobody else bumped the attempt counter
        since ``seen_attempts`` was read, and the batch is failed or its last
        attempt started before ``lease_cutoff`` (an in-flight attempt holds a
        lease until then).

        Returns:
            True if this caller owns attempt ``seen_attempts + 1``.
        """
        conditions = [
            DailyBatchModel.id == batch_id,
            DailyBatchModel.attempts == seen_attempts,
            DailyBatchModel.anchor_status != "anchored",
        ]
        if not ignore_lease:
            conditions.append(
                (DailyBatchModel.anchor_status == "failed")
                | (DailyBatchModel.last_attempt_at.is_(None))
                | (DailyBatchModel.last_attempt_at < lease_cutoff)
            )
        result = await self.session.execute(
            update(DailyBatchModel)
            .where(*conditions)
            .values(
                attempts=seen_attempts + 1,
                anchor_status="pending",
                last_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_anchored(
        self,
        batch_id: int,
        *,
        attempt: int,
        digest: str,
        anchor_reference: str,
        anchored_at: datetime,
    ) -> bool:
        """Record the ledger reference for the digest that was submitted.

        Fails if a newer attempt was claimed or the digest was refreshed
        while the submission was in flight.
        """
        result = await self.session.execute(
            update(DailyBatchModel)
            .where(
                DailyBatchModel.id == batch_id,
                DailyBatchModel.attempts == attempt,
                DailyBatchModel.digest == digest,
                DailyBatchModel.anchor_status != "anchored",
            )
            .values(
                anchor_status="anchored",
                anchor_reference=anchor_reference,
                anchored_at=anchored_at,
                last_error=None,
                updated_at=anchored_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_failed(
        self,
        vehicle_id: str,
        batch_date: date,
        *,
        error: str,
        attempt: int | None = None,
    ) -> bool:
        """Mark the batch failed; with ``attempt``, only if no newer attempt was claimed."""
        now = datetime.now(UTC)
        conditions = [
            DailyBatchModel.vehicle_id == vehicle_id,
            DailyBatchModel.batch_date == batch_date,
            DailyBatchModel.anchor_status != "anchored",
        ]
        if attempt is not None:
            conditions.append(DailyBatchModel.attempts == attempt)
        result = await self.session.execute(
            update(DailyBatchModel)
            .where(*conditions)
            .values(anchor_status="failed", last_error=error[:2000], updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_retryable(
        self,
        *,
        attempted_before: datetime,
        max_attempts: int,
        limit: int,
    ) -> list[DailyBatchDTO]:
        """Failed/pending batches not attempted since ``attempted_before``."""
        result = await self.session.execute(
            select(DailyBatchModel)
            .where(
                DailyBatchModel.anchor_status.in_(("failed", "pending")),
                DailyBatchModel.attempts < max_attempts,
                (DailyBatchModel.last_attempt_at.is_(None))
                | (DailyBatchModel.last_attempt_at < attempted_before),
            )
            .order_by(DailyBatchModel.batch_date.asc(), DailyBatchModel.id.asc())
            .limit(limit)
        )
        return [DailyBatchDTO.from_model(m) for m in result.scalars().all()]

    async def list_exhausted(self, *, max_attempts: int, limit: int = 100) -> list[DailyBatchDTO]:
        result = await self.session.execute(
            select(DailyBatchModel)
            .where(
                DailyBatchModel.anchor_status == "failed",
                DailyBatchModel.attempts >= max_attempts,
            )
            .order_by(DailyBatchModel.batch_date.asc())
            .limit(limit)
        )
        return [DailyBatchDTO.from_model(m) for m in result.scalars().all()]

    async def list_anchored_for_date(self, batch_date: date) -> list[str]:
        result = await self.session.execute(
            select(DailyBatchModel.vehicle_id).where(
                DailyBatchModel.batch_date == batch_date,
                DailyBatchModel.anchor_status == "anchored",
            )
        )
        return [str(v) for v in result.scalars().all()]
