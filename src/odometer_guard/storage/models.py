"""SQLAlchemy models for persistent storage.

This module defines the database schema for per-vehicle mileage state,
telemetry readings, the trust event log, fraud alerts and daily batches.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime

from sqlalchemy import (
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class VehicleStateModel(Base):
    """Authoritative mileage and trust score for one vehicle."""

    __tablename__ = "vehicle_states"

    vehicle_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    vin: Mapped[str | None] = mapped_column(String(17), nullable=True, unique=True)

    last_verified_mileage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trust_score: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    last_mileage_update_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Bumped on every mileage write.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class TelemetryReadingModel(Base):
    """One ingested odometer reading and its validation result."""

    __tablename__ = "telemetry_readings"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    reported_mileage: Mapped[int] = mapped_column(Integer, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    validation_status: Mapped[str] = mapped_column(String(24), nullable=False, default="PENDING")
    previous_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delta: Mapped[int | None] = mapped_column(Integer, nullable=True)
    validation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "vehicle_id",
            "device_id",
            "received_at",
            "reported_mileage",
            name="uq_telemetry_readings_delivery",
        ),
        Index("idx_telemetry_readings_vehicle_received", "vehicle_id", "received_at"),
        Index("idx_telemetry_readings_status", "validation_status"),
    )


class TrustEventModel(Base):
    """Append-only trust score change log."""

    __tablename__ = "trust_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    change: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_score: Mapped[int] = mapped_column(Integer, nullable=False)
    new_score: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)

    telemetry_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    fraud_alert_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reported_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_trust_events_vehicle_created", "vehicle_id", "created_at"),)


class FraudAlertModel(Base):
    """Fraud finding raised by the validator and worked by reviewers."""

    __tablename__ = "fraud_alerts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    telemetry_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    alert_type: Mapped[str] = mapped_column(String(40), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    reported_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    investigation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_fraud_alerts_vehicle", "vehicle_id"),
        Index("idx_fraud_alerts_status", "status"),
    )


class DailyBatchModel(Base):
    """Per vehicle/day digest of accepted readings and its anchoring state."""

    __tablename__ = "daily_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    batch_date: Mapped[date] = mapped_column(Date, nullable=False)

    reading_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    digest: Mapped[str] = mapped_column(String(64), nullable=False)
    start_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    end_mileage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_distance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    segment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    segments_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    anchor_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    anchor_reference: Mapped[str | None] = mapped_column(String(80), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    anchored_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("vehicle_id", "batch_date", name="uq_daily_batches_vehicle_date"),
        Index("idx_daily_batches_status", "anchor_status"),
    )
