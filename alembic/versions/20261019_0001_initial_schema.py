"""Initial schema for mileage state, readings, trust, alerts and daily batches.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Vehicle mileage state
    op.create_table(
        "vehicle_states",
        sa.Column("vehicle_id", sa.String(64), nullable=False),
        sa.Column("vin", sa.String(17), nullable=True),
        sa.Column("last_verified_mileage", sa.Integer(), nullable=False),
        sa.Column("trust_score", sa.Integer(), nullable=False),
        sa.Column("last_mileage_update_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("vehicle_id"),
        sa.UniqueConstraint("vin"),
    )

    # Telemetry readings
    op.create_table(
        "telemetry_readings",
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("vehicle_id", sa.String(64), nullable=False),
        sa.Column("device_id", sa.String(128), nullable=False),
        sa.Column("reported_mileage", sa.Integer(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("validation_status", sa.String(24), nullable=False),
        sa.Column("previous_mileage", sa.Integer(), nullable=True),
        sa.Column("delta", sa.Integer(), nullable=True),
        sa.Column("validation_reason", sa.Text(), nullable=True),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "vehicle_id",
            "device_id",
            "received_at",
            "reported_mileage",
            name="uq_telemetry_readings_delivery",
        ),
    )
    op.create_index(
        "idx_telemetry_readings_vehicle_received",
        "telemetry_readings",
        ["vehicle_id", "received_at"],
    )
    op.create_index("idx_telemetry_readings_status", "telemetry_readings", ["validation_status"])

    # Trust event log
    op.create_table(
        "trust_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("vehicle_id", sa.String(64), nullable=False),
        sa.Column("change", sa.Integer(), nullable=False),
        sa.Column("previous_score", sa.Integer(), nullable=False),
        sa.Column("new_score", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("source", sa.String(16), nullable=False),
        sa.Column("telemetry_id", sa.String(32), nullable=True),
        sa.Column("fraud_alert_id", sa.String(32), nullable=True),
        sa.Column("device_id", sa.String(128), nullable=True),
        sa.Column("reported_mileage", sa.Integer(), nullable=True),
        sa.Column("previous_mileage", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_trust_events_vehicle_created", "trust_events", ["vehicle_id", "created_at"]
    )

    # Fraud alerts
    op.create_table(
        "fraud_alerts",
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("vehicle_id", sa.String(64), nullable=False),
        sa.Column("telemetry_id", sa.String(32), nullable=True),
        sa.Column("alert_type", sa.String(40), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("evidence_json", sa.Text(), nullable=True),
        sa.Column("reported_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("investigation_notes", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(128), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_fraud_alerts_vehicle", "fraud_alerts", ["vehicle_id"])
    op.create_index("idx_fraud_alerts_status", "fraud_alerts", ["status"])

    # Daily batches
    op.create_table(
        "daily_batches",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("vehicle_id", sa.String(64), nullable=False),
        sa.Column("batch_date", sa.Date(), nullable=False),
        sa.Column("reading_count", sa.Integer(), nullable=False),
        sa.Column("digest", sa.String(64), nullable=False),
        sa.Column("start_mileage", sa.Integer(), nullable=True),
        sa.Column("end_mileage", sa.Integer(), nullable=True),
        sa.Column("total_distance", sa.Integer(), nullable=False),
        sa.Column("anchor_status", sa.String(16), nullable=False),
        sa.Column("anchor_reference", sa.String(80), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("anchored_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("vehicle_id", "batch_date", name="uq_daily_batches_vehicle_date"),
    )
    op.create_index("idx_daily_batches_status", "daily_batches", ["anchor_status"])


def downgrade() -> None:
    op.drop_index("idx_daily_batches_status", table_name="daily_batches")
    op.drop_table("daily_batches")

    op.drop_index("idx_fraud_alerts_status", table_name="fraud_alerts")
    op.drop_index("idx_fraud_alerts_vehicle", table_name="fraud_alerts")
    op.drop_table("fraud_alerts")

    op.drop_index("idx_trust_events_vehicle_created", table_name="trust_events")
    op.drop_table("trust_events")

    op.drop_index("idx_telemetry_readings_status", table_name="telemetry_readings")
    op.drop_index("idx_telemetry_readings_vehicle_received", table_name="telemetry_readings")
    op.drop_table("telemetry_readings")

    op.drop_table("vehicle_states")
