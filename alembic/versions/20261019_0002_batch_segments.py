"""Add trip segment summary to daily batches.

Revision ID: 002_batch_segments
Revises: 001_initial
Create Date: 2026-10-19 12:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002_batch_segments"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "daily_batches",
        sa.Column("segment_count", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column("daily_batches", sa.Column("segments_json", sa.Text(), nullable=True))


def downgrade() -> None:
    op.drop_column("daily_batches", "segments_json")
    op.drop_column("daily_batches", "segment_count")
