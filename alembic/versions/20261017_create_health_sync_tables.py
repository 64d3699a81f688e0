"""Create heart_rate_samples and ecg_recordings with natural-key constraints

Revision ID: 20261017_create_health_sync_tables
Revises: None
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261017_create_health_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "heart_rate_samples",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("heart_rate", sa.Float(), nullable=False),
        sa.Column("source_device", sa.String(), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("device_info", _json(), nullable=True),
        sa.Column(
            "synced_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "timestamp", "heart_rate", "source_device", name="uq_heart_rate_natural_key"
        ),
        sa.CheckConstraint(
            "heart_rate >= 0 AND heart_rate <= 300", name="ck_heart_rate_range"
        ),
    )
    op.create_index(
        "ix_heart_rate_samples_timestamp", "heart_rate_samples", ["timestamp"]
    )
    op.create_index(
        "ix_heart_rate_time_device",
        "heart_rate_samples",
        [sa.text("timestamp DESC"), "source_device"],
    )

    op.create_table(
        "ecg_recordings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("classification", sa.Integer(), nullable=False),
        sa.Column("average_heart_rate", sa.Float(), nullable=True),
        sa.Column("sampling_frequency", sa.Float(), nullable=True),
        sa.Column("voltage_measurements", _json(), nullable=False),
        sa.Column("symptom_status", sa.Integer(), nullable=False),
        sa.Column("device_info", _json(), nullable=True),
        sa.Column(
            "synced_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("timestamp", name="uq_ecg_natural_key"),
        sa.CheckConstraint(
            "classification >= 0 AND classification <= 5", name="ck_ecg_classification"
        ),
        sa.CheckConstraint(
            "average_heart_rate IS NULL OR (average_heart_rate >= 0 AND average_heart_rate <= 300)",
            name="ck_ecg_average_heart_rate_range",
        ),
    )
    op.create_index(
        "ix_ecg_time_classification",
        "ecg_recordings",
        [sa.text("timestamp DESC"), "classification"],
    )


def downgrade() -> None:
    op.drop_index("ix_ecg_time_classification", table_name="ecg_recordings")
    op.drop_table("ecg_recordings")
    op.drop_index("ix_heart_rate_time_device", table_name="heart_rate_samples")
    op.drop_index("ix_heart_rate_samples_timestamp", table_name="heart_rate_samples")
    op.drop_table("heart_rate_samples")
