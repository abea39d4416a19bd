"""Create quota, spend, flag, job and telemetry tables.

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    """Create admission control tables."""
    op.create_table(
        "QuotaCounters",
        sa.Column(
            "scope_key",
            sa.String(255),
            nullable=False,
            comment="Scope name and key, e.g. 'network:203.0.113.7'",
        ),
        sa.Column("window_id", sa.String(32), nullable=False, comment="UTC date"),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("scope_key", "window_id"),
        sa.CheckConstraint("count >= 0", name="ck_quota_counters_count_non_negative"),
    )

    op.create_table(
        "SpendBuckets",
        sa.Column("window_id", sa.String(40), nullable=False),
        sa.Column("window", sa.String(8), nullable=False, comment="'hour' or 'day'"),
        sa.Column("total_micros", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("window_id"),
        sa.CheckConstraint("total_micros >= 0", name="ck_spend_buckets_total_non_negative"),
    )

    op.create_table(
        "SpendReservations",
        sa.Column("reservation_id", sa.String(36), nullable=False),
        sa.Column("hour_window_id", sa.String(40), nullable=False),
        sa.Column("day_window_id", sa.String(40), nullable=False),
        sa.Column("estimated_micros", sa.BigInteger(), nullable=False),
        sa.Column("actual_micros", sa.BigInteger(), nullable=True),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default="reserved",
            comment="'reserved' or 'reconciled'",
        ),
        sa.Column("operation", sa.String(100), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("reconciled_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("reservation_id"),
    )
    op.create_index("ix_spend_reservations_status", "SpendReservations", ["status"])
    op.create_index("ix_spend_reservations_day", "SpendReservations", ["day_window_id"])

    op.create_table(
        "FeatureFlags",
        sa.Column("flag_key", sa.String(100), nullable=False),
        sa.Column("value", sa.String(255), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("flag_key"),
    )

    op.create_table(
        "Jobs",
        sa.Column("job_id", sa.String(128), nullable=False),
        sa.Column("kind", sa.String(50), nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default="pending",
            comment="pending, running, completed or failed",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("claimed_by", sa.String(100), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_jobs_status", "Jobs", ["status"])
    op.create_index("ix_jobs_status_heartbeat", "Jobs", ["status", "heartbeat_at"])
    op.create_index("ix_jobs_created", "Jobs", ["created_at"])

    op.create_table(
        "TelemetryEvents",
        sa.Column("event_id", sa.String(36), nullable=False),
        sa.Column("event", sa.String(100), nullable=False),
        sa.Column("job_id", sa.String(128), nullable=True),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("error_kind", sa.String(50), nullable=True),
        sa.Column("cost_estimate_micros", sa.BigInteger(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("attributes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_telemetry_event_created", "TelemetryEvents", ["event", "created_at"])
    op.create_index("ix_telemetry_job", "TelemetryEvents", ["job_id"])


def downgrade() -> None:
    """Drop admission control tables."""
    op.drop_index("ix_telemetry_job", table_name="TelemetryEvents")
    op.drop_index("ix_telemetry_event_created", table_name="TelemetryEvents")
    op.drop_table("TelemetryEvents")

    op.drop_index("ix_jobs_created", table_name="Jobs")
    op.drop_index("ix_jobs_status_heartbeat", table_name="Jobs")
    op.drop_index("ix_jobs_status", table_name="Jobs")
    op.drop_table("Jobs")

    op.drop_table("FeatureFlags")

    op.drop_index("ix_spend_reservations_day", table_name="SpendReservations")
    op.drop_index("ix_spend_reservations_status", table_name="SpendReservations")
    op.drop_table("SpendReservations")

    op.drop_table("SpendBuckets")
    op.drop_table("QuotaCounters")
