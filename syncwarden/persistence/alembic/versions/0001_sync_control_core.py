"""sync control core tables

Revision ID: 0001_sync_control_core
Revises:
Create Date: 2026-02-16
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_sync_control_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Job records are retained for audit; no delete path exists.
    op.create_table(
        "background_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_background_jobs_job_type", "background_jobs", ["job_type"])
    op.create_index("ix_background_jobs_status", "background_jobs", ["status"])
    op.create_index("ix_background_jobs_correlation_id", "background_jobs", ["correlation_id"])
    op.create_index("ix_background_jobs_status_created", "background_jobs", ["status", "created_at"])
    op.create_index("ix_background_jobs_type_created", "background_jobs", ["job_type", "created_at"])

    op.create_table(
        "integration_statuses",
        sa.Column("integration_name", sa.String(), primary_key=True),
        sa.Column("health", sa.String(), nullable=False, server_default="unknown"),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        sa.Column("last_error_details", sa.Text(), nullable=True),
        sa.Column("successful_syncs_24h", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_failures_24h", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("average_sync_duration_ms", sa.Float(), nullable=True),
        sa.Column("stale_threshold_seconds", sa.Integer(), nullable=False, server_default="172800"),
        sa.Column("is_manually_disabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("disabled_reason", sa.Text(), nullable=True),
        sa.Column("disabled_by", sa.String(), nullable=True),
        sa.Column("disabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "provider_usage_counters",
        sa.Column("provider", sa.String(), primary_key=True),
        sa.Column("feature", sa.String(), primary_key=True),
        sa.Column("period_start", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("calls_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("provider_usage_counters")
    op.drop_table("integration_statuses")
    op.drop_index("ix_background_jobs_type_created", table_name="background_jobs")
    op.drop_index("ix_background_jobs_status_created", table_name="background_jobs")
    op.drop_index("ix_background_jobs_correlation_id", table_name="background_jobs")
    op.drop_index("ix_background_jobs_status", table_name="background_jobs")
    op.drop_index("ix_background_jobs_job_type", table_name="background_jobs")
    op.drop_table("background_jobs")
