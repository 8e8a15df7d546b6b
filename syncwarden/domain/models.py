from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from syncwarden.domain.state import HEALTH_UNKNOWN, JOB_STATUS_PENDING
from syncwarden.persistence.types import UtcDateTime


class Base(DeclarativeBase):
    pass


class BackgroundJob(Base):
    __tablename__ = "background_jobs"
    __table_args__ = (
        Index("ix_background_jobs_status_created", "status", "created_at"),
        Index("ix_background_jobs_type_created", "job_type", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Routine tag used by runners to select a handler.
    job_type: Mapped[str] = mapped_column(String, index=True)
    # Opaque serialized payload; never interpreted by the control core.
    payload: Mapped[str] = mapped_column(Text, default="{}")
    # Persist status as a plain string for migration safety.
    status: Mapped[str] = mapped_column(String, default=JOB_STATUS_PENDING, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Trace who or what produced the job without coupling to an identity store.
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Runners skip pending jobs until this instant.
    scheduled_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime)
    started_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime)


class IntegrationStatus(Base):
    __tablename__ = "integration_statuses"

    # One row per known provider, created lazily on first read.
    integration_name: Mapped[str] = mapped_column(String, primary_key=True)
    health: Mapped[str] = mapped_column(String, default=HEALTH_UNKNOWN)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_success_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Rolling daily counters, reset by the scheduler at UTC midnight.
    successful_syncs_24h: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_failures_24h: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_sync_duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    stale_threshold_seconds: Mapped[int] = mapped_column(Integer, default=48 * 3600, nullable=False)
    # Manual override is stored apart from computed health so history survives re-enable.
    is_manually_disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    disabled_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    disabled_by: Mapped[str | None] = mapped_column(String, nullable=True)
    disabled_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime)


class ProviderUsageCounter(Base):
    __tablename__ = "provider_usage_counters"

    # Track outbound calls per provider and consumer within a UTC day.
    provider: Mapped[str] = mapped_column(String, primary_key=True)
    # Empty string marks the provider-wide pool; other values are sub-feature carve-outs.
    feature: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[datetime] = mapped_column(UtcDateTime, primary_key=True)
    calls_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime)
