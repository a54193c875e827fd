"""SQLAlchemy ORM models for the scheduling workflow database."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from src.shared.types import ACTIVE_STATUSES, WorkflowStatus

_ACTIVE_STATUS_SQL = ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_STATUSES))


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class SchedulingWorkflow(Base):
    """One automated intake-form scheduling attempt tied to a call.

    Attributes:
        id: Primary key UUID.
        status: Lifecycle state; see src.shared.workflow_state.
        screenshots: Ring buffer of recent captured views.
    """

    __tablename__ = "scheduling_workflows"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    call_log_id: Mapped[str] = mapped_column(String(100))
    campaign_id: Mapped[str | None] = mapped_column(String(100), index=True)
    contact_id: Mapped[str | None] = mapped_column(String(100))
    agent_id: Mapped[str | None] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(
        String(20), default=WorkflowStatus.INITIATED.value, index=True
    )
    current_step: Mapped[str | None] = mapped_column(String(50))
    patient_data: Mapped[dict] = mapped_column(JSONB, default=dict)
    form_progress: Mapped[dict] = mapped_column(JSONB, default=dict)
    screenshots: Mapped[list] = mapped_column(JSONB, default=list)
    otp_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    otp_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    otp_attempts: Mapped[int] = mapped_column(Integer, default=0)
    otp_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    otp_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    otp_failure_reason: Mapped[str | None] = mapped_column(String(200))
    confirmation_number: Mapped[str | None] = mapped_column(String(100))
    appointment_details: Mapped[dict | None] = mapped_column(JSONB)
    submission_successful: Mapped[bool] = mapped_column(Boolean, default=False)
    error_details: Mapped[dict | None] = mapped_column(JSONB)
    fallback_link_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    manual_override_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    operator_id: Mapped[str | None] = mapped_column(String(100))
    operator_notes: Mapped[str | None] = mapped_column(Text)
    operator_intervention_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_scheduling_workflows_call_log", "call_log_id"),
        Index("ix_scheduling_workflows_created", "created_at"),
        Index(
            "uq_scheduling_workflows_active_call",
            "call_log_id",
            unique=True,
            postgresql_where=text(f"status IN ({_ACTIVE_STATUS_SQL})"),
        ),
    )

    events: Mapped[list["WorkflowEventLog"]] = relationship(back_populates="workflow")


class WorkflowEventLog(Base):
    """Append-only audit trail of workflow lifecycle events.

    Attributes:
        event_id: Primary key UUID.
        idempotency_key: Prevents duplicate rows on redelivery.
    """

    __tablename__ = "scheduling_workflow_events"

    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    workflow_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("scheduling_workflows.id"), index=True
    )
    event_type: Mapped[str] = mapped_column(String(50), index=True)
    payload: Mapped[dict | None] = mapped_column(JSONB, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(200), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index(
            "ix_workflow_events_workflow_type_created",
            "workflow_id",
            "event_type",
            "created_at",
        ),
    )

    workflow: Mapped["SchedulingWorkflow"] = relationship(back_populates="events")
