"""add_scheduling_workflows

Revision ID: d4e5f6a7b8c9
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "d4e5f6a7b8c9"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ACTIVE_STATUSES = (
    "'collecting_data', 'form_filling', 'initiated', "
    "'otp_requested', 'otp_verified', 'submitting'"
)


def upgrade() -> None:
    """Add scheduling_workflows and scheduling_workflow_events tables."""
    op.create_table(
        "scheduling_workflows",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("call_log_id", sa.String(100), nullable=False),
        sa.Column("campaign_id", sa.String(100)),
        sa.Column("contact_id", sa.String(100)),
        sa.Column("agent_id", sa.String(100)),
        sa.Column(
            "status",
            sa.String(20),
            server_default="initiated",
            nullable=False,
        ),
        sa.Column("current_step", sa.String(50)),
        sa.Column(
            "patient_data",
            postgresql.JSONB(),
            server_default="{}",
            nullable=False,
        ),
        sa.Column(
            "form_progress",
            postgresql.JSONB(),
            server_default="{}",
            nullable=False,
        ),
        sa.Column(
            "screenshots",
            postgresql.JSONB(),
            server_default="[]",
            nullable=False,
        ),
        sa.Column("otp_requested", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("otp_requested_at", sa.DateTime(timezone=True)),
        sa.Column("otp_attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("otp_verified", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("otp_verified_at", sa.DateTime(timezone=True)),
        sa.Column("otp_failure_reason", sa.String(200)),
        sa.Column("confirmation_number", sa.String(100)),
        sa.Column("appointment_details", postgresql.JSONB()),
        sa.Column(
            "submission_successful",
            sa.Boolean(),
            server_default="false",
            nullable=False,
        ),
        sa.Column("error_details", postgresql.JSONB()),
        sa.Column(
            "fallback_link_sent",
            sa.Boolean(),
            server_default="false",
            nullable=False,
        ),
        sa.Column(
            "manual_override_enabled",
            sa.Boolean(),
            server_default="false",
            nullable=False,
        ),
        sa.Column("operator_id", sa.String(100)),
        sa.Column("operator_notes", sa.Text()),
        sa.Column("operator_intervention_at", sa.DateTime(timezone=True)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_scheduling_workflows_call_log",
        "scheduling_workflows",
        ["call_log_id"],
    )
    op.create_index(
        "ix_scheduling_workflows_created",
        "scheduling_workflows",
        ["created_at"],
    )
    op.create_index(
        "ix_scheduling_workflows_status",
        "scheduling_workflows",
        ["status"],
    )
    op.create_index(
        "ix_scheduling_workflows_campaign_id",
        "scheduling_workflows",
        ["campaign_id"],
    )
    op.create_index(
        "uq_scheduling_workflows_active_call",
        "scheduling_workflows",
        ["call_log_id"],
        unique=True,
        postgresql_where=sa.text(f"status IN ({ACTIVE_STATUSES})"),
    )

    op.create_table(
        "scheduling_workflow_events",
        sa.Column("event_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "workflow_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("scheduling_workflows.id"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("payload", postgresql.JSONB(), server_default="{}"),
        sa.Column("idempotency_key", sa.String(200), unique=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_scheduling_workflow_events_workflow_id",
        "scheduling_workflow_events",
        ["workflow_id"],
    )
    op.create_index(
        "ix_scheduling_workflow_events_event_type",
        "scheduling_workflow_events",
        ["event_type"],
    )
    op.create_index(
        "ix_workflow_events_workflow_type_created",
        "scheduling_workflow_events",
        ["workflow_id", "event_type", "created_at"],
    )


def downgrade() -> None:
    """Drop scheduling workflow tables."""
    op.drop_table("scheduling_workflow_events")
    op.drop_table("scheduling_workflows")
