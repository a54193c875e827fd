"""Pydantic models shared by the workflow store, manager, and API.

WorkflowRecord is the immutable snapshot that crosses component
boundaries; the ORM row never leaves the store.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.shared.types import (
    TERMINAL_STATUSES,
    Gender,
    WorkflowEventType,
    WorkflowStatus,
)
from src.shared.validators import validate_phone, validate_state_code, validate_zip_code


class PatientData(BaseModel):
    """Patient details collected verbally during the call."""

    model_config = ConfigDict(frozen=True)

    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    middle_name: str | None = None
    date_of_birth: str = Field(min_length=1)
    gender: Gender
    address: str
    city: str
    state: str
    zip: str
    home_phone: str
    mobile_phone: str
    email: str | None = None
    insurance_company: str | None = None
    policy_id: str | None = None
    preferred_date: str | None = None
    preferred_time: str | None = None

    @field_validator("home_phone", "mobile_phone")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        if not validate_phone(value):
            raise ValueError(f"Invalid phone number: {value!r}")
        return value

    @field_validator("zip")
    @classmethod
    def _check_zip(cls, value: str) -> str:
        if not validate_zip_code(value):
            raise ValueError(f"Invalid ZIP code: {value!r}")
        return value

    @field_validator("state")
    @classmethod
    def _check_state(cls, value: str) -> str:
        value = value.strip().upper()
        if not validate_state_code(value):
            raise ValueError(f"Invalid state code: {value!r}")
        return value


class WorkflowRecord(BaseModel):
    """Snapshot of one scheduling workflow row.

    Attributes:
        id: Workflow UUID, immutable.
        call_log_id: Originating call record.
        status: Lifecycle stage, the single source of truth.
        current_step: Advisory sub-step label within form filling.
        screenshots: Most recent captured views, oldest first.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: uuid.UUID
    call_log_id: str
    campaign_id: str | None = None
    contact_id: str | None = None
    agent_id: str | None = None
    status: WorkflowStatus = WorkflowStatus.INITIATED
    current_step: str | None = None
    patient_data: dict[str, Any] = Field(default_factory=dict)
    form_progress: dict[str, Any] = Field(default_factory=dict)
    screenshots: list[dict[str, Any]] = Field(default_factory=list)
    otp_requested: bool = False
    otp_requested_at: datetime | None = None
    otp_attempts: int = 0
    otp_verified: bool = False
    otp_verified_at: datetime | None = None
    otp_failure_reason: str | None = None
    confirmation_number: str | None = None
    appointment_details: dict[str, Any] | None = None
    submission_successful: bool = False
    error_details: dict[str, Any] | None = None
    fallback_link_sent: bool = False
    manual_override_enabled: bool = False
    operator_id: str | None = None
    operator_notes: str | None = None
    operator_intervention_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the workflow reached completed, failed, or cancelled."""
        return self.status in TERMINAL_STATUSES

    @property
    def patient(self) -> PatientData:
        """Patient details parsed from the stored JSON."""
        return PatientData.model_validate(self.patient_data)

    def summary(self) -> dict[str, Any]:
        """Serialize for list views, without screenshot payloads.

        Returns:
            JSON-safe dict with a screenshot count instead of images.
        """
        data = self.model_dump(mode="json", exclude={"screenshots"})
        data["screenshot_count"] = len(self.screenshots)
        return data


class LockedUpdate(BaseModel):
    """Outcome of a row-locked read-modify-write.

    Attributes:
        previous: Record as read under the lock.
        current: Record after the write (same as previous when unchanged).
        changed: Whether any field was written.
    """

    model_config = ConfigDict(frozen=True)

    previous: WorkflowRecord
    current: WorkflowRecord
    changed: bool


class WorkflowEvent(BaseModel):
    """Lifecycle event published to monitoring and audit listeners."""

    model_config = ConfigDict(frozen=True)

    event_type: WorkflowEventType
    workflow_id: uuid.UUID
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_message(self) -> dict[str, Any]:
        """Build the envelope broadcast to dashboard clients.

        Returns:
            Dict with a type tag and JSON-safe event data.
        """
        return {"type": "workflow_event", "data": self.model_dump(mode="json")}


class OperatorUpdate(BaseModel):
    """Fields an operator may change on a workflow.

    Only status, manual_override_enabled, and operator_notes are
    accepted; unknown fields are rejected.
    """

    model_config = ConfigDict(extra="forbid")

    status: WorkflowStatus | None = None
    manual_override_enabled: bool | None = None
    operator_notes: str | None = None
