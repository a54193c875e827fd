"""Shared types, enums, and constants used across the application."""

import enum


class WorkflowStatus(str, enum.Enum):
    """Scheduling workflow lifecycle state."""

    INITIATED = "initiated"
    COLLECTING_DATA = "collecting_data"
    FORM_FILLING = "form_filling"
    OTP_REQUESTED = "otp_requested"
    OTP_VERIFIED = "otp_verified"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkflowEventType(str, enum.Enum):
    """Lifecycle events published by the workflow manager."""

    WORKFLOW_CREATED = "workflow_created"
    STATUS_CHANGED = "status_changed"
    STEP_CHANGED = "step_changed"
    OTP_REQUESTED = "otp_requested"
    OTP_VERIFIED = "otp_verified"
    SCREENSHOT_CAPTURED = "screenshot_captured"
    ERROR_OCCURRED = "error_occurred"
    FALLBACK_TRIGGERED = "fallback_triggered"
    MANUAL_OVERRIDE = "manual_override"
    FORM_SUBMITTED = "form_submitted"


class PatientType(str, enum.Enum):
    """Patient type choice on the intake form."""

    NEW = "new"
    RETURNING = "returning"


class Gender(str, enum.Enum):
    """Gender options accepted by the intake form."""

    MALE = "male"
    FEMALE = "female"


class StoreBackend(str, enum.Enum):
    """Workflow store implementations."""

    POSTGRES = "postgres"
    MEMORY = "memory"


TERMINAL_STATUSES = frozenset({
    WorkflowStatus.COMPLETED,
    WorkflowStatus.FAILED,
    WorkflowStatus.CANCELLED,
})

ACTIVE_STATUSES = frozenset(s for s in WorkflowStatus if s not in TERMINAL_STATUSES)

INITIAL_STEP = "patient_type"
