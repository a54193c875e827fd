"""Workflow state machine and operator-action validation.

Every function here is pure: it inspects a locked snapshot and either
returns the field changes to write or raises WorkflowValidationError,
so callers can run it inside a row-locked transaction.
"""

from datetime import datetime
from typing import Any

from src.shared.errors import WorkflowTerminalError, WorkflowValidationError
from src.shared.types import TERMINAL_STATUSES, WorkflowStatus
from src.shared.validators import validate_workflow_status
from src.shared.workflow_models import OperatorUpdate, WorkflowRecord

_EXITS = (WorkflowStatus.FAILED, WorkflowStatus.CANCELLED)

ALLOWED_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.INITIATED: frozenset({
        WorkflowStatus.COLLECTING_DATA, WorkflowStatus.FORM_FILLING, *_EXITS,
    }),
    WorkflowStatus.COLLECTING_DATA: frozenset({
        WorkflowStatus.FORM_FILLING, WorkflowStatus.OTP_REQUESTED, *_EXITS,
    }),
    WorkflowStatus.FORM_FILLING: frozenset({WorkflowStatus.OTP_REQUESTED, *_EXITS}),
    WorkflowStatus.OTP_REQUESTED: frozenset({WorkflowStatus.OTP_VERIFIED, *_EXITS}),
    WorkflowStatus.OTP_VERIFIED: frozenset({WorkflowStatus.SUBMITTING, *_EXITS}),
    WorkflowStatus.SUBMITTING: frozenset({WorkflowStatus.COMPLETED, *_EXITS}),
    WorkflowStatus.COMPLETED: frozenset(),
    WorkflowStatus.FAILED: frozenset(),
    WorkflowStatus.CANCELLED: frozenset(),
}


def is_terminal(status: WorkflowStatus | str | None) -> bool:
    """Check whether a status ends the workflow.

    Args:
        status: Status to check.

    Returns:
        True for completed, failed, and cancelled.
    """
    if status is None:
        return False
    return WorkflowStatus(status) in TERMINAL_STATUSES


def can_transition(
    current: WorkflowStatus | str | None,
    target: WorkflowStatus | str | None,
) -> bool:
    """Check whether the state machine has an edge from current to target.

    Args:
        current: Status the workflow is in.
        target: Requested next status.

    Returns:
        True if the edge exists.
    """
    if current is None or target is None:
        return False
    return WorkflowStatus(target) in ALLOWED_TRANSITIONS[WorkflowStatus(current)]


def parse_status(status: WorkflowStatus | str) -> WorkflowStatus:
    """Validate a status value against the allow-list.

    Args:
        status: Raw status value.

    Returns:
        The matching WorkflowStatus.

    Raises:
        WorkflowValidationError: If the value is not a known status.
    """
    if not validate_workflow_status(status):
        allowed = ", ".join(s.value for s in WorkflowStatus)
        raise WorkflowValidationError(
            f"Invalid workflow status: {status}. Allowed: {allowed}"
        )
    return WorkflowStatus(status)


def ensure_transition(current: WorkflowStatus, target: WorkflowStatus) -> None:
    """Raise unless current -> target is an allowed edge.

    Raises:
        WorkflowTerminalError: If current is terminal.
        WorkflowValidationError: If the edge does not exist.
    """
    if is_terminal(current):
        raise WorkflowTerminalError(
            f"Workflow is {current.value}; no further transitions allowed"
        )
    if not can_transition(current, target):
        allowed = ", ".join(sorted(s.value for s in ALLOWED_TRANSITIONS[current]))
        raise WorkflowValidationError(
            f"Invalid transition: {current.value} -> {target.value}. Allowed: {allowed}"
        )


def ensure_can_pause(record: WorkflowRecord) -> None:
    """Raise unless the operator may take manual control."""
    if record.is_terminal:
        raise WorkflowTerminalError(
            f"Cannot pause terminal workflow ({record.status.value})"
        )
    if record.manual_override_enabled:
        raise WorkflowValidationError("Workflow is already paused")


def ensure_can_resume(record: WorkflowRecord) -> None:
    """Raise unless the workflow is currently paused by an operator."""
    if record.is_terminal:
        raise WorkflowTerminalError(
            f"Cannot resume terminal workflow ({record.status.value})"
        )
    if not record.manual_override_enabled:
        raise WorkflowValidationError("Workflow is not paused")


def plan_operator_update(
    record: WorkflowRecord,
    update: OperatorUpdate,
    *,
    operator_id: str,
    now: datetime,
) -> dict[str, Any]:
    """Compute the field changes for an operator action.

    A cancel that reaches an already-terminal record is a no-op and
    returns an empty dict, so an operator losing the race to a
    concurrent completion gets the final record rather than an error.
    A non-terminal status change and a pause or resume in the same
    update are both applied; a terminal status releases the override.

    Args:
        record: Snapshot read under the row lock.
        update: Requested operator changes.
        operator_id: Operator performing the action.
        now: Timestamp for the intervention.

    Returns:
        Column changes to write; empty when nothing should change.

    Raises:
        WorkflowValidationError: If the action is not valid for the record.
    """
    if update.status is None and update.manual_override_enabled is None and (
        update.operator_notes is None
    ):
        raise WorkflowValidationError("No operator changes requested")

    if record.is_terminal:
        if update.status == WorkflowStatus.CANCELLED:
            return {}
        raise WorkflowTerminalError(
            f"Workflow is {record.status.value}; operator changes are not allowed"
        )

    changes: dict[str, Any] = {
        "operator_id": operator_id,
        "operator_intervention_at": now,
    }
    if update.operator_notes is not None:
        changes["operator_notes"] = update.operator_notes

    if update.status is not None and update.status != record.status:
        ensure_transition(record.status, update.status)
        changes["status"] = update.status
        if is_terminal(update.status):
            changes["manual_override_enabled"] = False
            changes["completed_at"] = now
            return changes

    if update.manual_override_enabled is True:
        ensure_can_pause(record)
        changes["manual_override_enabled"] = True
    elif update.manual_override_enabled is False:
        ensure_can_resume(record)
        changes["manual_override_enabled"] = False
        changes["operator_notes"] = update.operator_notes
    return changes
