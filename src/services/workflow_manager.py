"""Scheduling workflow manager.

Owns the lifecycle of automated intake-form scheduling sessions:
persists every transition through the workflow store, publishes
lifecycle events, coordinates the caller's one-time passcode, and
reconciles operator overrides with the automation's own progress.

Two write paths reach the store. Operator commands and terminal
transitions run as row-locked read-modify-write. Routine automation
writes (step labels, OTP flags) are single conditional updates that
refuse to touch a terminal or operator-held row.
"""

import asyncio
import contextlib
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from src.config.settings import Settings
from src.db.store import WorkflowStore
from src.services.otp_coordinator import OTPCoordinator
from src.services.workflow_events import WorkflowEventPublisher
from src.shared.errors import (
    OTPTimeoutError,
    WorkflowConflictError,
    WorkflowNotFoundError,
    WorkflowOverrideActiveError,
    WorkflowTerminalError,
    WorkflowValidationError,
)
from src.shared.response_models import FallbackResult
from src.shared.serialization import make_json_safe
from src.shared.types import (
    ACTIVE_STATUSES,
    INITIAL_STEP,
    WorkflowEventType,
    WorkflowStatus,
)
from src.shared.validators import mask_phone, validate_phone
from src.shared.workflow_models import (
    OperatorUpdate,
    PatientData,
    WorkflowEvent,
    WorkflowRecord,
)
from src.shared.workflow_state import (
    ensure_transition,
    is_terminal,
    parse_status,
    plan_operator_update,
)

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = (
    "Unable to complete scheduling automatically. "
    "Please provide the patient with this link to schedule manually: {link}. "
    "Our staff will follow up to assist with scheduling."
)


class SchedulingWorkflowManager:
    """Lifecycle orchestrator for scheduling workflows.

    One instance per process; its active-workflow handles, OTP
    registry, and resume signals are instance state, so tests can run
    several isolated managers side by side.
    """

    def __init__(
        self,
        store: WorkflowStore,
        *,
        settings: Settings,
        otp_coordinator: OTPCoordinator | None = None,
        publisher: WorkflowEventPublisher | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self.otp = otp_coordinator or OTPCoordinator(settings.otp_timeout_seconds)
        self.events = publisher or WorkflowEventPublisher()
        self._active: dict[uuid.UUID, WorkflowRecord] = {}
        self._signals: dict[uuid.UUID, asyncio.Event] = {}

    @property
    def settings(self) -> Settings:
        """Settings this manager was built with."""
        return self._settings

    # --- Lifecycle ---

    async def create_workflow(
        self,
        *,
        call_log_id: str,
        agent_id: str | None,
        patient_data: PatientData | dict[str, Any],
        campaign_id: str | None = None,
        contact_id: str | None = None,
    ) -> WorkflowRecord:
        """Persist a new workflow in the initiated state.

        Args:
            call_log_id: Originating call record.
            agent_id: Voice agent running the call.
            patient_data: Details collected verbally from the caller.
            campaign_id: Outreach campaign, if any.
            contact_id: Campaign contact, if any.

        Returns:
            The created workflow.

        Raises:
            WorkflowValidationError: If the patient data is invalid.
            WorkflowConflictError: If the call already has an active workflow.
        """
        patient = _parse_patient(patient_data)
        existing = await self._store.find_active_by_call_log(call_log_id)
        if existing is not None:
            raise WorkflowConflictError(
                f"Call {call_log_id} already has active workflow {existing.id}"
            )
        record = await self._store.create(
            call_log_id=call_log_id,
            campaign_id=campaign_id,
            contact_id=contact_id,
            agent_id=agent_id,
            status=WorkflowStatus.INITIATED,
            current_step=INITIAL_STEP,
            patient_data=patient.model_dump(mode="json"),
            started_at=_now(),
        )
        self._refresh(record)
        logger.info(
            "workflow_created",
            extra={
                "workflow_id": str(record.id),
                "call_log_id": call_log_id,
                "campaign_id": campaign_id,
            },
        )
        await self._emit(
            WorkflowEventType.WORKFLOW_CREATED,
            record.id,
            call_log_id=call_log_id,
            campaign_id=campaign_id,
        )
        return record

    async def update_status(
        self,
        workflow_id: uuid.UUID,
        status: WorkflowStatus | str,
    ) -> WorkflowRecord:
        """Move a workflow along the state machine.

        Args:
            workflow_id: Workflow UUID.
            status: Requested status; must be on the allow-list and an
                allowed edge from the current status.

        Returns:
            The updated (or unchanged, if already there) workflow.

        Raises:
            WorkflowValidationError: Unknown status or disallowed edge.
            WorkflowTerminalError: The workflow already ended.
            WorkflowOverrideActiveError: An operator holds the workflow.
        """
        target = parse_status(status)
        if target == WorkflowStatus.CANCELLED:
            raise WorkflowValidationError("Use cancel_workflow to cancel a workflow")
        now = _now()

        def mutate(current: WorkflowRecord) -> dict[str, Any]:
            if current.is_terminal:
                raise WorkflowTerminalError(
                    f"Workflow is {current.status.value}; status is final"
                )
            if current.status == target:
                return {}
            if current.manual_override_enabled:
                raise WorkflowOverrideActiveError(
                    f"Workflow {workflow_id} is under manual override"
                )
            ensure_transition(current.status, target)
            changes: dict[str, Any] = {"status": target}
            if is_terminal(target):
                changes["completed_at"] = now
            return changes

        result = await self._store.update_with_lock(workflow_id, mutate)
        self._refresh(result.current)
        if not result.changed:
            return result.current
        if result.current.is_terminal:
            self._finish(workflow_id, f"workflow {target.value}")
        logger.info(
            "workflow_status_changed",
            extra={
                "workflow_id": str(workflow_id),
                "previous_status": result.previous.status.value,
                "status": target.value,
            },
        )
        await self._emit(
            WorkflowEventType.STATUS_CHANGED,
            workflow_id,
            status=target,
            previous_status=result.previous.status,
        )
        return result.current

    async def update_step(self, workflow_id: uuid.UUID, step: str) -> WorkflowRecord:
        """Record the advisory form sub-step.

        Args:
            workflow_id: Workflow UUID.
            step: Step label (e.g. "insurance").

        Returns:
            The updated workflow.

        Raises:
            WorkflowTerminalError: The workflow already ended.
            WorkflowOverrideActiveError: An operator holds the workflow.
        """
        handle = self._active.get(workflow_id)
        previous_step = handle.current_step if handle is not None else None
        record = await self._store.update_if(
            workflow_id,
            {"current_step": step},
            statuses=ACTIVE_STATUSES,
            require_no_override=True,
        )
        if record is None:
            await self._raise_rejected(workflow_id, "update step")
        self._refresh(record)
        await self._emit(
            WorkflowEventType.STEP_CHANGED,
            workflow_id,
            step=step,
            previous_step=previous_step or "unknown",
        )
        return record

    # --- OTP ---

    async def request_otp(self, workflow_id: uuid.UUID, phone_number: str) -> str:
        """Ask for the passcode texted to the caller and wait for it.

        Registers the pending wait before anything is written so a
        concurrent second request is rejected without side effects.

        Args:
            workflow_id: Workflow UUID.
            phone_number: Mobile number the intake system texts.

        Returns:
            The passcode relayed through submit_otp.

        Raises:
            OTPRequestConflictError: A request is already pending.
            OTPTimeoutError: No passcode arrived within the window.
            OTPCancelledError: The workflow ended while waiting.
        """
        if not validate_phone(phone_number):
            raise WorkflowValidationError("Invalid phone number for OTP delivery")
        future = self.otp.register(workflow_id)
        now = _now()

        def mutate(current: WorkflowRecord) -> dict[str, Any]:
            if current.is_terminal:
                raise WorkflowTerminalError(
                    f"Workflow is {current.status.value}; cannot request OTP"
                )
            return {
                "otp_requested": True,
                "otp_requested_at": now,
                "otp_attempts": current.otp_attempts + 1,
                "otp_failure_reason": None,
            }

        try:
            result = await self._store.update_with_lock(workflow_id, mutate)
        except BaseException:
            self.otp.discard(workflow_id, future)
            raise
        self._refresh(result.current)
        logger.info(
            "otp_requested",
            extra={
                "workflow_id": str(workflow_id),
                "phone": mask_phone(phone_number),
                "attempt": result.current.otp_attempts,
                "prompt_after_seconds": self._settings.otp_wait_before_prompt_seconds,
            },
        )
        await self._emit(
            WorkflowEventType.OTP_REQUESTED,
            workflow_id,
            phone_number=mask_phone(phone_number),
            attempt=result.current.otp_attempts,
        )
        try:
            return await self.otp.wait(workflow_id, future)
        except OTPTimeoutError:
            record = await self._store.update_if(
                workflow_id, {"otp_failure_reason": "timeout"}, statuses=ACTIVE_STATUSES
            )
            if record is not None:
                self._refresh(record)
            raise

    async def submit_otp(self, workflow_id: uuid.UUID, otp: str) -> bool:
        """Relay the caller's passcode to the pending request.

        Args:
            workflow_id: Workflow UUID.
            otp: Passcode read aloud by the caller.

        Returns:
            True if a pending request received it; False if none was pending.
        """
        if not self.otp.resolve(workflow_id, otp):
            logger.warning(
                "otp_submitted_without_pending_request",
                extra={"workflow_id": str(workflow_id)},
            )
            return False
        record = await self._store.update_if(
            workflow_id,
            {"otp_verified": True, "otp_verified_at": _now()},
            statuses=ACTIVE_STATUSES,
        )
        if record is not None:
            self._refresh(record)
        logger.info("otp_submitted", extra={"workflow_id": str(workflow_id)})
        await self._emit(WorkflowEventType.OTP_VERIFIED, workflow_id, success=True)
        return True

    # --- Progress ---

    async def capture_progress(
        self,
        workflow_id: uuid.UUID,
        step: str,
        screenshot: str | None,
        form_fields: dict[str, Any] | None = None,
    ) -> WorkflowRecord:
        """Append a captured view and merge filled form fields.

        Screenshots are kept as a ring buffer of the most recent
        screenshot_retention entries.

        Args:
            workflow_id: Workflow UUID.
            step: Step label the capture belongs to.
            screenshot: Base64 image, or None to record fields only.
            form_fields: Fields filled during the step.

        Returns:
            The updated workflow.

        Raises:
            WorkflowTerminalError: The workflow already ended.
            WorkflowOverrideActiveError: Form fields sent while an
                operator holds the workflow.
        """
        now = _now()
        retention = max(self._settings.screenshot_retention, 1)
        entry = {"step": step, "timestamp": now.isoformat(), "image": screenshot}

        def mutate(current: WorkflowRecord) -> dict[str, Any]:
            if current.is_terminal:
                raise WorkflowTerminalError(
                    f"Workflow is {current.status.value}; progress is final"
                )
            changes: dict[str, Any] = {}
            if screenshot:
                changes["screenshots"] = [*current.screenshots, entry][-retention:]
            if form_fields:
                if current.manual_override_enabled:
                    raise WorkflowOverrideActiveError(
                        f"Workflow {workflow_id} is under manual override"
                    )
                changes["form_progress"] = {
                    **current.form_progress,
                    **make_json_safe(form_fields),
                }
            return changes

        result = await self._store.update_with_lock(workflow_id, mutate)
        self._refresh(result.current)
        if screenshot:
            await self._emit(
                WorkflowEventType.SCREENSHOT_CAPTURED,
                workflow_id,
                step=step,
                screenshot=screenshot,
            )
        return result.current

    # --- Terminal transitions ---

    async def record_error(
        self,
        workflow_id: uuid.UUID,
        error: str,
        details: dict[str, Any] | None = None,
        *,
        yield_to_operator: bool = False,
    ) -> WorkflowRecord:
        """Fail the workflow with error details.

        A workflow that already ended is left untouched.

        Args:
            workflow_id: Workflow UUID.
            error: Short failure cause.
            details: Context for operators (step, driver error type...).
            yield_to_operator: Leave the workflow alone if an operator
                holds it. The session runner sets this; a hang-up does not.

        Returns:
            The workflow after the call.

        Raises:
            WorkflowOverrideActiveError: yield_to_operator is set and an
                operator holds the workflow.
        """
        now = _now()

        def mutate(current: WorkflowRecord) -> dict[str, Any]:
            if current.is_terminal:
                return {}
            if yield_to_operator and current.manual_override_enabled:
                raise WorkflowOverrideActiveError(
                    f"Workflow {workflow_id} is under manual override"
                )
            return {
                "status": WorkflowStatus.FAILED,
                "error_details": {
                    "error": error,
                    "details": make_json_safe(details or {}),
                    "step": current.current_step,
                    "timestamp": now.isoformat(),
                },
                "manual_override_enabled": False,
                "completed_at": now,
            }

        result = await self._store.update_with_lock(workflow_id, mutate)
        self._refresh(result.current)
        if not result.changed:
            logger.warning(
                "record_error_ignored_terminal",
                extra={"workflow_id": str(workflow_id), "status": result.current.status.value},
            )
            return result.current
        self._finish(workflow_id, "workflow failed")
        logger.error(
            "workflow_error_recorded",
            extra={"workflow_id": str(workflow_id), "error": error},
        )
        await self._emit(
            WorkflowEventType.ERROR_OCCURRED,
            workflow_id,
            error=error,
            details=details or {},
            status=WorkflowStatus.FAILED,
            previous_status=result.previous.status,
        )
        return result.current

    async def trigger_fallback(
        self,
        workflow_id: uuid.UUID,
        reason: str,
        *,
        yield_to_operator: bool = False,
    ) -> FallbackResult:
        """Hand the caller a manual scheduling link and fail the workflow.

        Also valid on a workflow that record_error already failed, as
        long as no fallback was issued yet; completed and cancelled
        workflows are left untouched.

        Args:
            workflow_id: Workflow UUID.
            reason: Why automation could not finish.
            yield_to_operator: Leave a held workflow to its operator.

        Returns:
            FallbackResult carrying the link and caller-facing message.

        Raises:
            WorkflowOverrideActiveError: yield_to_operator is set and an
                operator holds the workflow.
        """
        now = _now()
        link = self._settings.manual_scheduling_url

        def mutate(current: WorkflowRecord) -> dict[str, Any]:
            if current.fallback_link_sent:
                return {}
            if current.is_terminal and current.status != WorkflowStatus.FAILED:
                return {}
            if yield_to_operator and current.manual_override_enabled and not current.is_terminal:
                raise WorkflowOverrideActiveError(
                    f"Workflow {workflow_id} is under manual override"
                )
            changes: dict[str, Any] = {"fallback_link_sent": True}
            if not current.is_terminal:
                changes.update(
                    status=WorkflowStatus.FAILED,
                    manual_override_enabled=False,
                    completed_at=now,
                )
            if current.error_details is None:
                changes["error_details"] = {
                    "error": reason,
                    "details": {},
                    "step": current.current_step,
                    "timestamp": now.isoformat(),
                }
            return changes

        result = await self._store.update_with_lock(workflow_id, mutate)
        self._refresh(result.current)
        record = result.current
        if result.changed:
            self._finish(workflow_id, "fallback triggered")
            logger.warning(
                "fallback_triggered",
                extra={"workflow_id": str(workflow_id), "reason": reason},
            )
            await self._emit(
                WorkflowEventType.FALLBACK_TRIGGERED,
                workflow_id,
                reason=reason,
                link=link,
                previous_status=result.previous.status,
            )
        elif not record.fallback_link_sent:
            logger.info(
                "fallback_skipped",
                extra={"workflow_id": str(workflow_id), "status": record.status.value},
            )
            return FallbackResult(
                workflow_id=str(workflow_id),
                fallback_link_sent=False,
                reason=f"workflow already {record.status.value}",
            )
        return FallbackResult(
            workflow_id=str(workflow_id),
            fallback_link_sent=True,
            link=link,
            message=FALLBACK_MESSAGE.format(link=link),
            reason=reason,
        )

    async def complete_workflow(
        self,
        workflow_id: uuid.UUID,
        success: bool,
        confirmation_number: str | None = None,
        appointment_details: dict[str, Any] | None = None,
    ) -> WorkflowRecord:
        """Record the form submission result and end the workflow.

        A workflow that already ended (e.g. cancelled by an operator a
        moment earlier) is left untouched and returned as-is.

        Args:
            workflow_id: Workflow UUID.
            success: Whether the booking went through.
            confirmation_number: Intake system confirmation number.
            appointment_details: Booked date, time, and location.

        Returns:
            The workflow after the call.

        Raises:
            WorkflowValidationError: Success reported before submitting.
        """
        now = _now()
        target = WorkflowStatus.COMPLETED if success else WorkflowStatus.FAILED

        def mutate(current: WorkflowRecord) -> dict[str, Any]:
            if current.is_terminal:
                return {}
            ensure_transition(current.status, target)
            changes: dict[str, Any] = {
                "status": target,
                "submission_successful": success,
                "confirmation_number": confirmation_number,
                "appointment_details": make_json_safe(appointment_details),
                "manual_override_enabled": False,
                "completed_at": now,
            }
            if not success and current.error_details is None:
                changes["error_details"] = {
                    "error": "Form submission failed",
                    "details": {},
                    "step": current.current_step,
                    "timestamp": now.isoformat(),
                }
            return changes

        result = await self._store.update_with_lock(workflow_id, mutate)
        self._refresh(result.current)
        if not result.changed:
            logger.warning(
                "completion_ignored_terminal",
                extra={"workflow_id": str(workflow_id), "status": result.current.status.value},
            )
            return result.current
        self._finish(workflow_id, "workflow completed")
        logger.info(
            "workflow_completed",
            extra={"workflow_id": str(workflow_id), "success": success},
        )
        await self._emit(
            WorkflowEventType.FORM_SUBMITTED,
            workflow_id,
            success=success,
            confirmation_number=confirmation_number,
            error=None if success else "Form submission failed",
        )
        return result.current

    # --- Operator path ---

    async def enable_manual_override(
        self,
        workflow_id: uuid.UUID,
        operator_id: str,
        notes: str | None = None,
    ) -> WorkflowRecord:
        """Pause automation and hand the workflow to an operator."""
        return await self.apply_operator_update(
            workflow_id,
            operator_id,
            OperatorUpdate(manual_override_enabled=True, operator_notes=notes),
        )

    async def resume_workflow(self, workflow_id: uuid.UUID, operator_id: str) -> WorkflowRecord:
        """Release a manual override so automation may continue."""
        return await self.apply_operator_update(
            workflow_id, operator_id, OperatorUpdate(manual_override_enabled=False)
        )

    async def cancel_workflow(
        self,
        workflow_id: uuid.UUID,
        operator_id: str,
        notes: str | None = None,
    ) -> WorkflowRecord:
        """Cancel a workflow; a no-op if it already ended."""
        return await self.apply_operator_update(
            workflow_id,
            operator_id,
            OperatorUpdate(status=WorkflowStatus.CANCELLED, operator_notes=notes),
        )

    async def apply_operator_update(
        self,
        workflow_id: uuid.UUID,
        operator_id: str,
        update: OperatorUpdate,
    ) -> WorkflowRecord:
        """Apply an operator action under the row lock.

        The change is computed from the locked record, so it cannot be
        based on a stale read. Invalid actions raise before anything
        is written.

        Args:
            workflow_id: Workflow UUID.
            operator_id: Operator performing the action.
            update: Requested changes.

        Returns:
            The workflow after the action.

        Raises:
            WorkflowValidationError: The action is invalid for the record.
            WorkflowNotFoundError: No such workflow.
        """
        if not operator_id:
            raise WorkflowValidationError("operator_id is required")
        now = _now()
        result = await self._store.update_with_lock(
            workflow_id,
            lambda current: plan_operator_update(
                current, update, operator_id=operator_id, now=now
            ),
        )
        record = result.current
        self._refresh(record)
        if not result.changed:
            logger.info(
                "operator_action_noop",
                extra={
                    "workflow_id": str(workflow_id),
                    "operator_id": operator_id,
                    "status": record.status.value,
                },
            )
            return record

        previous = result.previous
        if record.status != previous.status:
            if record.is_terminal:
                self._finish(workflow_id, f"workflow {record.status.value} by operator")
            logger.info(
                "operator_status_change",
                extra={
                    "workflow_id": str(workflow_id),
                    "operator_id": operator_id,
                    "previous_status": previous.status.value,
                    "status": record.status.value,
                },
            )
            await self._emit(
                WorkflowEventType.STATUS_CHANGED,
                workflow_id,
                status=record.status,
                previous_status=previous.status,
                operator_id=operator_id,
            )
        if (
            not record.is_terminal
            and record.manual_override_enabled != previous.manual_override_enabled
        ):
            self._signal(workflow_id)
            logger.info(
                "operator_override_changed",
                extra={
                    "workflow_id": str(workflow_id),
                    "operator_id": operator_id,
                    "enabled": record.manual_override_enabled,
                },
            )
            await self._emit(
                WorkflowEventType.MANUAL_OVERRIDE,
                workflow_id,
                operator_id=operator_id,
                enabled=record.manual_override_enabled,
                notes=record.operator_notes,
            )
        return record

    async def checkpoint(self, workflow_id: uuid.UUID) -> WorkflowRecord:
        """Cooperative check the automation runs before each step.

        While an operator holds the workflow this waits for a resume,
        waking on operator signals and re-reading the store every
        pause_poll_interval_seconds.

        Args:
            workflow_id: Workflow UUID.

        Returns:
            The current workflow, owned by automation again.

        Raises:
            WorkflowTerminalError: The workflow ended (e.g. cancelled).
            WorkflowOverrideActiveError: The operator kept control past
                operator_pause_timeout_seconds.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.operator_pause_timeout_seconds
        paused = False
        while True:
            signal = self._signals.setdefault(workflow_id, asyncio.Event())
            signal.clear()
            record = await self._require(workflow_id)
            if record.is_terminal:
                self._signals.pop(workflow_id, None)
                raise WorkflowTerminalError(f"Workflow {record.status.value}")
            if not record.manual_override_enabled:
                if paused:
                    logger.info("workflow_resumed", extra={"workflow_id": str(workflow_id)})
                return record
            remaining = deadline - loop.time()
            if remaining <= 0:
                self._signals.pop(workflow_id, None)
                raise WorkflowOverrideActiveError(
                    f"Workflow {workflow_id} is under manual override by {record.operator_id}"
                )
            if not paused:
                paused = True
                logger.warning(
                    "workflow_paused_waiting_for_operator",
                    extra={"workflow_id": str(workflow_id), "operator_id": record.operator_id},
                )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    signal.wait(),
                    timeout=min(self._settings.pause_poll_interval_seconds, remaining),
                )

    # --- Reads ---

    async def get_workflow(self, workflow_id: uuid.UUID) -> WorkflowRecord | None:
        """Read a workflow from the store."""
        return await self._store.get(workflow_id)

    def get_active_workflow(self, workflow_id: uuid.UUID) -> WorkflowRecord | None:
        """Return the in-memory handle of a non-terminal workflow."""
        return self._active.get(workflow_id)

    def get_all_active_handles(self) -> list[WorkflowRecord]:
        """Return in-memory handles of workflows run by this process."""
        return list(self._active.values())

    async def list_active_workflows(self) -> list[WorkflowRecord]:
        """List non-terminal workflows from the store."""
        return await self._store.list_active()

    async def list_workflows(
        self,
        *,
        status: WorkflowStatus | str | None = None,
        campaign_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowRecord]:
        """List workflows filtered by status and campaign.

        Raises:
            WorkflowValidationError: Unknown status filter.
        """
        parsed = parse_status(status) if status else None
        return await self._store.list_workflows(
            status=parsed, campaign_id=campaign_id, limit=limit
        )

    async def list_workflow_events(self, workflow_id: uuid.UUID) -> list[dict[str, Any]]:
        """Return the persisted audit trail of a workflow."""
        return await self._store.list_events(workflow_id)

    async def shutdown(self) -> None:
        """Tear down pending OTP waits and wake paused runners."""
        self.otp.cancel_all("workflow manager shutting down")
        for signal in self._signals.values():
            signal.set()
        self._signals.clear()

    # --- Internals ---

    async def _require(self, workflow_id: uuid.UUID) -> WorkflowRecord:
        record = await self._store.get(workflow_id)
        if record is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return record

    async def _raise_rejected(self, workflow_id: uuid.UUID, action: str) -> None:
        """Explain why a conditional automation write matched no row."""
        record = await self._require(workflow_id)
        if record.is_terminal:
            raise WorkflowTerminalError(
                f"Cannot {action}: workflow is {record.status.value}"
            )
        if record.manual_override_enabled:
            raise WorkflowOverrideActiveError(
                f"Cannot {action}: workflow is under manual override"
            )
        raise WorkflowValidationError(f"Cannot {action}: workflow changed concurrently")

    def _refresh(self, record: WorkflowRecord) -> None:
        if record.is_terminal:
            self._active.pop(record.id, None)
        else:
            self._active[record.id] = record

    def _finish(self, workflow_id: uuid.UUID, reason: str) -> None:
        """Tear down per-workflow runtime state once terminal."""
        self._active.pop(workflow_id, None)
        self.otp.cancel(workflow_id, reason)
        signal = self._signals.pop(workflow_id, None)
        if signal is not None:
            signal.set()

    def _signal(self, workflow_id: uuid.UUID) -> None:
        signal = self._signals.get(workflow_id)
        if signal is not None:
            signal.set()

    async def _emit(
        self,
        event_type: WorkflowEventType,
        workflow_id: uuid.UUID,
        **payload: Any,
    ) -> None:
        event = WorkflowEvent(
            event_type=event_type,
            workflow_id=workflow_id,
            payload=make_json_safe(payload),
        )
        await self.events.publish(event)


def _now() -> datetime:
    return datetime.now(UTC)


def _parse_patient(patient_data: PatientData | dict[str, Any]) -> PatientData:
    if isinstance(patient_data, PatientData):
        return patient_data
    try:
        return PatientData.model_validate(patient_data)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise WorkflowValidationError(
            f"Invalid patient data: {', '.join(fields)}"
        ) from exc
