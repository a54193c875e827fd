"""Session runner: drives one intake form session step by step.

Each step is a cooperative checkpoint, a step label write, the form
interactions, and a captured view reported as progress. The runner
owns its driver exclusively and disposes it however the run ends.
"""

import logging
import uuid

from src.config.settings import Settings
from src.services.automation_driver import AutomationDriver, ViewCapture, normalize_key
from src.services.intake_form import (
    CONFIRMATION_STEP,
    OTP_STEP,
    FieldAction,
    FormStep,
    build_form_plan,
    extract_confirmation,
    is_invalid_otp,
    otp_actions,
)
from src.services.workflow_manager import SchedulingWorkflowManager
from src.shared.errors import (
    AutomationError,
    OTPAttemptsExhaustedError,
    OTPCancelledError,
    OTPTimeoutError,
    PersistenceError,
    WorkflowNotFoundError,
    WorkflowOverrideActiveError,
    WorkflowTerminalError,
)
from src.shared.response_models import SessionOutcome
from src.shared.types import PatientType, WorkflowStatus
from src.shared.workflow_models import PatientData

logger = logging.getLogger(__name__)

OTP_EXHAUSTED_REASON = "otp retries exhausted"


class SchedulingSessionRunner:
    """Runs the intake form sequence for one workflow on one driver."""

    def __init__(
        self,
        manager: SchedulingWorkflowManager,
        driver: AutomationDriver,
        settings: Settings | None = None,
    ) -> None:
        self._manager = manager
        self._driver = driver
        self._settings = settings or manager.settings
        self._step = "startup"

    async def run(
        self,
        workflow_id: uuid.UUID,
        patient: PatientData,
        patient_type: PatientType = PatientType.NEW,
        preferred_location: str | None = None,
    ) -> SessionOutcome:
        """Fill and submit the intake form, reporting to the manager.

        Automation failures end in record_error plus a fallback link;
        operator cancellation and override stop the run without further
        writes.

        Args:
            workflow_id: Workflow created for this call.
            patient: Details collected from the caller.
            patient_type: New or returning patient.
            preferred_location: Clinic the caller asked for.

        Returns:
            SessionOutcome describing how the run ended.
        """
        try:
            return await self._run_steps(workflow_id, patient, patient_type, preferred_location)
        except (WorkflowTerminalError, OTPCancelledError) as exc:
            logger.info(
                "session_halted",
                extra={"workflow_id": str(workflow_id), "step": self._step, "reason": str(exc)},
            )
            record = await self._manager.get_workflow(workflow_id)
            return SessionOutcome(
                workflow_id=str(workflow_id),
                success=False,
                status=record.status if record else None,
                error=str(exc),
                halted=True,
            )
        except WorkflowOverrideActiveError as exc:
            return await self._hand_to_operator(workflow_id, exc)
        except OTPAttemptsExhaustedError as exc:
            try:
                fallback = await self._manager.trigger_fallback(
                    workflow_id, OTP_EXHAUSTED_REASON, yield_to_operator=True
                )
            except WorkflowOverrideActiveError as held:
                return await self._hand_to_operator(workflow_id, held)
            return SessionOutcome(
                workflow_id=str(workflow_id),
                success=False,
                status=WorkflowStatus.FAILED,
                error=str(exc),
                fallback=fallback,
            )
        except (PersistenceError, WorkflowNotFoundError):
            raise
        except Exception as exc:
            return await self._fail(workflow_id, exc)
        finally:
            await self._dispose()

    async def _run_steps(
        self,
        workflow_id: uuid.UUID,
        patient: PatientData,
        patient_type: PatientType,
        preferred_location: str | None,
    ) -> SessionOutcome:
        manager = self._manager
        plan = build_form_plan(
            patient,
            patient_type=patient_type,
            preferred_location=preferred_location,
            insurance_fallback=self._settings.insurance_fallback,
        )

        await manager.checkpoint(workflow_id)
        await manager.update_status(workflow_id, WorkflowStatus.FORM_FILLING)
        await self._driver.navigate(self._settings.intake_form_url)
        await self._report(workflow_id, "landing_page", await self._driver.capture_view())

        for step in plan:
            await self._run_step(workflow_id, step)

        self._step = OTP_STEP
        await manager.checkpoint(workflow_id)
        await manager.update_step(workflow_id, OTP_STEP)
        await manager.update_status(workflow_id, WorkflowStatus.OTP_REQUESTED)
        otp = await self._await_otp(workflow_id, patient.mobile_phone)

        await manager.checkpoint(workflow_id)
        await self._perform(otp_actions(otp))
        view = await self._driver.capture_view()
        if is_invalid_otp(view.text):
            raise AutomationError("Invalid OTP code")
        await manager.update_status(workflow_id, WorkflowStatus.OTP_VERIFIED)
        await self._report(workflow_id, "otp_verified", view)

        self._step = CONFIRMATION_STEP
        await manager.checkpoint(workflow_id)
        await manager.update_status(workflow_id, WorkflowStatus.SUBMITTING)
        await manager.update_step(workflow_id, CONFIRMATION_STEP)
        view = await self._driver.capture_view()
        confirmation = extract_confirmation(view.text, preferred_location)
        await self._report(workflow_id, CONFIRMATION_STEP, view)

        record = await manager.complete_workflow(
            workflow_id,
            True,
            confirmation_number=confirmation.confirmation_number,
            appointment_details=confirmation.appointment_details,
        )
        success = record.status == WorkflowStatus.COMPLETED
        logger.info(
            "session_finished",
            extra={"workflow_id": str(workflow_id), "status": record.status.value},
        )
        return SessionOutcome(
            workflow_id=str(workflow_id),
            success=success,
            status=record.status,
            confirmation_number=record.confirmation_number,
            appointment_details=record.appointment_details,
            halted=not success,
        )

    async def _run_step(self, workflow_id: uuid.UUID, step: FormStep) -> None:
        self._step = step.name
        await self._manager.checkpoint(workflow_id)
        await self._manager.update_step(workflow_id, step.name)
        if step.expects_any:
            view = await self._driver.capture_view()
            if not any(marker in view.text for marker in step.expects_any):
                await self._perform(step.when_missing)
        await self._perform(step.actions)
        await self._report(
            workflow_id,
            step.name,
            await self._driver.capture_view(),
            step.filled_fields(),
        )

    async def _await_otp(self, workflow_id: uuid.UUID, phone_number: str) -> str:
        """Request the passcode, retrying timeouts up to otp_max_attempts."""
        attempts = max(self._settings.otp_max_attempts, 1)
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                await self._manager.checkpoint(workflow_id)
            try:
                return await self._manager.request_otp(workflow_id, phone_number)
            except OTPTimeoutError:
                logger.warning(
                    "otp_attempt_timed_out",
                    extra={"workflow_id": str(workflow_id), "attempt": attempt, "max_attempts": attempts},
                )
        raise OTPAttemptsExhaustedError(f"No OTP received after {attempts} attempts")

    async def _perform(self, actions: list[FieldAction] | tuple[FieldAction, ...]) -> None:
        for action in actions:
            if action.kind == "click":
                await self._driver.click(action.target)
            elif action.kind == "fill":
                await self._driver.click(action.target)
                await self._driver.type_text(action.value or "")
            elif action.kind == "key":
                await self._driver.press_key(normalize_key(action.target))
            else:
                raise AutomationError(f"Unknown form action: {action.kind}")

    async def _report(
        self,
        workflow_id: uuid.UUID,
        step: str,
        view: ViewCapture,
        form_fields: dict | None = None,
    ) -> None:
        await self._manager.capture_progress(
            workflow_id, step, view.image_b64 or None, form_fields
        )

    async def _fail(self, workflow_id: uuid.UUID, exc: Exception) -> SessionOutcome:
        """Route an automation failure to record_error and the fallback link."""
        error = str(exc) or type(exc).__name__
        logger.error(
            "session_failed",
            extra={"workflow_id": str(workflow_id), "step": self._step, "error": error},
            exc_info=True,
        )
        await self._capture_error_state(workflow_id)
        try:
            record = await self._manager.record_error(
                workflow_id,
                error,
                {"step": self._step, "error_type": type(exc).__name__},
                yield_to_operator=True,
            )
        except WorkflowOverrideActiveError as held:
            return await self._hand_to_operator(workflow_id, held)
        fallback = await self._manager.trigger_fallback(workflow_id, error)
        return SessionOutcome(
            workflow_id=str(workflow_id),
            success=False,
            status=record.status,
            error=error,
            fallback=fallback,
        )

    async def _hand_to_operator(
        self, workflow_id: uuid.UUID, exc: WorkflowOverrideActiveError
    ) -> SessionOutcome:
        """Stop without writing; the operator holding the workflow owns it."""
        logger.warning(
            "session_handed_to_operator",
            extra={"workflow_id": str(workflow_id), "step": self._step},
        )
        record = await self._manager.get_workflow(workflow_id)
        return SessionOutcome(
            workflow_id=str(workflow_id),
            success=False,
            status=record.status if record else None,
            error=str(exc),
            handed_to_operator=True,
        )

    async def _capture_error_state(self, workflow_id: uuid.UUID) -> None:
        try:
            view = await self._driver.capture_view()
            if view.image_b64:
                await self._manager.capture_progress(workflow_id, "error_state", view.image_b64)
        except Exception:
            logger.warning(
                "error_state_capture_failed",
                extra={"workflow_id": str(workflow_id)},
                exc_info=True,
            )

    async def _dispose(self) -> None:
        try:
            await self._driver.dispose()
        except Exception:
            logger.warning("driver_dispose_failed", exc_info=True)
