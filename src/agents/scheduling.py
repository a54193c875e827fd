"""Scheduling helpers for the call-handling agent.

The voice agent starts an automated intake session once it has the
caller's details, relays the texted passcode the caller reads aloud,
and checks progress to decide what to say next. Each session runs as
its own asyncio task owning one automation driver.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from src.services.automation_driver import DriverFactory
from src.services.session_runner import SchedulingSessionRunner
from src.services.workflow_manager import SchedulingWorkflowManager
from src.shared.errors import WorkflowConflictError, WorkflowValidationError
from src.shared.response_models import (
    OTPSubmissionResult,
    SchedulingStartResult,
    SessionOutcome,
    SessionStatusResult,
)
from src.shared.types import PatientType
from src.shared.validators import normalize_otp

logger = logging.getLogger(__name__)

CALL_ENDED_ERROR = "call ended"
FINISHED_SESSION_RETENTION = 256


@dataclass
class _Session:
    workflow_id: uuid.UUID
    task: asyncio.Task[SessionOutcome]


class SchedulingSessions:
    """Per-call registry of scheduling sessions.

    Running sessions move to a bounded history when their task finishes
    so the agent can still read the outcome of a recent call.
    """

    def __init__(
        self,
        manager: SchedulingWorkflowManager,
        driver_factory: DriverFactory,
    ) -> None:
        self._manager = manager
        self._driver_factory = driver_factory
        self._sessions: dict[str, _Session] = {}
        self._finished: OrderedDict[str, _Session] = OrderedDict()

    async def start(
        self,
        *,
        call_log_id: str,
        agent_id: str | None,
        patient_data: dict[str, Any],
        campaign_id: str | None = None,
        contact_id: str | None = None,
        patient_type: str = PatientType.NEW.value,
        preferred_location: str | None = None,
    ) -> SchedulingStartResult:
        """Create a workflow for the call and start filling the form.

        Args:
            call_log_id: Current call record.
            agent_id: Voice agent handling the call.
            patient_data: Details collected from the caller.
            campaign_id: Outreach campaign, if any.
            contact_id: Campaign contact, if any.
            patient_type: "new" or "returning".
            preferred_location: Clinic the caller asked for.

        Returns:
            SchedulingStartResult telling the agent when to ask for the code.
        """
        try:
            kind = PatientType(patient_type)
        except ValueError:
            return SchedulingStartResult(started=False, error=f"unknown patient type: {patient_type}")
        try:
            record = await self._manager.create_workflow(
                call_log_id=call_log_id,
                agent_id=agent_id,
                patient_data=patient_data,
                campaign_id=campaign_id,
                contact_id=contact_id,
            )
        except WorkflowConflictError as exc:
            return SchedulingStartResult(started=False, error=str(exc))
        except WorkflowValidationError as exc:
            return SchedulingStartResult(
                started=False,
                error=str(exc),
                fallback_link=self._manager.settings.manual_scheduling_url or None,
            )

        runner = SchedulingSessionRunner(self._manager, self._driver_factory())
        patient = record.patient
        task = asyncio.create_task(
            runner.run(record.id, patient, kind, preferred_location),
            name=f"scheduling-{record.id}",
        )
        session = _Session(workflow_id=record.id, task=task)
        self._finished.pop(call_log_id, None)
        self._sessions[call_log_id] = session
        task.add_done_callback(self._log_task_failure)
        task.add_done_callback(lambda _: self._retire(call_log_id, session))
        wait = self._manager.settings.otp_wait_before_prompt_seconds
        logger.info(
            "scheduling_session_started",
            extra={"call_log_id": call_log_id, "workflow_id": str(record.id)},
        )
        return SchedulingStartResult(
            started=True,
            workflow_id=str(record.id),
            otp_wait_seconds=wait,
            message=(
                "I'm booking the appointment now. In a moment you'll get a text "
                "with a 6-digit code; please read it to me when it arrives."
            ),
        )

    async def submit_otp(self, call_log_id: str, spoken: str) -> OTPSubmissionResult:
        """Relay the passcode the caller read aloud.

        Args:
            call_log_id: Current call record.
            spoken: Transcribed speech containing the digits.

        Returns:
            OTPSubmissionResult; accepted only if a request was pending.
        """
        session = self._lookup(call_log_id)
        if session is None:
            return OTPSubmissionResult(accepted=False, error="no_scheduling_session")
        otp = normalize_otp(spoken)
        if otp is None:
            return OTPSubmissionResult(
                accepted=False,
                workflow_id=str(session.workflow_id),
                error="invalid_otp_format",
                message="I didn't catch all six digits. Could you read the code again?",
            )
        accepted = await self._manager.submit_otp(session.workflow_id, otp)
        if not accepted:
            return OTPSubmissionResult(
                accepted=False,
                workflow_id=str(session.workflow_id),
                error="otp_not_pending",
            )
        return OTPSubmissionResult(
            accepted=True,
            workflow_id=str(session.workflow_id),
            message="Thanks, verifying the code now.",
        )

    async def status(self, call_log_id: str) -> SessionStatusResult:
        """Report the call's session for conversational branching."""
        session = self._lookup(call_log_id)
        if session is None:
            return SessionStatusResult(found=False)
        record = await self._manager.get_workflow(session.workflow_id)
        if record is None:
            return SessionStatusResult(found=False, workflow_id=str(session.workflow_id))
        return SessionStatusResult(
            found=True,
            workflow_id=str(record.id),
            status=record.status,
            current_step=record.current_step,
            otp_pending=self._manager.otp.has_pending(record.id),
            manual_override_enabled=record.manual_override_enabled,
            confirmation_number=record.confirmation_number,
            fallback_link_sent=record.fallback_link_sent,
        )

    async def wait_for_outcome(
        self,
        call_log_id: str,
        timeout: float | None = None,
    ) -> SessionOutcome | None:
        """Wait for the call's session to finish.

        Args:
            call_log_id: Current call record.
            timeout: Seconds to wait; None waits indefinitely.

        Returns:
            The session outcome, or None if no session or still running.
        """
        session = self._lookup(call_log_id)
        if session is None:
            return None
        done, _ = await asyncio.wait({session.task}, timeout=timeout)
        if not done:
            return None
        return session.task.result()

    async def end_call(self, call_log_id: str) -> None:
        """Stop the call's session when the caller hangs up.

        Fails the workflow, which tears down any pending passcode wait;
        the runner stops at its next write or checkpoint.
        """
        self._finished.pop(call_log_id, None)
        session = self._sessions.pop(call_log_id, None)
        if session is None or session.task.done():
            return
        await self._manager.record_error(
            session.workflow_id, CALL_ENDED_ERROR, {"call_log_id": call_log_id}
        )
        logger.info(
            "scheduling_session_call_ended",
            extra={"call_log_id": call_log_id, "workflow_id": str(session.workflow_id)},
        )

    async def shutdown(self) -> None:
        """Cancel every running session task."""
        tasks = [s.task for s in self._sessions.values() if not s.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._sessions.clear()
        self._finished.clear()

    @staticmethod
    def _log_task_failure(task: asyncio.Task[SessionOutcome]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "scheduling_session_crashed",
                extra={"task": task.get_name(), "error": str(exc)},
            )

    def _lookup(self, call_log_id: str) -> _Session | None:
        return self._sessions.get(call_log_id) or self._finished.get(call_log_id)

    def _retire(self, call_log_id: str, session: _Session) -> None:
        if self._sessions.get(call_log_id) is not session:
            return
        del self._sessions[call_log_id]
        self._finished[call_log_id] = session
        while len(self._finished) > FINISHED_SESSION_RETENTION:
            self._finished.popitem(last=False)
