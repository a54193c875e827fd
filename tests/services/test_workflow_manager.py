"""Tests for the scheduling workflow manager."""

import asyncio
import logging
import uuid

import pytest

from src.services.workflow_manager import SchedulingWorkflowManager
from src.shared.errors import (
    OTPCancelledError,
    OTPRequestConflictError,
    OTPTimeoutError,
    WorkflowConflictError,
    WorkflowNotFoundError,
    WorkflowOverrideActiveError,
    WorkflowTerminalError,
    WorkflowValidationError,
)
from src.shared.types import INITIAL_STEP, WorkflowEventType, WorkflowStatus
from src.shared.workflow_models import OperatorUpdate
from tests.conftest import advance_to, wait_for_pending_otp

PHONE = "+15551234567"

TO_SUBMITTING = (
    WorkflowStatus.FORM_FILLING,
    WorkflowStatus.OTP_REQUESTED,
    WorkflowStatus.OTP_VERIFIED,
    WorkflowStatus.SUBMITTING,
)


class TestCreateWorkflow:
    """Workflow creation."""

    async def test_creates_initiated(self, manager, make_workflow, recorder) -> None:
        """New workflow starts initiated at the first form step."""
        record = await make_workflow(call_log_id="C1")
        assert record.status == WorkflowStatus.INITIATED
        assert record.current_step == INITIAL_STEP
        assert record.patient_data["state"] == "CA"
        assert record.started_at is not None
        assert manager.get_active_workflow(record.id) == record
        created = recorder.of_type(WorkflowEventType.WORKFLOW_CREATED)
        assert created[0].workflow_id == record.id
        assert created[0].payload["call_log_id"] == "C1"

    async def test_invalid_patient_rejected(self, manager, patient_data, store) -> None:
        """Invalid details fail before anything is stored."""
        with pytest.raises(WorkflowValidationError, match="zip"):
            await manager.create_workflow(
                call_log_id="C1",
                agent_id="a",
                patient_data={**patient_data, "zip": "nope"},
            )
        assert await store.list_active() == []

    async def test_one_active_workflow_per_call(self, make_workflow) -> None:
        """A call cannot start a second workflow while one is active."""
        await make_workflow(call_log_id="C1")
        with pytest.raises(WorkflowConflictError):
            await make_workflow(call_log_id="C1")

    async def test_new_workflow_after_terminal(self, manager, make_workflow) -> None:
        """A finished workflow frees the call for a new attempt."""
        first = await make_workflow(call_log_id="C1")
        await manager.record_error(first.id, "driver crash")
        second = await make_workflow(call_log_id="C1")
        assert second.id != first.id


class TestUpdateStatus:
    """State machine enforcement."""

    async def test_allowed_edge(self, manager, make_workflow, recorder) -> None:
        """Allowed edge is written and emitted with the previous status."""
        record = await make_workflow()
        updated = await manager.update_status(record.id, WorkflowStatus.FORM_FILLING)
        assert updated.status == WorkflowStatus.FORM_FILLING
        event = recorder.of_type(WorkflowEventType.STATUS_CHANGED)[-1]
        assert event.payload == {"status": "form_filling", "previous_status": "initiated"}

    async def test_unknown_status_rejected(self, manager, make_workflow, store) -> None:
        """Status outside the allow-list leaves the record unchanged."""
        record = await make_workflow()
        with pytest.raises(WorkflowValidationError, match="Invalid workflow status"):
            await manager.update_status(record.id, "paused")
        assert await store.get(record.id) == record

    async def test_disallowed_edge_rejected(self, manager, make_workflow, store) -> None:
        """Skipping the OTP stages is rejected."""
        record = await make_workflow()
        with pytest.raises(WorkflowValidationError, match="Invalid transition"):
            await manager.update_status(record.id, WorkflowStatus.SUBMITTING)
        assert (await store.get(record.id)).status == WorkflowStatus.INITIATED

    async def test_cancel_only_via_cancel_workflow(self, manager, make_workflow) -> None:
        record = await make_workflow()
        with pytest.raises(WorkflowValidationError, match="cancel_workflow"):
            await manager.update_status(record.id, WorkflowStatus.CANCELLED)

    async def test_same_status_is_noop(self, manager, make_workflow, recorder) -> None:
        record = await make_workflow()
        await manager.update_status(record.id, WorkflowStatus.INITIATED)
        assert recorder.of_type(WorkflowEventType.STATUS_CHANGED) == []

    async def test_rejected_under_override(self, manager, make_workflow) -> None:
        """Automation cannot move a workflow an operator holds."""
        record = await make_workflow()
        await manager.enable_manual_override(record.id, "op-1")
        with pytest.raises(WorkflowOverrideActiveError):
            await manager.update_status(record.id, WorkflowStatus.FORM_FILLING)

    async def test_terminal_is_final(self, manager, make_workflow) -> None:
        record = await make_workflow()
        await manager.update_status(record.id, WorkflowStatus.FAILED)
        assert manager.get_active_workflow(record.id) is None
        with pytest.raises(WorkflowTerminalError):
            await manager.update_status(record.id, WorkflowStatus.FORM_FILLING)

    async def test_missing_workflow(self, manager) -> None:
        with pytest.raises(WorkflowNotFoundError):
            await manager.update_status(uuid.uuid4(), WorkflowStatus.FORM_FILLING)


class TestUpdateStep:
    """Advisory step label writes."""

    async def test_emits_previous_step(self, manager, make_workflow, recorder) -> None:
        record = await make_workflow()
        updated = await manager.update_step(record.id, "location")
        assert updated.current_step == "location"
        event = recorder.of_type(WorkflowEventType.STEP_CHANGED)[0]
        assert event.payload == {"step": "location", "previous_step": INITIAL_STEP}

    async def test_rejected_under_override(self, manager, make_workflow, store) -> None:
        """Step writes stop while an operator holds the workflow."""
        record = await make_workflow()
        await manager.enable_manual_override(record.id, "op-1")
        with pytest.raises(WorkflowOverrideActiveError):
            await manager.update_step(record.id, "location")
        assert (await store.get(record.id)).current_step == INITIAL_STEP

    async def test_rejected_after_error(self, manager, make_workflow, store) -> None:
        """Scenario D: a failed workflow refuses further step writes."""
        record = await make_workflow()
        failed = await manager.record_error(record.id, "driver crash", {"step": "calendar"})
        assert failed.status == WorkflowStatus.FAILED
        assert failed.error_details["error"] == "driver crash"
        assert failed.error_details["details"] == {"step": "calendar"}
        with pytest.raises(WorkflowTerminalError):
            await manager.update_step(record.id, "x")
        assert (await store.get(record.id)).current_step == INITIAL_STEP


class TestOTP:
    """Passcode request and relay."""

    async def test_request_and_submit(self, manager, make_workflow, recorder) -> None:
        """Scenario A: a relayed code verifies the workflow."""
        record = await make_workflow(call_log_id="C1")
        waiter = asyncio.create_task(manager.request_otp(record.id, PHONE))
        await wait_for_pending_otp(manager, record.id)

        assert await manager.submit_otp(record.id, "543210") is True
        assert await waiter == "543210"

        stored = await manager.get_workflow(record.id)
        assert stored.otp_requested is True
        assert stored.otp_verified is True
        assert stored.otp_attempts == 1
        assert not manager.otp.has_pending(record.id)
        requested = recorder.of_type(WorkflowEventType.OTP_REQUESTED)[0]
        assert requested.payload == {"phone_number": "***4567", "attempt": 1}
        assert recorder.of_type(WorkflowEventType.OTP_VERIFIED)[0].payload == {"success": True}

    async def test_timeout(self, manager, make_workflow, fake_timers) -> None:
        """Scenario B: an unanswered request rejects and leaves no entry."""
        record = await make_workflow()
        waiter = asyncio.create_task(manager.request_otp(record.id, PHONE))
        await wait_for_pending_otp(manager, record.id)
        fake_timers.fire_all()

        with pytest.raises(OTPTimeoutError):
            await waiter
        stored = await manager.get_workflow(record.id)
        assert stored.otp_verified is False
        assert stored.otp_failure_reason == "timeout"
        assert await manager.submit_otp(record.id, "543210") is False

    async def test_submit_without_request(self, manager, make_workflow, recorder) -> None:
        """Submitting with nothing pending changes nothing."""
        record = await make_workflow()
        assert await manager.submit_otp(record.id, "543210") is False
        assert (await manager.get_workflow(record.id)).otp_verified is False
        assert recorder.of_type(WorkflowEventType.OTP_VERIFIED) == []

    async def test_second_request_rejected(self, manager, make_workflow) -> None:
        """A concurrent request is refused without touching the first."""
        record = await make_workflow()
        waiter = asyncio.create_task(manager.request_otp(record.id, PHONE))
        await wait_for_pending_otp(manager, record.id)

        with pytest.raises(OTPRequestConflictError):
            await manager.request_otp(record.id, PHONE)
        assert (await manager.get_workflow(record.id)).otp_attempts == 1

        await manager.submit_otp(record.id, "111222")
        assert await waiter == "111222"

    async def test_retry_after_timeout(self, manager, make_workflow, fake_timers) -> None:
        """A fresh request after a timeout counts a second attempt."""
        record = await make_workflow()
        first = asyncio.create_task(manager.request_otp(record.id, PHONE))
        await wait_for_pending_otp(manager, record.id)
        fake_timers.fire_all()
        with pytest.raises(OTPTimeoutError):
            await first

        second = asyncio.create_task(manager.request_otp(record.id, PHONE))
        await wait_for_pending_otp(manager, record.id)
        stored = await manager.get_workflow(record.id)
        assert stored.otp_attempts == 2
        assert stored.otp_failure_reason is None
        await manager.submit_otp(record.id, "543210")
        assert await second == "543210"

    async def test_invalid_phone(self, manager, make_workflow) -> None:
        record = await make_workflow()
        with pytest.raises(WorkflowValidationError):
            await manager.request_otp(record.id, "555")
        assert not manager.otp.has_pending(record.id)

    async def test_terminal_workflow_leaves_no_entry(self, manager, make_workflow) -> None:
        """A failed write after registration removes the pending entry."""
        record = await make_workflow()
        await manager.record_error(record.id, "driver crash")
        with pytest.raises(WorkflowTerminalError):
            await manager.request_otp(record.id, PHONE)
        assert not manager.otp.has_pending(record.id)

    async def test_code_never_logged(self, manager, make_workflow, caplog) -> None:
        record = await make_workflow()
        caplog.set_level(logging.DEBUG)
        waiter = asyncio.create_task(manager.request_otp(record.id, PHONE))
        await wait_for_pending_otp(manager, record.id)
        await manager.submit_otp(record.id, "987654")
        await waiter
        assert "987654" not in caplog.text
        assert PHONE not in caplog.text


class TestCaptureProgress:
    """Screenshots and form progress."""

    async def test_screenshot_ring_buffer(self, manager, make_workflow) -> None:
        """Only the most recent screenshot_retention captures are kept."""
        record = await make_workflow()
        for i in range(5):
            updated = await manager.capture_progress(record.id, f"step-{i}", f"img-{i}")
        assert [s["step"] for s in updated.screenshots] == ["step-2", "step-3", "step-4"]
        assert updated.screenshots[-1]["image"] == "img-4"

    async def test_merges_form_fields(self, manager, make_workflow) -> None:
        record = await make_workflow()
        await manager.capture_progress(record.id, "patient_info", None, {"first_name": "Maria"})
        updated = await manager.capture_progress(record.id, "insurance", None, {"insurance": "Aetna"})
        assert updated.form_progress == {"first_name": "Maria", "insurance": "Aetna"}
        assert updated.screenshots == []

    async def test_emits_screenshot_event(self, manager, make_workflow, recorder) -> None:
        record = await make_workflow()
        await manager.capture_progress(record.id, "calendar", "img")
        event = recorder.of_type(WorkflowEventType.SCREENSHOT_CAPTURED)[0]
        assert event.payload == {"step": "calendar", "screenshot": "img"}

    async def test_form_fields_blocked_under_override(self, manager, make_workflow) -> None:
        """Screenshots may still be captured, but fields are the operator's."""
        record = await make_workflow()
        await manager.enable_manual_override(record.id, "op-1")
        updated = await manager.capture_progress(record.id, "calendar", "img")
        assert len(updated.screenshots) == 1
        with pytest.raises(WorkflowOverrideActiveError):
            await manager.capture_progress(record.id, "calendar", None, {"slot": "9:30"})
        assert (await manager.get_workflow(record.id)).form_progress == {}

    async def test_rejected_after_terminal(self, manager, make_workflow) -> None:
        record = await make_workflow()
        await manager.record_error(record.id, "driver crash")
        with pytest.raises(WorkflowTerminalError):
            await manager.capture_progress(record.id, "calendar", "img", {"slot": "9:30"})


class TestRecordError:
    """Failure recording."""

    async def test_emits_error_event(self, manager, make_workflow, recorder) -> None:
        record = await make_workflow()
        await manager.record_error(record.id, "driver crash", {"step": "calendar"})
        event = recorder.of_type(WorkflowEventType.ERROR_OCCURRED)[0]
        assert event.payload["error"] == "driver crash"
        assert event.payload["status"] == "failed"

    async def test_terminal_untouched(self, manager, make_workflow, recorder) -> None:
        """A second error on a finished workflow is ignored."""
        record = await make_workflow()
        first = await manager.record_error(record.id, "driver crash")
        second = await manager.record_error(record.id, "another")
        assert second.error_details == first.error_details
        assert len(recorder.of_type(WorkflowEventType.ERROR_OCCURRED)) == 1

    async def test_yields_to_operator(self, manager, make_workflow, store) -> None:
        """Automation failures leave an operator-held workflow alone."""
        record = await make_workflow()
        held = await manager.enable_manual_override(record.id, "op-1")
        with pytest.raises(WorkflowOverrideActiveError):
            await manager.record_error(record.id, "driver crash", yield_to_operator=True)
        assert await store.get(record.id) == held

    async def test_hang_up_fails_held_workflow(self, manager, make_workflow) -> None:
        record = await make_workflow()
        await manager.enable_manual_override(record.id, "op-1")
        failed = await manager.record_error(record.id, "call ended")
        assert failed.status == WorkflowStatus.FAILED
        assert failed.manual_override_enabled is False


class TestTriggerFallback:
    """Manual scheduling hand-off."""

    async def test_fallback(self, manager, make_workflow, recorder, settings) -> None:
        """Scenario E: fallback marks the link sent and fails the workflow."""
        record = await make_workflow()
        result = await manager.trigger_fallback(record.id, "otp retries exhausted")
        assert result.fallback_link_sent is True
        assert result.link == settings.manual_scheduling_url
        assert settings.manual_scheduling_url in result.message

        stored = await manager.get_workflow(record.id)
        assert stored.status == WorkflowStatus.FAILED
        assert stored.fallback_link_sent is True
        assert stored.error_details["error"] == "otp retries exhausted"
        event = recorder.of_type(WorkflowEventType.FALLBACK_TRIGGERED)[0]
        assert event.payload["reason"] == "otp retries exhausted"

    async def test_after_record_error(self, manager, make_workflow) -> None:
        """A failed workflow can still hand out the link once."""
        record = await make_workflow()
        await manager.record_error(record.id, "driver crash")
        result = await manager.trigger_fallback(record.id, "driver crash")
        stored = await manager.get_workflow(record.id)
        assert result.fallback_link_sent is True
        assert stored.fallback_link_sent is True
        assert stored.error_details["error"] == "driver crash"

    async def test_yields_to_operator(self, manager, make_workflow, store, recorder) -> None:
        record = await make_workflow()
        held = await manager.enable_manual_override(record.id, "op-1")
        with pytest.raises(WorkflowOverrideActiveError):
            await manager.trigger_fallback(record.id, "otp retries exhausted", yield_to_operator=True)
        assert await store.get(record.id) == held
        assert recorder.of_type(WorkflowEventType.FALLBACK_TRIGGERED) == []

    async def test_sent_once(self, manager, make_workflow, recorder) -> None:
        record = await make_workflow()
        await manager.trigger_fallback(record.id, "a")
        again = await manager.trigger_fallback(record.id, "b")
        assert again.fallback_link_sent is True
        assert len(recorder.of_type(WorkflowEventType.FALLBACK_TRIGGERED)) == 1

    async def test_not_for_cancelled(self, manager, make_workflow) -> None:
        """A cancelled workflow gets no link."""
        record = await make_workflow()
        await manager.cancel_workflow(record.id, "op-1")
        result = await manager.trigger_fallback(record.id, "late")
        assert result.fallback_link_sent is False
        assert (await manager.get_workflow(record.id)).status == WorkflowStatus.CANCELLED

    async def test_tears_down_pending_otp(self, manager, make_workflow) -> None:
        record = await make_workflow()
        waiter = asyncio.create_task(manager.request_otp(record.id, PHONE))
        await wait_for_pending_otp(manager, record.id)
        await manager.trigger_fallback(record.id, "driver crash")
        with pytest.raises(OTPCancelledError):
            await waiter
        assert not manager.otp.has_pending(record.id)


class TestCompleteWorkflow:
    """Form submission results."""

    async def test_success(self, manager, make_workflow, recorder) -> None:
        record = await make_workflow()
        await advance_to(manager, record.id, *TO_SUBMITTING)
        done = await manager.complete_workflow(
            record.id, True, "ABC12345", {"date": "Thu, Oct 22", "time": "9:30 AM"}
        )
        assert done.status == WorkflowStatus.COMPLETED
        assert done.confirmation_number == "ABC12345"
        assert done.submission_successful is True
        assert done.completed_at is not None
        assert manager.get_active_workflow(record.id) is None
        event = recorder.of_type(WorkflowEventType.FORM_SUBMITTED)[0]
        assert event.payload["confirmation_number"] == "ABC12345"

    async def test_success_requires_submitting(self, manager, make_workflow) -> None:
        record = await make_workflow()
        with pytest.raises(WorkflowValidationError):
            await manager.complete_workflow(record.id, True, "ABC12345")

    async def test_failure(self, manager, make_workflow) -> None:
        record = await make_workflow()
        done = await manager.complete_workflow(record.id, False)
        assert done.status == WorkflowStatus.FAILED
        assert done.submission_successful is False
        assert done.error_details["error"] == "Form submission failed"

    async def test_completes_under_override(self, manager, make_workflow) -> None:
        """A booking that already happened is recorded even if paused."""
        record = await make_workflow()
        await advance_to(manager, record.id, *TO_SUBMITTING)
        await manager.enable_manual_override(record.id, "op-1")
        done = await manager.complete_workflow(record.id, True, "ABC12345")
        assert done.status == WorkflowStatus.COMPLETED
        assert done.manual_override_enabled is False


class TestOperatorActions:
    """Pause, resume, cancel, and PATCH."""

    async def test_pause(self, manager, make_workflow, recorder) -> None:
        record = await make_workflow()
        paused = await manager.enable_manual_override(record.id, "op-1", "checking slot")
        assert paused.manual_override_enabled is True
        assert paused.operator_id == "op-1"
        assert paused.operator_notes == "checking slot"
        assert paused.operator_intervention_at is not None
        event = recorder.of_type(WorkflowEventType.MANUAL_OVERRIDE)[0]
        assert event.payload == {"operator_id": "op-1", "enabled": True, "notes": "checking slot"}

    async def test_resume_not_paused(self, manager, make_workflow, store) -> None:
        """Invalid operator action leaves the record untouched."""
        record = await make_workflow()
        with pytest.raises(WorkflowValidationError, match="not paused"):
            await manager.resume_workflow(record.id, "op-1")
        assert await store.get(record.id) == record

    async def test_resume(self, manager, make_workflow, recorder) -> None:
        record = await make_workflow()
        await manager.enable_manual_override(record.id, "op-1", "hold")
        resumed = await manager.resume_workflow(record.id, "op-1")
        assert resumed.manual_override_enabled is False
        assert resumed.operator_notes is None
        assert [e.payload["enabled"] for e in recorder.of_type(WorkflowEventType.MANUAL_OVERRIDE)] == [True, False]

    async def test_cancel_tears_down_otp(self, manager, make_workflow, recorder) -> None:
        """Cancel rejects the pending passcode wait and evicts the handle."""
        record = await make_workflow()
        waiter = asyncio.create_task(manager.request_otp(record.id, PHONE))
        await wait_for_pending_otp(manager, record.id)

        cancelled = await manager.cancel_workflow(record.id, "op-1", "caller hung up")
        assert cancelled.status == WorkflowStatus.CANCELLED
        assert cancelled.completed_at is not None
        with pytest.raises(OTPCancelledError):
            await waiter
        assert not manager.otp.has_pending(record.id)
        assert manager.get_active_workflow(record.id) is None
        event = recorder.of_type(WorkflowEventType.STATUS_CHANGED)[-1]
        assert event.payload["status"] == "cancelled"
        assert event.payload["operator_id"] == "op-1"

    async def test_cancel_terminal_is_noop(self, manager, make_workflow, recorder) -> None:
        record = await make_workflow()
        failed = await manager.record_error(record.id, "driver crash")
        result = await manager.cancel_workflow(record.id, "op-1")
        assert result == failed
        assert recorder.of_type(WorkflowEventType.STATUS_CHANGED) == []

    async def test_operator_status_change(self, manager, make_workflow) -> None:
        record = await make_workflow()
        updated = await manager.apply_operator_update(
            record.id, "op-1", OperatorUpdate(status=WorkflowStatus.COLLECTING_DATA)
        )
        assert updated.status == WorkflowStatus.COLLECTING_DATA

    async def test_status_change_with_pause(self, manager, make_workflow, recorder) -> None:
        """A PATCH moving the status and pausing applies both."""
        record = await make_workflow()
        updated = await manager.apply_operator_update(
            record.id,
            "op-1",
            OperatorUpdate(status=WorkflowStatus.FORM_FILLING, manual_override_enabled=True),
        )
        assert updated.status == WorkflowStatus.FORM_FILLING
        assert updated.manual_override_enabled is True
        assert recorder.of_type(WorkflowEventType.STATUS_CHANGED)[-1].payload["status"] == "form_filling"
        assert recorder.of_type(WorkflowEventType.MANUAL_OVERRIDE)[-1].payload["enabled"] is True

    async def test_operator_id_required(self, manager, make_workflow) -> None:
        record = await make_workflow()
        with pytest.raises(WorkflowValidationError, match="operator_id"):
            await manager.cancel_workflow(record.id, "")

    @pytest.mark.parametrize("cancel_first", [True, False])
    async def test_cancel_and_complete_race(
        self, manager, make_workflow, recorder, cancel_first
    ) -> None:
        """Concurrent cancel and completion end in exactly one terminal state."""
        record = await make_workflow()
        await advance_to(manager, record.id, *TO_SUBMITTING)
        cancel = manager.cancel_workflow(record.id, "op-1")
        complete = manager.complete_workflow(record.id, True, "ABC12345")
        calls = [cancel, complete] if cancel_first else [complete, cancel]

        results = await asyncio.gather(*calls)

        final = await manager.get_workflow(record.id)
        assert all(r.status == final.status for r in results)
        if cancel_first:
            assert final.status == WorkflowStatus.CANCELLED
            assert final.confirmation_number is None
            assert final.submission_successful is False
        else:
            assert final.status == WorkflowStatus.COMPLETED
            assert final.confirmation_number == "ABC12345"
        cancels = [
            e for e in recorder.of_type(WorkflowEventType.STATUS_CHANGED)
            if e.payload["status"] == "cancelled"
        ]
        submits = recorder.of_type(WorkflowEventType.FORM_SUBMITTED)
        assert len(cancels) + len(submits) == 1


class TestCheckpoint:
    """Cooperative pre-step check."""

    @pytest.fixture
    def patient_manager(self, store, settings) -> SchedulingWorkflowManager:
        """Manager that waits up to five seconds for an operator."""
        slow = settings.model_copy(update={
            "operator_pause_timeout_seconds": 5.0,
            "pause_poll_interval_seconds": 5.0,
        })
        return SchedulingWorkflowManager(store, settings=slow)

    async def test_passes_when_not_paused(self, manager, make_workflow) -> None:
        record = await make_workflow()
        assert (await manager.checkpoint(record.id)).id == record.id

    async def test_aborts_when_override_held(self, manager, make_workflow) -> None:
        """Scenario C: the check observes the override and aborts."""
        record = await make_workflow()
        await manager.enable_manual_override(record.id, "op-1")
        with pytest.raises(WorkflowOverrideActiveError, match="op-1"):
            await manager.checkpoint(record.id)
        assert (await manager.get_workflow(record.id)).current_step == INITIAL_STEP
        assert record.id not in manager._signals

    async def test_wakes_on_resume(self, patient_manager, patient_data) -> None:
        record = await patient_manager.create_workflow(
            call_log_id="C3", agent_id="a", patient_data=patient_data
        )
        await patient_manager.enable_manual_override(record.id, "op-1")
        task = asyncio.create_task(patient_manager.checkpoint(record.id))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not task.done()

        await patient_manager.resume_workflow(record.id, "op-1")
        resumed = await asyncio.wait_for(task, timeout=1.0)
        assert resumed.manual_override_enabled is False

    async def test_cancel_while_paused(self, patient_manager, patient_data) -> None:
        record = await patient_manager.create_workflow(
            call_log_id="C3", agent_id="a", patient_data=patient_data
        )
        await patient_manager.enable_manual_override(record.id, "op-1")
        task = asyncio.create_task(patient_manager.checkpoint(record.id))
        for _ in range(5):
            await asyncio.sleep(0)

        await patient_manager.cancel_workflow(record.id, "op-1")
        with pytest.raises(WorkflowTerminalError):
            await asyncio.wait_for(task, timeout=1.0)

    async def test_missing_workflow(self, manager) -> None:
        with pytest.raises(WorkflowNotFoundError):
            await manager.checkpoint(uuid.uuid4())


class TestReads:
    """Monitoring queries."""

    async def test_list_active_excludes_terminal(self, manager, make_workflow) -> None:
        live = await make_workflow()
        done = await make_workflow()
        await manager.record_error(done.id, "driver crash")
        active = await manager.list_active_workflows()
        assert [r.id for r in active] == [live.id]
        assert [r.id for r in manager.get_all_active_handles()] == [live.id]

    async def test_list_filters(self, manager, make_workflow) -> None:
        a = await make_workflow(campaign_id="spring")
        await make_workflow(campaign_id="fall")
        await manager.record_error(a.id, "driver crash")
        failed = await manager.list_workflows(status="failed")
        assert [r.id for r in failed] == [a.id]
        fall = await manager.list_workflows(campaign_id="fall")
        assert [r.campaign_id for r in fall] == ["fall"]

    async def test_list_invalid_status(self, manager) -> None:
        with pytest.raises(WorkflowValidationError):
            await manager.list_workflows(status="paused")

    async def test_shutdown_cancels_waits(self, manager, make_workflow) -> None:
        record = await make_workflow()
        waiter = asyncio.create_task(manager.request_otp(record.id, PHONE))
        await wait_for_pending_otp(manager, record.id)
        await manager.shutdown()
        with pytest.raises(OTPCancelledError):
            await waiter
