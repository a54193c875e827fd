"""Shared test fixtures for the scheduling orchestrator test suite."""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from src.config.settings import Settings
from src.db.memory_store import InMemoryWorkflowStore
from src.services.automation_driver import ViewCapture
from src.services.otp_coordinator import OTPCoordinator
from src.services.workflow_manager import SchedulingWorkflowManager
from src.shared.types import WorkflowEventType
from src.shared.workflow_models import WorkflowEvent, WorkflowRecord

CONFIRMATION_PAGE = (
    "Your appointment has been booked. Confirmation number: ABC12345. "
    "Thu, Oct 22 at 9:30 AM - Anaheim"
)


@pytest.fixture
def settings() -> Settings:
    """Provide test settings with safe defaults.

    Returns:
        Settings using the in-process store and no pause waiting.
    """
    return Settings(
        workflow_store_backend="memory",
        otp_timeout_seconds=120.0,
        otp_max_attempts=2,
        operator_pause_timeout_seconds=0.0,
        pause_poll_interval_seconds=0.01,
        screenshot_retention=3,
        intake_form_url="https://intake.example.test/schedule",
        manual_scheduling_url="https://clinic.example.test/book",
    )


class FakeTimer:
    """Timer handle that fires only when the test says so."""

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimers:
    """Injectable timer factory recording every armed timer."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def armed(self) -> list[FakeTimer]:
        """Timers not yet fired or cancelled."""
        return [t for t in self.timers if not t.cancelled]

    def fire_all(self) -> None:
        """Fire every armed timer, as if its delay elapsed."""
        for timer in self.armed:
            timer.cancelled = True
            timer.callback()


class RecordingListener:
    """Publisher listener that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[WorkflowEvent] = []

    async def __call__(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: WorkflowEventType) -> list[WorkflowEvent]:
        """Events of one type, in publish order."""
        return [e for e in self.events if e.event_type == event_type]

    @property
    def types(self) -> list[WorkflowEventType]:
        """Event types in publish order."""
        return [e.event_type for e in self.events]


class FakeDriver:
    """Automation driver double recording every interaction.

    Attributes:
        view_text: Text returned by every capture_view.
        fail_on: Click target substring that raises a driver error.
        hooks: Coroutines run before a click whose target contains the key.
    """

    def __init__(self, view_text: str = CONFIRMATION_PAGE, image: str = "aW1hZ2U=") -> None:
        self.view_text = view_text
        self.image = image
        self.fail_on: str | None = None
        self.hooks: dict[str, Callable[[], Awaitable[None]]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.disposed = False

    async def navigate(self, url: str) -> None:
        self.calls.append(("navigate", url))

    async def capture_view(self) -> ViewCapture:
        self.calls.append(("capture_view", None))
        return ViewCapture(image_b64=self.image, text=self.view_text)

    async def click(self, target: str) -> None:
        for key, hook in list(self.hooks.items()):
            if key in target:
                del self.hooks[key]
                await hook()
        if self.fail_on and self.fail_on in target:
            raise RuntimeError("driver crash")
        self.calls.append(("click", target))

    async def type_text(self, text: str) -> None:
        self.calls.append(("type_text", text))

    async def press_key(self, key: str) -> None:
        self.calls.append(("press_key", key))

    async def scroll(self, direction: str, amount: int) -> None:
        self.calls.append(("scroll", (direction, amount)))

    async def wait(self, seconds: float) -> None:
        self.calls.append(("wait", seconds))

    async def dispose(self) -> None:
        self.disposed = True

    def typed(self) -> list[str]:
        """Text typed so far, in order."""
        return [value for name, value in self.calls if name == "type_text"]


@pytest.fixture
def fake_timers() -> FakeTimers:
    """Timer factory for deterministic OTP timeouts."""
    return FakeTimers()


@pytest.fixture
def recorder() -> RecordingListener:
    """Listener collecting published events."""
    return RecordingListener()


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    """Fresh in-process workflow store."""
    return InMemoryWorkflowStore()


@pytest.fixture
def manager(
    store: InMemoryWorkflowStore,
    settings: Settings,
    fake_timers: FakeTimers,
    recorder: RecordingListener,
) -> SchedulingWorkflowManager:
    """Workflow manager wired to the in-process store and fake timers."""
    mgr = SchedulingWorkflowManager(
        store,
        settings=settings,
        otp_coordinator=OTPCoordinator(settings.otp_timeout_seconds, timer_factory=fake_timers),
    )
    mgr.events.subscribe(recorder)
    return mgr


@pytest.fixture
def patient_data() -> dict[str, Any]:
    """Valid patient details as collected on a call."""
    return {
        "first_name": "Maria",
        "last_name": "Lopez",
        "date_of_birth": "1961-04-12",
        "gender": "female",
        "address": "12 Orange Ave",
        "city": "Anaheim",
        "state": "ca",
        "zip": "92805",
        "home_phone": "(714) 555-0100",
        "mobile_phone": "+1 714 555 0199",
        "email": "maria@example.test",
        "insurance_company": "Blue Shield",
    }


@pytest.fixture
def make_workflow(
    manager: SchedulingWorkflowManager,
    patient_data: dict[str, Any],
) -> Callable[..., Awaitable[WorkflowRecord]]:
    """Factory creating workflows with unique call ids."""

    async def _make(**overrides: Any) -> WorkflowRecord:
        fields = {
            "call_log_id": f"call-{uuid.uuid4().hex[:8]}",
            "agent_id": "agent-1",
            "patient_data": patient_data,
            "campaign_id": "camp-1",
        }
        fields.update(overrides)
        return await manager.create_workflow(**fields)

    return _make


async def wait_for_pending_otp(
    manager: SchedulingWorkflowManager,
    workflow_id: uuid.UUID,
    *,
    max_ticks: int = 500,
) -> None:
    """Yield to the loop until an OTP wait is registered for the workflow."""
    for _ in range(max_ticks):
        if manager.otp.has_pending(workflow_id):
            return
        await asyncio.sleep(0)
    raise AssertionError(f"no OTP request registered for {workflow_id}")


async def advance_to(manager: SchedulingWorkflowManager, workflow_id: uuid.UUID, *statuses) -> None:
    """Walk a workflow through a sequence of statuses."""
    for status in statuses:
        await manager.update_status(workflow_id, status)
