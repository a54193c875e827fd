"""Tests for the OTP coordinator."""

import asyncio
import gc
import uuid

import pytest

from src.services.otp_coordinator import OTPCoordinator
from src.shared.errors import OTPCancelledError, OTPRequestConflictError, OTPTimeoutError
from tests.conftest import FakeTimer


@pytest.fixture
def coordinator(fake_timers) -> OTPCoordinator:
    """Coordinator with a 30 second window and fake timers."""
    return OTPCoordinator(30.0, timer_factory=fake_timers)


class TestRegister:
    """Registering pending waits."""

    async def test_arms_timer(self, coordinator, fake_timers) -> None:
        """Registration arms one timer with the configured window."""
        workflow_id = uuid.uuid4()
        coordinator.register(workflow_id)
        assert coordinator.has_pending(workflow_id)
        assert [t.delay for t in fake_timers.armed] == [30.0]

    async def test_custom_timeout(self, coordinator, fake_timers) -> None:
        """Per-request timeout overrides the default."""
        coordinator.register(uuid.uuid4(), timeout_seconds=5.0)
        assert fake_timers.armed[0].delay == 5.0

    async def test_second_request_rejected(self, coordinator) -> None:
        """A second registration leaves the first waiter untouched."""
        workflow_id = uuid.uuid4()
        first = coordinator.register(workflow_id)
        with pytest.raises(OTPRequestConflictError):
            coordinator.register(workflow_id)
        assert not first.done()
        assert coordinator.pending_ids() == [workflow_id]

    async def test_entries_keyed_per_workflow(self, coordinator) -> None:
        """Different workflows never collide."""
        a, b = uuid.uuid4(), uuid.uuid4()
        coordinator.register(a)
        coordinator.register(b)
        assert set(coordinator.pending_ids()) == {a, b}


class TestResolve:
    """Delivering passcodes."""

    async def test_resolve_delivers_otp(self, coordinator, fake_timers) -> None:
        """The waiter receives the code and the entry is removed."""
        workflow_id = uuid.uuid4()
        future = coordinator.register(workflow_id)
        assert coordinator.resolve(workflow_id, "543210") is True
        assert await coordinator.wait(workflow_id, future) == "543210"
        assert not coordinator.has_pending(workflow_id)
        assert fake_timers.armed == []

    async def test_resolve_without_pending(self, coordinator) -> None:
        """Resolving with nothing pending is a no-op."""
        assert coordinator.resolve(uuid.uuid4(), "543210") is False


class TestTimeout:
    """Timer expiry."""

    async def test_expiry_rejects_and_removes(self, coordinator, fake_timers) -> None:
        """Expired wait raises OTPTimeoutError and leaves no entry."""
        workflow_id = uuid.uuid4()
        future = coordinator.register(workflow_id)
        fake_timers.fire_all()
        with pytest.raises(OTPTimeoutError, match="30 seconds"):
            await coordinator.wait(workflow_id, future)
        assert not coordinator.has_pending(workflow_id)
        assert coordinator.resolve(workflow_id, "543210") is False

    async def test_stale_timer_ignored(self, coordinator, fake_timers) -> None:
        """A timer from an earlier request cannot expire a newer one."""
        workflow_id = uuid.uuid4()
        first = coordinator.register(workflow_id)
        stale = fake_timers.timers[0]
        coordinator.resolve(workflow_id, "111111")
        await coordinator.wait(workflow_id, first)
        second = coordinator.register(workflow_id)
        stale.callback()
        assert not second.done()
        assert coordinator.has_pending(workflow_id)


class TestCancel:
    """Teardown paths."""

    async def test_cancel_rejects_waiter(self, coordinator, fake_timers) -> None:
        """Cancel fails the waiter with OTPCancelledError."""
        workflow_id = uuid.uuid4()
        future = coordinator.register(workflow_id)
        assert coordinator.cancel(workflow_id, "workflow cancelled") is True
        with pytest.raises(OTPCancelledError, match="workflow cancelled"):
            await coordinator.wait(workflow_id, future)
        assert fake_timers.armed == []

    async def test_cancel_without_pending(self, coordinator) -> None:
        assert coordinator.cancel(uuid.uuid4(), "nothing") is False

    async def test_cancel_all(self, coordinator) -> None:
        """Shutdown tears down every entry."""
        futures = [coordinator.register(uuid.uuid4()) for _ in range(3)]
        coordinator.cancel_all("shutdown")
        assert coordinator.pending_ids() == []
        assert all(isinstance(f.exception(), OTPCancelledError) for f in futures)

    async def test_waiting_task_cancelled(self, coordinator, fake_timers) -> None:
        """Cancelling the awaiting task removes the entry and its timer."""
        workflow_id = uuid.uuid4()
        future = coordinator.register(workflow_id)
        task = asyncio.create_task(coordinator.wait(workflow_id, future))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not coordinator.has_pending(workflow_id)
        assert fake_timers.armed == []

    async def test_discard_only_matching_future(self, coordinator) -> None:
        """Discard ignores a future that is no longer the registered one."""
        workflow_id = uuid.uuid4()
        current = coordinator.register(workflow_id)
        other = asyncio.get_running_loop().create_future()
        coordinator.discard(workflow_id, other)
        assert coordinator.has_pending(workflow_id)
        coordinator.discard(workflow_id, current)
        assert not coordinator.has_pending(workflow_id)

    async def test_discard_cancels_unawaited_future(self, coordinator, fake_timers) -> None:
        """A request that fails before waiting leaves no live future."""
        workflow_id = uuid.uuid4()
        future = coordinator.register(workflow_id)
        coordinator.discard(workflow_id, future)
        assert future.cancelled()
        assert fake_timers.armed == []

    async def test_discard_after_cancel_reads_exception(self) -> None:
        """A cancel racing the request leaves no unretrieved exception behind."""
        loop = asyncio.get_running_loop()
        reported: list[dict] = []
        loop.set_exception_handler(lambda _loop, context: reported.append(context))
        try:
            coordinator = OTPCoordinator(30.0, timer_factory=FakeTimer)
            workflow_id = uuid.uuid4()
            future = coordinator.register(workflow_id)
            coordinator.cancel(workflow_id, "workflow cancelled")
            coordinator.discard(workflow_id, future)
            assert future.done() and not future.cancelled()
            del future
            gc.collect()
        finally:
            loop.set_exception_handler(None)
        assert reported == []
