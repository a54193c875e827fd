"""OTP coordinator: one pending passcode future per workflow.

The automation side suspends on the future returned by register();
the call-handling side resolves it when the caller reads the code
aloud. A timer rejects the future if no code arrives in time. Entries
are removed on every exit path (resolve, timeout, teardown, or the
waiting task being cancelled), so at most one exists per workflow.
"""

import asyncio
import functools
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from src.shared.errors import OTPCancelledError, OTPRequestConflictError, OTPTimeoutError

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    """Cancellable scheduled callback (asyncio.TimerHandle satisfies this)."""

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def loop_timer(delay: float, callback: Callable[[], None]) -> TimerHandle:
    """Schedule a callback on the running event loop.

    Args:
        delay: Seconds until the callback fires.
        callback: Zero-argument function to call.

    Returns:
        The loop's TimerHandle.
    """
    return asyncio.get_running_loop().call_later(delay, callback)


@dataclass
class _PendingOTP:
    future: asyncio.Future[str]
    timer: TimerHandle
    timeout_seconds: float


class OTPCoordinator:
    """Registry of pending OTP waits keyed by workflow id."""

    def __init__(
        self,
        timeout_seconds: float,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._timer_factory = timer_factory or loop_timer
        self._pending: dict[uuid.UUID, _PendingOTP] = {}

    def has_pending(self, workflow_id: uuid.UUID) -> bool:
        """Whether an OTP wait is outstanding for the workflow."""
        return workflow_id in self._pending

    def pending_ids(self) -> list[uuid.UUID]:
        """Workflow ids with an outstanding OTP wait."""
        return list(self._pending)

    def register(
        self,
        workflow_id: uuid.UUID,
        timeout_seconds: float | None = None,
    ) -> asyncio.Future[str]:
        """Install a pending OTP future and arm its timeout.

        A second registration while one is pending is rejected; the
        first waiter keeps its future.

        Args:
            workflow_id: Workflow awaiting a passcode.
            timeout_seconds: Override for the configured wait window.

        Returns:
            Future resolved with the OTP string.

        Raises:
            OTPRequestConflictError: If an OTP is already pending.
        """
        if workflow_id in self._pending:
            raise OTPRequestConflictError(
                f"OTP already pending for workflow {workflow_id}"
            )
        timeout = self._timeout_seconds if timeout_seconds is None else timeout_seconds
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        timer = self._timer_factory(
            timeout, functools.partial(self._expire, workflow_id, future)
        )
        self._pending[workflow_id] = _PendingOTP(future, timer, timeout)
        return future

    async def wait(self, workflow_id: uuid.UUID, future: asyncio.Future[str]) -> str:
        """Await a registered future, removing its entry however it ends.

        Args:
            workflow_id: Workflow awaiting a passcode.
            future: Future returned by register().

        Returns:
            The OTP string.
        """
        try:
            return await future
        finally:
            self.discard(workflow_id, future)

    def resolve(self, workflow_id: uuid.UUID, otp: str) -> bool:
        """Hand a passcode to the pending waiter.

        Args:
            workflow_id: Workflow the passcode belongs to.
            otp: Passcode relayed by the caller.

        Returns:
            True if a waiter received it, False if nothing was pending.
        """
        entry = self._pending.pop(workflow_id, None)
        if entry is None or entry.future.done():
            return False
        entry.timer.cancel()
        entry.future.set_result(otp)
        return True

    def cancel(self, workflow_id: uuid.UUID, reason: str) -> bool:
        """Tear down a pending wait, failing it with OTPCancelledError.

        Args:
            workflow_id: Workflow whose wait should end.
            reason: Why the wait was torn down.

        Returns:
            True if an entry was removed.
        """
        entry = self._pending.pop(workflow_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_exception(OTPCancelledError(reason))
        logger.info(
            "otp_wait_cancelled",
            extra={"workflow_id": str(workflow_id), "reason": reason},
        )
        return True

    def cancel_all(self, reason: str) -> None:
        """Tear down every pending wait (process shutdown)."""
        for workflow_id in list(self._pending):
            self.cancel(workflow_id, reason)

    def _expire(self, workflow_id: uuid.UUID, future: asyncio.Future[str]) -> None:
        entry = self._pending.get(workflow_id)
        if entry is None or entry.future is not future:
            return
        del self._pending[workflow_id]
        if not future.done():
            future.set_exception(OTPTimeoutError(
                f"OTP request timeout ({entry.timeout_seconds:g} seconds). "
                "Patient may not have received SMS."
            ))
        logger.warning(
            "otp_wait_timed_out",
            extra={"workflow_id": str(workflow_id), "timeout_seconds": entry.timeout_seconds},
        )

    def discard(self, workflow_id: uuid.UUID, future: asyncio.Future[str]) -> None:
        """Drop the registration of a future whose waiter is gone.

        An exception already set on the future (a cancel that raced the
        request) is read so asyncio does not report it as never retrieved.
        """
        entry = self._pending.get(workflow_id)
        if entry is not None and entry.future is future:
            entry.timer.cancel()
            del self._pending[workflow_id]
            future.cancel()
        if future.done() and not future.cancelled():
            future.exception()
