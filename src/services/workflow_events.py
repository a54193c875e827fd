"""Observer interface for workflow lifecycle events.

The manager publishes to a WorkflowEventPublisher it owns; monitoring,
audit, and dashboard feeds subscribe to it. A failing listener is
logged and skipped so it can never break the workflow that emitted.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable

from src.shared.workflow_models import WorkflowEvent

logger = logging.getLogger(__name__)

WorkflowEventListener = Callable[[WorkflowEvent], Awaitable[None] | None]


class WorkflowEventPublisher:
    """Fan-out of lifecycle events to registered listeners."""

    def __init__(self) -> None:
        self._listeners: list[WorkflowEventListener] = []

    def subscribe(self, listener: WorkflowEventListener) -> None:
        """Register a sync or async listener.

        Args:
            listener: Callable taking a WorkflowEvent.
        """
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: WorkflowEventListener) -> None:
        """Remove a listener if registered."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        """Number of registered listeners."""
        return len(self._listeners)

    async def publish(self, event: WorkflowEvent) -> None:
        """Deliver an event to every listener in subscription order.

        Args:
            event: Event to deliver.
        """
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning(
                    "workflow_event_listener_failed",
                    extra={
                        "event_type": event.event_type.value,
                        "workflow_id": str(event.workflow_id),
                    },
                    exc_info=True,
                )
