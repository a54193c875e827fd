"""Persists lifecycle events as the workflow audit trail."""

import logging

from src.db.store import WorkflowStore
from src.services.workflow_events import WorkflowEventPublisher
from src.shared.types import WorkflowEventType
from src.shared.workflow_models import WorkflowEvent

logger = logging.getLogger(__name__)


class WorkflowAuditRecorder:
    """Publisher subscriber writing each event to the workflow store.

    Screenshot images are already kept on the workflow row, so
    screenshot events are stored without the image.
    """

    def __init__(self, store: WorkflowStore) -> None:
        self._store = store

    def attach(self, publisher: WorkflowEventPublisher) -> None:
        """Subscribe to a publisher."""
        publisher.subscribe(self.record)

    def detach(self, publisher: WorkflowEventPublisher) -> None:
        """Unsubscribe from a publisher."""
        publisher.unsubscribe(self.record)

    async def record(self, event: WorkflowEvent) -> None:
        """Append one event to the audit trail.

        Args:
            event: Event published by the workflow manager.
        """
        if event.event_type == WorkflowEventType.SCREENSHOT_CAPTURED:
            payload = {k: v for k, v in event.payload.items() if k != "screenshot"}
            event = event.model_copy(update={"payload": payload})
        await self._store.append_event(event)
        logger.debug(
            "workflow_event_recorded",
            extra={"workflow_id": str(event.workflow_id), "event_type": event.event_type.value},
        )
