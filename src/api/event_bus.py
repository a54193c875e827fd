"""WebSocket fan-out of workflow events to monitoring dashboards.

The broadcaster subscribes to the manager's publisher and forwards
each lifecycle event to every connected client. Disconnected clients
are cleaned up automatically.
"""

import json
import logging
from typing import Any

from fastapi import WebSocket

from src.shared.serialization import make_json_safe
from src.shared.workflow_models import WorkflowEvent

logger = logging.getLogger(__name__)


class WorkflowEventBroadcaster:
    """Connected WebSocket clients and the broadcast to them."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()

    def connect(self, websocket: WebSocket) -> None:
        """Register a WebSocket client for event broadcasts.

        Args:
            websocket: The WebSocket connection to add.
        """
        self._clients.add(websocket)
        logger.info("ws_client_connected", extra={"total": len(self._clients)})

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket client from the broadcast set.

        Args:
            websocket: The WebSocket connection to remove.
        """
        self._clients.discard(websocket)
        logger.info("ws_client_disconnected", extra={"total": len(self._clients)})

    @property
    def clients(self) -> set[WebSocket]:
        """Currently connected clients."""
        return self._clients

    async def on_event(self, event: WorkflowEvent) -> None:
        """Publisher listener forwarding a lifecycle event."""
        await self.broadcast(event.to_message())

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Send a message to all connected WebSocket clients.

        Sanitizes the message to ensure JSON serializability before
        sending. Clients that fail to receive are logged and removed.

        Args:
            message: Envelope to send (sanitized before sending).
        """
        safe_data = make_json_safe(message)
        try:
            json.dumps(safe_data)
        except (TypeError, ValueError):
            logger.error(
                "broadcast_payload_not_serializable",
                extra={"event_type": message.get("data", {}).get("event_type")},
            )
            return

        dead: list[WebSocket] = []
        for ws in list(self._clients):
            try:
                await ws.send_json(safe_data)
            except Exception:
                logger.warning("ws_client_send_failed, removing", exc_info=True)
                dead.append(ws)
        for ws in dead:
            self._clients.discard(ws)
