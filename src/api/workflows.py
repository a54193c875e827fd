"""Operator REST API and WebSocket feed for scheduling workflows.

Monitoring views list active and historical workflows; operator
commands (pause, resume, cancel, PATCH) run through the manager's
row-locked path. The voice webhook relays spoken passcodes here.
"""

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from src.api.event_bus import WorkflowEventBroadcaster
from src.services.workflow_manager import SchedulingWorkflowManager
from src.shared.errors import (
    OTPRequestConflictError,
    PersistenceError,
    WorkflowConflictError,
    WorkflowError,
    WorkflowNotFoundError,
    WorkflowOverrideActiveError,
    WorkflowTerminalError,
    WorkflowValidationError,
)
from src.shared.validators import normalize_otp
from src.shared.workflow_models import OperatorUpdate
from src.shared.workflow_state import parse_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scheduling-workflows", tags=["scheduling-workflows"])
ws_router = APIRouter(tags=["websocket"])


# --- Request Models ---


class OperatorPatchRequest(BaseModel):
    """PATCH body for operator changes.

    Attributes:
        operator_id: Operator performing the change.
        status: Target status; validated against the allow-list.
        manual_override_enabled: True to pause, False to resume.
        operator_notes: Free-text notes for the record.
    """

    model_config = ConfigDict(extra="forbid")

    operator_id: str = Field(min_length=1)
    status: str | None = None
    manual_override_enabled: bool | None = None
    operator_notes: str | None = None


class OperatorActionRequest(BaseModel):
    """Body for pause, resume, and cancel."""

    operator_id: str = Field(min_length=1)
    notes: str | None = None


class OTPRelayRequest(BaseModel):
    """Passcode as transcribed from the caller's speech."""

    otp: str


# --- Dependencies ---


def get_workflow_manager(request: Request) -> SchedulingWorkflowManager:
    """Return the manager built at application startup."""
    return request.app.state.workflow_manager


# --- Error Mapping ---

_STATUS_CODES: list[tuple[type[WorkflowError], int]] = [
    (WorkflowNotFoundError, 404),
    (WorkflowConflictError, 409),
    (OTPRequestConflictError, 409),
    (WorkflowTerminalError, 409),
    (WorkflowOverrideActiveError, 409),
    (WorkflowValidationError, 400),
    (PersistenceError, 503),
]


def status_code_for(exc: WorkflowError) -> int:
    """Map a workflow error to its HTTP status code.

    Args:
        exc: Error raised by the manager or store.

    Returns:
        HTTP status code; 500 for unmapped errors.
    """
    for error_type, code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return 500


async def _workflow_error_handler(request: Request, exc: Exception) -> JSONResponse:
    code = status_code_for(exc) if isinstance(exc, WorkflowError) else 500
    if code >= 500:
        logger.error(
            "workflow_api_error",
            extra={"path": request.url.path, "error": str(exc)},
        )
    return JSONResponse(
        status_code=code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the workflow error to HTTP response mapping."""
    app.add_exception_handler(WorkflowError, _workflow_error_handler)


# --- Monitoring ---


@router.get("/active")
async def list_active_workflows(
    manager: SchedulingWorkflowManager = Depends(get_workflow_manager),
) -> list[dict[str, Any]]:
    """List non-terminal workflows for the live monitor.

    Args:
        manager: Injected workflow manager.

    Returns:
        Workflow summaries without screenshot images.
    """
    records = await manager.list_active_workflows()
    return [r.summary() for r in records]


@router.get("")
async def list_workflows(
    status: str | None = None,
    campaign_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    manager: SchedulingWorkflowManager = Depends(get_workflow_manager),
) -> list[dict[str, Any]]:
    """List workflows filtered by status and campaign.

    Args:
        status: Status filter; must be a known status.
        campaign_id: Campaign filter.
        limit: Maximum rows returned.
        manager: Injected workflow manager.

    Returns:
        Workflow summaries, newest first.
    """
    records = await manager.list_workflows(
        status=status, campaign_id=campaign_id, limit=limit
    )
    return [r.summary() for r in records]


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: uuid.UUID,
    manager: SchedulingWorkflowManager = Depends(get_workflow_manager),
) -> dict[str, Any]:
    """Return one workflow with its screenshots and audit trail.

    Args:
        workflow_id: Workflow UUID.
        manager: Injected workflow manager.

    Returns:
        Full workflow dict with an events list.
    """
    record = await manager.get_workflow(workflow_id)
    if record is None:
        raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
    data = record.model_dump(mode="json")
    data["otp_pending"] = manager.otp.has_pending(workflow_id)
    data["events"] = await manager.list_workflow_events(workflow_id)
    return data


# --- Operator Commands ---


@router.patch("/{workflow_id}")
async def patch_workflow(
    workflow_id: uuid.UUID,
    request: OperatorPatchRequest,
    manager: SchedulingWorkflowManager = Depends(get_workflow_manager),
) -> dict[str, Any]:
    """Apply operator changes to a workflow under the row lock.

    Args:
        workflow_id: Workflow UUID.
        request: Operator identity and requested changes.
        manager: Injected workflow manager.

    Returns:
        Updated workflow summary.
    """
    update = OperatorUpdate(
        status=parse_status(request.status) if request.status is not None else None,
        manual_override_enabled=request.manual_override_enabled,
        operator_notes=request.operator_notes,
    )
    record = await manager.apply_operator_update(workflow_id, request.operator_id, update)
    return record.summary()


@router.post("/{workflow_id}/pause")
async def pause_workflow(
    workflow_id: uuid.UUID,
    request: OperatorActionRequest,
    manager: SchedulingWorkflowManager = Depends(get_workflow_manager),
) -> dict[str, Any]:
    """Take manual control of a workflow."""
    record = await manager.enable_manual_override(
        workflow_id, request.operator_id, request.notes
    )
    return record.summary()


@router.post("/{workflow_id}/resume")
async def resume_workflow(
    workflow_id: uuid.UUID,
    request: OperatorActionRequest,
    manager: SchedulingWorkflowManager = Depends(get_workflow_manager),
) -> dict[str, Any]:
    """Hand a paused workflow back to automation."""
    record = await manager.resume_workflow(workflow_id, request.operator_id)
    return record.summary()


@router.post("/{workflow_id}/cancel")
async def cancel_workflow(
    workflow_id: uuid.UUID,
    request: OperatorActionRequest,
    manager: SchedulingWorkflowManager = Depends(get_workflow_manager),
) -> dict[str, Any]:
    """Cancel a workflow; an already-finished one is returned unchanged."""
    record = await manager.cancel_workflow(
        workflow_id, request.operator_id, request.notes
    )
    return record.summary()


@router.post("/{workflow_id}/otp")
async def relay_otp(
    workflow_id: uuid.UUID,
    request: OTPRelayRequest,
    manager: SchedulingWorkflowManager = Depends(get_workflow_manager),
) -> dict[str, Any]:
    """Relay the passcode the caller read aloud.

    Args:
        workflow_id: Workflow UUID.
        request: Transcribed passcode.
        manager: Injected workflow manager.

    Returns:
        Dict with accepted flag; false when no request was pending.
    """
    otp = normalize_otp(request.otp)
    if otp is None:
        raise WorkflowValidationError("OTP must contain 6 digits")
    accepted = await manager.submit_otp(workflow_id, otp)
    return {"workflow_id": str(workflow_id), "accepted": accepted}


# --- WebSocket ---


@ws_router.websocket("/ws/workflow-events")
async def websocket_workflow_events(websocket: WebSocket) -> None:
    """Real-time workflow event stream via WebSocket.

    Args:
        websocket: Incoming WebSocket connection.
    """
    broadcaster: WorkflowEventBroadcaster = websocket.app.state.event_broadcaster
    await websocket.accept()
    broadcaster.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        broadcaster.disconnect(websocket)
