"""Append-only workflow event logging with idempotency key enforcement."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import WorkflowEventLog


async def log_workflow_event(
    session: AsyncSession,
    *,
    workflow_id: uuid.UUID,
    event_type: str,
    payload: dict | None = None,
    idempotency_key: str | None = None,
    occurred_at: datetime | None = None,
) -> WorkflowEventLog | None:
    """Log an event to the append-only workflow events table.

    If an idempotency_key is provided and already exists, the event is
    silently skipped (returns None).

    Args:
        session: Active database session.
        workflow_id: Workflow this event belongs to.
        event_type: Lifecycle event name (e.g. "status_changed").
        payload: Event-specific data.
        idempotency_key: Unique key to prevent duplicate rows.
        occurred_at: When the event happened; defaults to now.

    Returns:
        The created row, or None if deduplicated.
    """
    if idempotency_key:
        existing = await session.execute(
            select(WorkflowEventLog).where(
                WorkflowEventLog.idempotency_key == idempotency_key
            )
        )
        if existing.scalar_one_or_none() is not None:
            return None

    event = WorkflowEventLog(
        event_id=uuid.uuid4(),
        workflow_id=workflow_id,
        event_type=event_type,
        payload=payload or {},
        idempotency_key=idempotency_key,
        created_at=occurred_at or datetime.now(UTC),
    )
    session.add(event)
    await session.flush()
    return event


async def list_workflow_events(
    session: AsyncSession,
    workflow_id: uuid.UUID,
) -> list[WorkflowEventLog]:
    """Return a workflow's audit trail, oldest first.

    Args:
        session: Active database session.
        workflow_id: Workflow UUID.

    Returns:
        Event rows ordered by creation time.
    """
    result = await session.execute(
        select(WorkflowEventLog)
        .where(WorkflowEventLog.workflow_id == workflow_id)
        .order_by(WorkflowEventLog.created_at)
    )
    return list(result.scalars().all())
