"""Postgres workflow store: CRUD, row-locked updates, and audit events."""

import contextlib
import enum
import logging
import uuid
from collections.abc import Collection, Iterator
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.events import list_workflow_events, log_workflow_event
from src.db.models import SchedulingWorkflow
from src.db.store import Mutation
from src.shared.errors import (
    PersistenceError,
    WorkflowConflictError,
    WorkflowNotFoundError,
)
from src.shared.types import ACTIVE_STATUSES, WorkflowStatus
from src.shared.workflow_models import LockedUpdate, WorkflowEvent, WorkflowRecord

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures as PersistenceError.

    Args:
        operation: Store operation name for the log line.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("workflow_store_failed", extra={"operation": operation}, exc_info=True)
        raise PersistenceError(f"Workflow store {operation} failed: {exc}") from exc


def _status_values(statuses: Collection[WorkflowStatus]) -> list[str]:
    return [WorkflowStatus(s).value for s in statuses]


def _column_values(changes: dict[str, Any]) -> dict[str, Any]:
    """Store enum members by value in plain string columns."""
    return {k: v.value if isinstance(v, enum.Enum) else v for k, v in changes.items()}


class SqlWorkflowStore:
    """Workflow store backed by the scheduling_workflows table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, **fields: Any) -> WorkflowRecord:
        """Insert a new workflow row.

        The partial unique index on call_log_id rejects a second active
        workflow for the same call even when two creates race.

        Args:
            **fields: Column values for the new row.

        Returns:
            Snapshot of the inserted row.

        Raises:
            WorkflowConflictError: If the call already has an active workflow.
        """
        now = datetime.now(UTC)
        with _translate_errors("create"):
            async with self._session_factory() as session:
                try:
                    async with session.begin():
                        row = SchedulingWorkflow(
                            id=uuid.uuid4(),
                            created_at=now,
                            updated_at=now,
                            **_column_values(fields),
                        )
                        session.add(row)
                        await session.flush()
                        record = WorkflowRecord.model_validate(row)
                except IntegrityError as exc:
                    raise WorkflowConflictError(
                        f"Call {fields.get('call_log_id')} already has an active workflow"
                    ) from exc
        return record

    async def get(self, workflow_id: uuid.UUID) -> WorkflowRecord | None:
        """Fetch a workflow by id.

        Args:
            workflow_id: Workflow UUID.

        Returns:
            Snapshot, or None if missing.
        """
        with _translate_errors("get"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(SchedulingWorkflow).where(SchedulingWorkflow.id == workflow_id)
                )
                row = result.scalar_one_or_none()
                return WorkflowRecord.model_validate(row) if row is not None else None

    async def find_active_by_call_log(self, call_log_id: str) -> WorkflowRecord | None:
        """Fetch the non-terminal workflow for a call, if any.

        Args:
            call_log_id: Originating call record id.

        Returns:
            Active workflow snapshot, or None.
        """
        with _translate_errors("find_active_by_call_log"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(SchedulingWorkflow).where(
                        SchedulingWorkflow.call_log_id == call_log_id,
                        SchedulingWorkflow.status.in_(_status_values(ACTIVE_STATUSES)),
                    )
                )
                row = result.scalars().first()
                return WorkflowRecord.model_validate(row) if row is not None else None

    async def update_if(
        self,
        workflow_id: uuid.UUID,
        changes: dict[str, Any],
        *,
        statuses: Collection[WorkflowStatus] | None = None,
        require_no_override: bool = False,
    ) -> WorkflowRecord | None:
        """Apply changes with one conditional UPDATE ... RETURNING.

        Args:
            workflow_id: Workflow UUID.
            changes: Column values to write.
            statuses: Statuses the row must currently be in.
            require_no_override: Skip the write while an operator holds the row.

        Returns:
            Updated snapshot, or None if the row did not match.
        """
        stmt = update(SchedulingWorkflow).where(SchedulingWorkflow.id == workflow_id)
        if statuses is not None:
            stmt = stmt.where(SchedulingWorkflow.status.in_(_status_values(statuses)))
        if require_no_override:
            stmt = stmt.where(SchedulingWorkflow.manual_override_enabled.is_(False))
        stmt = (
            stmt.values(**_column_values(changes), updated_at=datetime.now(UTC))
            .returning(SchedulingWorkflow)
            .execution_options(synchronize_session=False)
        )
        with _translate_errors("update_if"):
            async with self._session_factory() as session, session.begin():
                result = await session.execute(stmt)
                row = result.scalar_one_or_none()
                return WorkflowRecord.model_validate(row) if row is not None else None

    async def update_with_lock(
        self,
        workflow_id: uuid.UUID,
        mutate: Mutation,
    ) -> LockedUpdate:
        """Read-modify-write under SELECT ... FOR UPDATE.

        Args:
            workflow_id: Workflow UUID.
            mutate: Pure function of the locked snapshot returning changes.

        Returns:
            LockedUpdate with the before and after snapshots.

        Raises:
            WorkflowNotFoundError: If no row exists.
        """
        with _translate_errors("update_with_lock"):
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    select(SchedulingWorkflow)
                    .where(SchedulingWorkflow.id == workflow_id)
                    .with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
                previous = WorkflowRecord.model_validate(row)
                changes = mutate(previous)
                if not changes:
                    return LockedUpdate(previous=previous, current=previous, changed=False)
                for field, value in _column_values(changes).items():
                    setattr(row, field, value)
                row.updated_at = datetime.now(UTC)
                await session.flush()
                current = WorkflowRecord.model_validate(row)
        return LockedUpdate(previous=previous, current=current, changed=True)

    async def list_active(self) -> list[WorkflowRecord]:
        """List non-terminal workflows, newest first."""
        with _translate_errors("list_active"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(SchedulingWorkflow)
                    .where(SchedulingWorkflow.status.in_(_status_values(ACTIVE_STATUSES)))
                    .order_by(SchedulingWorkflow.created_at.desc())
                )
                return [WorkflowRecord.model_validate(r) for r in result.scalars().all()]

    async def list_workflows(
        self,
        *,
        status: WorkflowStatus | None = None,
        campaign_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowRecord]:
        """List workflows filtered by status and campaign, newest first.

        Args:
            status: Optional status filter.
            campaign_id: Optional campaign filter.
            limit: Maximum rows to return.

        Returns:
            Matching workflow snapshots.
        """
        stmt = select(SchedulingWorkflow)
        if status is not None:
            stmt = stmt.where(SchedulingWorkflow.status == WorkflowStatus(status).value)
        if campaign_id is not None:
            stmt = stmt.where(SchedulingWorkflow.campaign_id == campaign_id)
        stmt = stmt.order_by(SchedulingWorkflow.created_at.desc()).limit(limit)
        with _translate_errors("list_workflows"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [WorkflowRecord.model_validate(r) for r in result.scalars().all()]

    async def append_event(self, event: WorkflowEvent) -> None:
        """Persist a lifecycle event to the audit table.

        Args:
            event: Event to record.
        """
        with _translate_errors("append_event"):
            async with self._session_factory() as session, session.begin():
                await log_workflow_event(
                    session,
                    workflow_id=event.workflow_id,
                    event_type=event.event_type.value,
                    payload=event.model_dump(mode="json")["payload"],
                    occurred_at=event.occurred_at,
                )

    async def list_events(self, workflow_id: uuid.UUID) -> list[dict[str, Any]]:
        """Return a workflow's audit trail, oldest first.

        Args:
            workflow_id: Workflow UUID.

        Returns:
            Event dicts with type, payload, and timestamp.
        """
        with _translate_errors("list_events"):
            async with self._session_factory() as session:
                rows = await list_workflow_events(session, workflow_id)
        return [
            {
                "event_id": str(row.event_id),
                "event_type": row.event_type,
                "payload": row.payload or {},
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ]
