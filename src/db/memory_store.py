"""In-process workflow store for local demos and tests.

Mirrors the Postgres store's guarantees inside one event loop: a
per-row asyncio.Lock stands in for SELECT ... FOR UPDATE, and plain
conditional updates wait on the same lock just as a Postgres UPDATE
waits on a row held FOR UPDATE. Nothing survives a restart.
"""

import asyncio
import contextlib
import logging
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator, Collection
from datetime import UTC, datetime
from typing import Any

from src.db.store import Mutation
from src.shared.errors import WorkflowConflictError, WorkflowNotFoundError
from src.shared.types import ACTIVE_STATUSES, WorkflowStatus
from src.shared.workflow_models import LockedUpdate, WorkflowEvent, WorkflowRecord

logger = logging.getLogger(__name__)


class InMemoryWorkflowStore:
    """Workflow store holding records in a dict keyed by workflow id."""

    def __init__(self) -> None:
        self._records: dict[uuid.UUID, WorkflowRecord] = {}
        self._row_locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._lock_users: defaultdict[uuid.UUID, int] = defaultdict(int)
        self._create_lock = asyncio.Lock()
        self._events: defaultdict[uuid.UUID, list[dict[str, Any]]] = defaultdict(list)

    async def create(self, **fields: Any) -> WorkflowRecord:
        """Insert a new workflow, enforcing one active workflow per call.

        Raises:
            WorkflowConflictError: If the call already has an active workflow.
        """
        async with self._create_lock:
            call_log_id = fields.get("call_log_id")
            if self._find_active(call_log_id) is not None:
                raise WorkflowConflictError(
                    f"Call {call_log_id} already has an active workflow"
                )
            now = datetime.now(UTC)
            record = WorkflowRecord(
                id=uuid.uuid4(),
                created_at=now,
                updated_at=now,
                **fields,
            )
            self._records[record.id] = record
        return record

    async def get(self, workflow_id: uuid.UUID) -> WorkflowRecord | None:
        """Fetch a workflow by id."""
        return self._records.get(workflow_id)

    async def find_active_by_call_log(self, call_log_id: str) -> WorkflowRecord | None:
        """Fetch the non-terminal workflow for a call, if any."""
        return self._find_active(call_log_id)

    async def update_if(
        self,
        workflow_id: uuid.UUID,
        changes: dict[str, Any],
        *,
        statuses: Collection[WorkflowStatus] | None = None,
        require_no_override: bool = False,
    ) -> WorkflowRecord | None:
        """Apply changes only if the row matches the conditions.

        Returns:
            Updated snapshot, or None if the row did not match.
        """
        async with self._row_lock(workflow_id):
            record = self._records.get(workflow_id)
            if record is None:
                return None
            if statuses is not None and record.status not in set(statuses):
                return None
            if require_no_override and record.manual_override_enabled:
                return None
            return self._write(record, changes)

    async def update_with_lock(
        self,
        workflow_id: uuid.UUID,
        mutate: Mutation,
    ) -> LockedUpdate:
        """Read-modify-write while holding the row lock.

        Raises:
            WorkflowNotFoundError: If no row exists.
        """
        async with self._row_lock(workflow_id):
            previous = self._records.get(workflow_id)
            if previous is None:
                raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
            changes = mutate(previous)
            if not changes:
                return LockedUpdate(previous=previous, current=previous, changed=False)
            current = self._write(previous, changes)
        return LockedUpdate(previous=previous, current=current, changed=True)

    async def list_active(self) -> list[WorkflowRecord]:
        """List non-terminal workflows, newest first."""
        return self._newest_first(
            r for r in self._records.values() if r.status in ACTIVE_STATUSES
        )

    async def list_workflows(
        self,
        *,
        status: WorkflowStatus | None = None,
        campaign_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowRecord]:
        """List workflows filtered by status and campaign, newest first."""
        rows = (
            r
            for r in self._records.values()
            if (status is None or r.status == status)
            and (campaign_id is None or r.campaign_id == campaign_id)
        )
        return self._newest_first(rows)[:limit]

    async def append_event(self, event: WorkflowEvent) -> None:
        """Record a lifecycle event in the in-memory audit trail."""
        self._events[event.workflow_id].append({
            "event_id": str(uuid.uuid4()),
            "event_type": event.event_type.value,
            "payload": event.model_dump(mode="json")["payload"],
            "created_at": event.occurred_at.isoformat(),
        })

    async def list_events(self, workflow_id: uuid.UUID) -> list[dict[str, Any]]:
        """Return a workflow's audit trail, oldest first."""
        return list(self._events.get(workflow_id, []))

    @contextlib.asynccontextmanager
    async def _row_lock(self, workflow_id: uuid.UUID) -> AsyncIterator[None]:
        """Hold the row lock; the lock is dropped once nobody uses it."""
        lock = self._row_locks.setdefault(workflow_id, asyncio.Lock())
        self._lock_users[workflow_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[workflow_id] -= 1
            if not self._lock_users[workflow_id]:
                del self._lock_users[workflow_id]
                del self._row_locks[workflow_id]

    def _find_active(self, call_log_id: str | None) -> WorkflowRecord | None:
        for record in self._records.values():
            if record.call_log_id == call_log_id and record.status in ACTIVE_STATUSES:
                return record
        return None

    def _write(self, record: WorkflowRecord, changes: dict[str, Any]) -> WorkflowRecord:
        merged = {**record.model_dump(), **changes, "updated_at": datetime.now(UTC)}
        updated = WorkflowRecord.model_validate(merged)
        self._records[record.id] = updated
        return updated

    @staticmethod
    def _newest_first(rows: Any) -> list[WorkflowRecord]:
        return sorted(
            rows,
            key=lambda r: r.created_at or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )
