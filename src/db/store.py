"""Workflow store contract shared by the Postgres and in-memory backends."""

import uuid
from collections.abc import Callable, Collection
from typing import Any, Protocol

from src.shared.types import WorkflowStatus
from src.shared.workflow_models import LockedUpdate, WorkflowEvent, WorkflowRecord

Mutation = Callable[[WorkflowRecord], dict[str, Any]]


class WorkflowStore(Protocol):
    """Durable table of scheduling workflows.

    update_with_lock is the strict path for operator commands and
    terminal transitions: the mutation runs against a row-locked
    snapshot and its result is written in the same transaction. A
    mutation may raise to abort without writing, or return {} to
    leave the row untouched.

    update_if is the light path for frequent automation writes: a
    single conditional UPDATE that returns None when the row no longer
    matches the expected statuses or an operator override is active.
    """

    async def create(self, **fields: Any) -> WorkflowRecord: ...

    async def get(self, workflow_id: uuid.UUID) -> WorkflowRecord | None: ...

    async def find_active_by_call_log(self, call_log_id: str) -> WorkflowRecord | None: ...

    async def update_if(
        self,
        workflow_id: uuid.UUID,
        changes: dict[str, Any],
        *,
        statuses: Collection[WorkflowStatus] | None = None,
        require_no_override: bool = False,
    ) -> WorkflowRecord | None: ...

    async def update_with_lock(
        self,
        workflow_id: uuid.UUID,
        mutate: Mutation,
    ) -> LockedUpdate: ...

    async def list_active(self) -> list[WorkflowRecord]: ...

    async def list_workflows(
        self,
        *,
        status: WorkflowStatus | None = None,
        campaign_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowRecord]: ...

    async def append_event(self, event: WorkflowEvent) -> None: ...

    async def list_events(self, workflow_id: uuid.UUID) -> list[dict[str, Any]]: ...
