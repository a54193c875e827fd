"""Tests for append-only workflow event logging."""

import uuid
from unittest.mock import AsyncMock, MagicMock

from src.db.events import log_workflow_event
from src.db.models import WorkflowEventLog


def _session(existing=None) -> MagicMock:
    session = MagicMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = existing
    session.execute = AsyncMock(return_value=result)
    session.flush = AsyncMock()
    return session


class TestLogWorkflowEvent:
    """Event rows and idempotency."""

    async def test_adds_row(self) -> None:
        session = _session()
        workflow_id = uuid.uuid4()
        row = await log_workflow_event(
            session,
            workflow_id=workflow_id,
            event_type="status_changed",
            payload={"status": "failed"},
        )
        assert isinstance(row, WorkflowEventLog)
        assert row.workflow_id == workflow_id
        assert row.payload == {"status": "failed"}
        assert row.created_at is not None
        session.add.assert_called_once_with(row)
        session.execute.assert_not_awaited()

    async def test_duplicate_key_skipped(self) -> None:
        """A redelivered event with a known key writes nothing."""
        session = _session(existing=MagicMock())
        row = await log_workflow_event(
            session,
            workflow_id=uuid.uuid4(),
            event_type="status_changed",
            idempotency_key="wf-1:status_changed:failed",
        )
        assert row is None
        session.add.assert_not_called()
