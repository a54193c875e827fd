"""Pydantic response models returned to the call-handling agent.

Each model defines the typed contract for a scheduling helper,
replacing raw dict returns with validated Pydantic models.

All models support dict-style access (result["key"] and "key" in result)
so tool adapters can treat them like plain dicts.
"""

from collections.abc import Iterator
from typing import Any

from pydantic import BaseModel

from src.shared.types import WorkflowStatus


class AgentResult(BaseModel):
    """Base model with dict-compatible access.

    Supports: result["key"], "key" in result, result.get("key"),
    {**result}, and dict(result).
    """

    def __getitem__(self, key: str) -> Any:
        """Support dict-style subscript access.

        Args:
            key: Field name to retrieve.

        Returns:
            Field value.

        Raises:
            AttributeError: If key is not a valid field name.
        """
        return getattr(self, key)

    def __contains__(self, key: str) -> bool:
        """Support 'key in result' membership test.

        Args:
            key: Field name to check.

        Returns:
            True if key is a model field with a non-None value.
        """
        if key not in type(self).model_fields:
            return False
        return getattr(self, key) is not None

    def get(self, key: str, default: Any = None) -> Any:
        """Retrieve a field value by name with an optional default.

        Args:
            key: Field name to look up.
            default: Value to return if key is not a model field.

        Returns:
            Field value if key exists, otherwise default.
        """
        if key in type(self).model_fields:
            return getattr(self, key)
        return default

    def keys(self) -> list[str]:
        """Return all field names for dict unpacking support.

        Returns:
            List of model field name strings.
        """
        return list(type(self).model_fields.keys())

    def __iter__(self) -> Iterator[str]:  # type: ignore[override]
        """Iterate over field names for dict() and {**} unpacking."""
        return iter(type(self).model_fields.keys())


class FallbackResult(AgentResult):
    """Manual scheduling hand-off issued when automation cannot finish."""

    workflow_id: str
    fallback_link_sent: bool
    link: str = ""
    message: str = ""
    reason: str = ""


class SessionOutcome(AgentResult):
    """Final result of one form-filling session."""

    workflow_id: str
    success: bool
    status: WorkflowStatus | None = None
    confirmation_number: str | None = None
    appointment_details: dict[str, Any] | None = None
    error: str | None = None
    halted: bool = False
    handed_to_operator: bool = False
    fallback: FallbackResult | None = None


class SchedulingStartResult(AgentResult):
    """Result of starting a scheduling session during a call."""

    started: bool
    workflow_id: str | None = None
    otp_wait_seconds: float = 0.0
    message: str = ""
    error: str | None = None
    fallback_link: str | None = None


class OTPSubmissionResult(AgentResult):
    """Result of relaying a spoken passcode to the pending session."""

    accepted: bool
    workflow_id: str | None = None
    message: str = ""
    error: str | None = None


class SessionStatusResult(AgentResult):
    """Conversational view of a call's scheduling session."""

    found: bool
    workflow_id: str | None = None
    status: WorkflowStatus | None = None
    current_step: str | None = None
    otp_pending: bool = False
    manual_override_enabled: bool = False
    confirmation_number: str | None = None
    fallback_link_sent: bool = False
