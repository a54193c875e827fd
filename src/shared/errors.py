"""Error taxonomy for scheduling workflows.

Validation errors are rejected before any mutation and map to 4xx
responses on the operator API. Timeouts end a single OTP attempt.
Automation errors end the session and route to fallback. Persistence
errors come from the workflow store and are never retried here.
"""


class WorkflowError(Exception):
    """Base class for all workflow orchestration errors."""


class WorkflowValidationError(WorkflowError, ValueError):
    """Invalid status value or operator action; the record is unchanged."""


class WorkflowConflictError(WorkflowValidationError):
    """An active workflow already exists for the same call."""


class OTPRequestConflictError(WorkflowValidationError):
    """An OTP request is already pending for the workflow."""


class WorkflowTerminalError(WorkflowValidationError):
    """Mutation attempted on a completed, failed, or cancelled workflow."""


class WorkflowOverrideActiveError(WorkflowValidationError):
    """Automation mutation attempted while an operator holds the workflow."""


class WorkflowNotFoundError(WorkflowError, LookupError):
    """No workflow exists with the given identifier."""


class OTPTimeoutError(WorkflowError, TimeoutError):
    """The caller did not relay an OTP within the wait window."""


class OTPCancelledError(WorkflowError):
    """The pending OTP wait was torn down before an OTP arrived."""


class AutomationError(WorkflowError):
    """The automation driver could not complete a form step."""


class OTPAttemptsExhaustedError(AutomationError):
    """Every allowed OTP attempt timed out."""


class PersistenceError(WorkflowError):
    """The workflow store failed to read or write a record."""
