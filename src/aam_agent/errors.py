from __future__ import annotations


class AgentError(RuntimeError):
    """Base class for failures surfaced by the agent core."""


class AuthError(AgentError):
    """API key rejected locally or by the project identity call."""


class ScopeMismatchError(AgentError):
    def __init__(self, *, expected_project_id: str, actual_project_id: str) -> None:
        super().__init__(
            f"Project guardrail failed. Expected {expected_project_id} "
            f"but key is scoped to {actual_project_id}."
        )
        self.expected_project_id = expected_project_id
        self.actual_project_id = actual_project_id


class TransientError(AgentError):
    """Retryable failure that outlived the retry budget."""

    def __init__(self, message: str, *, attempts: int, status: int | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.status = status


class ValidationError(AgentError):
    """Non-retryable rejection, either local or a 4xx from the service."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class InvalidCursorError(ValidationError):
    """The service no longer recognizes the stored cursor."""


class HandlerError(AgentError):
    def __init__(self, *, activity_id: str, kind: str, cause: BaseException) -> None:
        super().__init__(f"Handler for activity {activity_id} ({kind}) failed: {cause}")
        self.activity_id = activity_id
        self.kind = kind
        self.cause = cause


class StopRequested(AgentError):
    """Raised when the stop event fires while the agent is waiting.

    `attempts` counts the requests already sent for the interrupted operation.
    """

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts
