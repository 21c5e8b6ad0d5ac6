"""Error taxonomy for account lifecycle orchestration.

ValidationError and TerminalExternalError end a request in Failed.
ConflictError means a compare-and-swap lost a race; the caller refetches.
TransientExternalError is retried with backoff up to the retry cap.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    pass


class ValidationError(OrchestratorError):
    """Raised when a request is malformed or conflicts with existing state.

    Attributes:
        code: Machine readable reason (e.g. "duplicate_email").
        request_id: The request being validated, when it has one.
    """

    def __init__(self, message: str, code: str, request_id: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.request_id = request_id


class ConflictError(OrchestratorError):
    """Raised when an optimistic state update sees a different persisted state."""

    def __init__(self, request_id: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Request {request_id} is in state {actual}, expected {expected}"
        )
        self.request_id = request_id
        self.expected = expected
        self.actual = actual


class RequestNotFoundError(OrchestratorError):
    """Raised when a request id is not in the store."""

    pass


class InvalidTransitionError(OrchestratorError):
    """Raised when a transition is not allowed by the lifecycle state machine."""

    pass


class ExternalError(OrchestratorError):
    """Base class for failures reported by an external collaborator."""

    def __init__(self, message: str, operation: str = "") -> None:
        super().__init__(message)
        self.operation = operation


class TransientExternalError(ExternalError):
    """Network, timeout or throttling failure. Safe to retry."""

    pass


class TerminalExternalError(ExternalError):
    """Non-retryable collaborator failure (e.g. email already registered)."""

    pass


class RetryExhaustedError(ExternalError):
    """Raised when a transient failure persists past the retry cap.

    Attributes:
        attempts: Number of attempts made.
        last_error: The last transient error seen.
    """

    def __init__(self, message: str, operation: str, attempts: int, last_error: Exception) -> None:
        super().__init__(message, operation)
        self.attempts = attempts
        self.last_error = last_error


# Codes carried by ValidationError
VALIDATION_CODES: frozenset[str] = frozenset(
    {
        "missing_field",
        "invalid_email",
        "duplicate_email",
        "duplicate_id",
        "unknown_ou",
        "unknown_account",
        "already_managed",
    }
)
