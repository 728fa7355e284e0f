"""Custom exceptions for the credentialing workflow engine."""

from typing import Optional


class WorkflowError(Exception):
    """Base exception for the workflow engine."""

    transient = False

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

    @property
    def error_code(self) -> str:
        return type(self).__name__


class NotFoundError(WorkflowError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ValidationError(WorkflowError):
    """Validation error exception.

    Carries the individual violations when a definition is rejected.
    """

    def __init__(self, message: str = "Validation failed", violations: Optional[list[str]] = None):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422)
        self.violations = list(violations or [])


class ConflictError(WorkflowError):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


# ─── Engine errors ─────────────────────────────────────────────

class MalformedDefinition(WorkflowError):
    """A definition references a node, edge or config field that does not exist."""

    def __init__(self, message: str = "Malformed workflow definition", violations: Optional[list[str]] = None):
        super().__init__(message, 422)
        self.violations = list(violations or [])


class NoMatchingBranch(WorkflowError):
    """No guard matched and the node has no unguarded default edge."""

    def __init__(self, message: str = "No matching branch"):
        super().__init__(message, 422)


class GatewayUnavailable(WorkflowError):
    """An external collaborator could not be reached. Retried by the dispatcher."""

    transient = True

    def __init__(self, message: str = "Gateway unavailable"):
        super().__init__(message, 503)


class GatewayRejected(WorkflowError):
    """An external collaborator refused the request outright (4xx). Not retried."""

    def __init__(self, message: str = "Gateway rejected the request"):
        super().__init__(message, 422)


class InvalidExpression(WorkflowError):
    """A guard expression is malformed or uses a forbidden construct."""

    def __init__(self, message: str = "Invalid expression"):
        super().__init__(message, 422)


class EvaluationTimeout(WorkflowError):
    """A guard expression exceeded its evaluation budget."""

    def __init__(self, message: str = "Expression evaluation timed out"):
        super().__init__(message, 422)


class NotAwaitingDecision(WorkflowError):
    """The step is not waiting for an external decision."""

    def __init__(self, message: str = "Step is not awaiting a decision"):
        super().__init__(message, 409)


class RetryLimitExceeded(WorkflowError):
    """The subject used up its business-level retries."""

    def __init__(self, message: str = "Retry limit exceeded"):
        super().__init__(message, 429)


class InvalidTransition(WorkflowError):
    """A status change not allowed by the transition table."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"Invalid {entity} transition: {current} -> {target}", 409)
        self.entity = entity
        self.current = current
        self.target = target


FATAL_EXECUTION_ERRORS = (
    MalformedDefinition,
    NoMatchingBranch,
    InvalidExpression,
    EvaluationTimeout,
    GatewayRejected,
)
