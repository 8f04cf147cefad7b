"""
Failure taxonomy for TaskHub operations.

Every lifecycle operation reports failure by raising one of these exceptions.
The HTTP boundary maps them to status codes; nothing below the boundary
knows about HTTP.
"""

from typing import Any, Dict, Optional


class TaskHubError(Exception):
    """Base exception for all TaskHub domain failures."""

    status_code = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(TaskHubError):
    """Raised when input is missing or malformed."""

    status_code = 400


class Unauthenticated(TaskHubError):
    """Raised when a credential cannot be resolved to a known user."""

    status_code = 401


class AccessDenied(TaskHubError):
    """Raised when the authorization policy denies an operation."""

    status_code = 403

    def __init__(self, message: str = "Access denied", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class NotFound(TaskHubError):
    """Raised when a referenced entity does not exist."""

    status_code = 404

    def __init__(self, entity_type: str, identifier: Any) -> None:
        super().__init__(
            f"{entity_type} not found",
            details={"entity_type": entity_type, "identifier": identifier},
        )


class Conflict(TaskHubError):
    """Raised when an operation would duplicate existing state."""

    status_code = 409


class DependencyFailure(TaskHubError):
    """
    Raised when the entity store or identity backend fails.

    The message is deliberately opaque; the underlying cause is logged where
    the failure is translated and chained as ``__cause__``.
    """

    status_code = 500

    def __init__(self, operation: str) -> None:
        super().__init__("Internal server error", details={"operation": operation})
        self.operation = operation
