"""Exception hierarchy for TimeTo.

Every error carries a :class:`~timeto.types.ErrorCategory`; callers choose
their messaging from the category rather than the concrete type.
"""

from __future__ import annotations

from timeto.types import ErrorCategory


class TimetoError(Exception):
    """Base exception for all TimeTo errors."""

    category: ErrorCategory = ErrorCategory.TRY_AGAIN


class ConfigError(TimetoError):
    """Raised when configuration is invalid."""

    category = ErrorCategory.INVALID_INPUT


class AuthenticationRequired(TimetoError):
    """Raised when an operation needs a signed-in user and there is none."""

    category = ErrorCategory.NOT_ALLOWED


class AuthorizationDenied(TimetoError):
    """Raised when the caller's role is insufficient for the operation."""

    category = ErrorCategory.NOT_ALLOWED


class NotFound(TimetoError):
    """Raised when an organization, event, user or lead does not exist."""

    category = ErrorCategory.NOT_FOUND

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ValidationError(TimetoError):
    """Raised when input is missing, malformed or conflicts with existing data."""

    category = ErrorCategory.INVALID_INPUT


class CreationInProgress(TimetoError):
    """Raised when an organization creation is already running for the session."""

    category = ErrorCategory.TRY_AGAIN


class TransientStoreError(TimetoError):
    """Raised when a document or key-value store round trip fails or times out."""

    category = ErrorCategory.TRY_AGAIN


class ConsistencyWarning(TimetoError):
    """Describes a detected divergence between two copies of a membership fact.

    Never raised out of a read path; instances are logged and attached to
    read results so callers can surface them.
    """

    category = ErrorCategory.TRY_AGAIN

    def __init__(self, message: str, *, user_id: str, org_id: str) -> None:
        super().__init__(message)
        self.user_id = user_id
        self.org_id = org_id
