"""
Error taxonomy for closure execution.

Every error surfaced to callers derives from ClosureError and carries an
ErrorKind, so the API layer and the orchestrator can react on the kind
rather than on concrete classes.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Kinds of errors reported by the service."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PROVISION_FAILED = "provision_failed"
    DISPATCH_FAILED = "dispatch_failed"
    TIMEOUT_EXCEEDED = "timeout_exceeded"
    CREATE_FAILED = "create_failed"
    UNAVAILABLE = "unavailable"


class ClosureError(Exception):
    """Base exception for all closure service errors."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ClosureError):
    """Malformed or incomplete client input. Never mutates persisted state."""

    kind = ErrorKind.VALIDATION


class NotFoundError(ClosureError):
    """A referenced description or resource does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, link: str, message: Optional[str] = None):
        self.link = link
        super().__init__(message or f"Resource not found: {link}")


class ProvisionFailed(ClosureError):
    """Runtime image pull or build failed."""

    kind = ErrorKind.PROVISION_FAILED


class DispatchFailed(ClosureError):
    """The compute host adapter could not be reached or rejected the request."""

    kind = ErrorKind.DISPATCH_FAILED


class TimeoutExceeded(ClosureError):
    """The execution timer fired before the closure completed."""

    kind = ErrorKind.TIMEOUT_EXCEEDED

    def __init__(self, message: str = "execution timeout"):
        super().__init__(message)


class CreateFailed(ClosureError):
    """At least one creation in a batch failed; successful siblings were compensated."""

    kind = ErrorKind.CREATE_FAILED

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.errors = errors or []
        super().__init__(message)


class DocumentNotFoundError(NotFoundError):
    """Raised when a document is not found in the resource store."""


class DocumentExistsError(ValidationError):
    """Raised when creating a document whose link is already taken."""

    def __init__(self, link: str):
        self.link = link
        super().__init__(f"Document already exists: {link}")


class StaleVersionError(Exception):
    """Raised when an update carries a version that is no longer current."""

    def __init__(self, link: str, expected: int, actual: int):
        self.link = link
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale version for {link}: expected {expected}, found {actual}"
        )
