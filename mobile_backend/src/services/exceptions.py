"""
Custom exceptions for service layer.

Provides specific exception types for business logic errors
that can be translated to appropriate HTTP responses.
"""

from typing import Any, Optional


class ServiceError(Exception):
    """Base exception for service layer errors."""
    pass


class NotFoundError(ServiceError):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class ValidationError(ServiceError):
    """Raised when input validation fails."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class AuthorizationError(ServiceError):
    """Raised when the caller may not perform the operation."""

    def __init__(self, message: str = "Authentication required"):
        self.message = message
        super().__init__(message)


class TransientQueueError(ServiceError):
    """
    Raised when the task queue could not be reached.

    Leasing and deleting are retried with backoff on this error;
    it never means the tasks themselves are bad.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = f"Task queue {operation} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
