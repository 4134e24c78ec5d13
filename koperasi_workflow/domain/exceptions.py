"""Domain-specific exceptions"""

from typing import Any, Dict


class DomainException(Exception):
    """Base exception for domain layer"""

    category = "domain_error"
    retryable = False


class ValidationError(DomainException):
    """Input payload is malformed or outside the configured bounds"""

    category = "invalid_input"


class NotFoundError(DomainException):
    """Referenced application does not exist"""

    category = "not_found"


class InvalidStateError(DomainException):
    """Operation is not allowed from the application's current status or step"""

    category = "invalid_state"


class AuthorizationError(DomainException):
    """Actor is not allowed to act on the application at its current step"""

    category = "forbidden"


class ConflictError(InvalidStateError):
    """Application changed between read and write (lost compare-and-set)"""

    category = "conflict"
    retryable = True


def error_payload(exc: DomainException) -> Dict[str, Any]:
    """Flatten a domain error into the shape callers show to users"""
    return {
        "category": exc.category,
        "message": str(exc),
        "retryable": exc.retryable,
    }
