"""
Exceptional conditions raised by the guard.

Business-rule violations are not exceptions; they come back as deny
decisions. These classes cover what a deny value cannot: a caller with no
usable identity, a lost write race and an unreachable database.
"""
from typing import Optional


class GuardError(Exception):
    """Base class for guard exceptions"""

    code = "Error"

    def __init__(self, message: str, resource_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.resource_id = resource_id


class UnauthenticatedError(GuardError):
    code = "Unauthenticated"


class NotFoundError(GuardError):
    code = "NotFound"


class ConflictError(GuardError):
    """Another writer committed first"""

    code = "Conflict"


class PersistenceUnavailableError(GuardError):
    """Database unreachable or timed out. Safe to retry."""

    code = "IoError"
    retryable = True
