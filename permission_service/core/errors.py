"""
Error taxonomy for the permission service.

Governance denials are not errors: they are returned as decisions and audited.
Everything below is raised.
"""
from typing import Optional


class PermissionServiceError(Exception):
    """Base class for all service errors."""

    retryable: bool = False

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    default_code = "error"


class NotFoundError(PermissionServiceError):
    """Target entity or assignment does not exist or is soft-deleted."""

    default_code = "not_found"

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} {identifier!r} not found")
        self.kind = kind
        self.identifier = identifier


class ConflictError(PermissionServiceError):
    """An active assignment for the same key already exists, or a concurrent writer won."""

    default_code = "conflict"
    retryable = True


class IdempotencyKeyReusedError(ConflictError):
    """The idempotency key was first used for a different request."""

    default_code = "idempotency_key_reused"
    retryable = False


class StoreUnavailableError(PermissionServiceError):
    """The underlying store failed. Nothing was committed."""

    default_code = "store_unavailable"
    retryable = True


class InvariantViolationError(PermissionServiceError):
    """A programming or configuration error. Never expected in normal operation."""

    default_code = "invariant_violation"
