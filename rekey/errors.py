"""
Rekey error taxonomy.

Every failure the rotation protocol reports carries a machine-readable code
and the HTTP status class it maps to at the transport boundary.
"""

from typing import Optional


class RotationError(Exception):
    """Base class for errors reported to rotation callers."""

    code = "rotation_error"
    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        """Render the error as a wire response body."""
        return {"success": False, "error": self.message, "code": self.code}


class AuthenticationError(RotationError):
    """Missing or invalid caller credential."""

    code = "unauthorized"
    status_code = 401


class ValidationError(RotationError):
    """Malformed input or a claim that does not match the ticket."""

    code = "invalid_request"
    status_code = 400


class StateConflictError(RotationError):
    """Ticket is not in the status the requested transition needs."""

    code = "already_finalized"
    status_code = 400


class NotFoundError(RotationError):
    """Ticket does not exist or belongs to another owner."""

    code = "not_found"
    status_code = 404


class PolicyDeniedError(RotationError):
    """Request is forbidden by policy (namespace allowlist, rollback window)."""

    code = "policy_denied"
    status_code = 403


class RateLimitedError(RotationError):
    """Caller must wait before trying again."""

    code = "throttled"
    status_code = 429

    def __init__(self, message: str, code: Optional[str] = None, retry_after: float = 0.0):
        super().__init__(message, code)
        self.retry_after = max(0.0, retry_after)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retryAfter"] = int(self.retry_after + 0.999)
        return body


class PersistenceError(RotationError):
    """The transactional boundary could not commit. Safe to retry."""

    code = "persistence_failure"
    status_code = 500

    def __init__(self, message: str = "Storage temporarily unavailable"):
        super().__init__(message)


# =============================================================================
# Backend-level errors (never surfaced to callers directly)
# =============================================================================


class BackendError(Exception):
    """A storage backend failed to read or write."""


class TicketConflictError(BackendError):
    """
    A precondition of a compound commit no longer holds.

    Attributes:
        reason: Short machine reason, e.g. ``"not_pending"`` or ``"key_changed"``.
    """

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or reason)
        self.reason = reason
