"""
Error taxonomy shared by the ledgers, the checkout workflow and the API layer.

Core operations raise only these; the API translates them into responses
through the handlers registered in main.py.
"""

from typing import Any, Dict, Optional


class CraftNestError(Exception):
    kind = "error"
    status_code = 500
    public_message: Optional[str] = None

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "detail": self.public_message or self.message,
            "kind": self.kind,
        }
        if self.field:
            body["field"] = self.field
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CraftNestError):
    """Malformed or incomplete input. Never retried."""

    kind = "validation_error"
    status_code = 400


class NotFoundError(CraftNestError):
    kind = "not_found"
    status_code = 404


class InvalidTransitionError(CraftNestError):
    """Requested order status change is not an edge of the state machine."""

    kind = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, requested: str, allowed=()):
        allowed = sorted(allowed)
        if allowed:
            message = f"Cannot move order from '{current}' to '{requested}'; allowed: {', '.join(allowed)}"
        else:
            message = f"Cannot move order from '{current}' to '{requested}'; '{current}' is final"
        super().__init__(
            message,
            field="status",
            details={"current": current, "requested": requested, "allowed": allowed},
        )
        self.current = current
        self.requested = requested


class ConflictError(CraftNestError):
    """A concurrent write won the race. Safe to retry once with a fresh read."""

    kind = "conflict"
    status_code = 409
    public_message = "The record was changed by someone else, please try again"


class StorageError(CraftNestError):
    kind = "storage_error"
    status_code = 503
    public_message = "The service is temporarily unavailable, please try again"


class AuthenticationError(CraftNestError):
    kind = "unauthenticated"
    status_code = 401


class AuthorizationError(CraftNestError):
    kind = "forbidden"
    status_code = 403
