"""
Domain error taxonomy.

Every error carries a stable ``kind`` so callers can branch on it without
parsing messages. The HTTP layer maps kinds to status codes in ``main.py``.
"""
from typing import Any, Dict, Optional


class FieldOpsError(Exception):
    kind = "error"
    status_code = 500
    retryable = False

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail)
        self.detail = detail
        self.extra: Dict[str, Any] = {k: v for k, v in extra.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind, "detail": self.detail}
        payload.update(self.extra)
        if self.retryable:
            payload["retryable"] = True
        return payload


class ValidationError(FieldOpsError):
    """Malformed input. Never retried."""
    kind = "validation_error"
    status_code = 400


class AuthorizationError(FieldOpsError):
    """Actor lacks permission. The detail never describes the org structure."""
    kind = "not_permitted"
    status_code = 403

    def __init__(self, detail: str = "Not permitted", **extra: Any):
        super().__init__(detail, **extra)


class StateConflictError(FieldOpsError):
    """Transition not valid from the current state."""
    kind = "state_conflict"
    status_code = 409

    def __init__(self, detail: str, rule: Optional[str] = None, **extra: Any):
        super().__init__(detail, rule=rule, **extra)
        self.rule = rule


class NotFoundError(FieldOpsError):
    kind = "not_found"
    status_code = 404


class DependencyTimeoutError(FieldOpsError):
    """Store unavailable or slow. Safe to retry: nothing was applied."""
    kind = "dependency_timeout"
    status_code = 503
    retryable = True
