"""Domain errors raised by services and rendered by the API error handler.

Services never build HTTP responses themselves; they raise one of these and
``src.api.main`` turns it into ``{"error": code, "message": ..., **details}``.
"""
from __future__ import annotations

from typing import Any, Optional


class AppError(Exception):
    """Base application error with structured data."""

    code = "internal_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationFailed(AppError):
    """Malformed input: bad time range, missing ids, missing reason..."""
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError):
    code = "not_found"
    status_code = 404


class StateConflict(AppError):
    """A state-machine guard rejected the transition."""
    code = "state_conflict"
    status_code = 409


class FraudFlagBlocked(AppError):
    """Approval attempted on commissions carrying unresolved fraud flags."""
    code = "fraud_flagged"
    status_code = 400
