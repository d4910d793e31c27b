"""
Clearing - Errors.

============================================================
EXCEPTION HIERARCHY
============================================================
ClearingError (base)
├── InvalidRequest      empty, malformed or inconsistent targets,
│                       or a token whose signature does not verify
├── TokenNotFound       unknown token id
├── TokenExpired        pending token past its validity window
├── AlreadyProcessed    token already paid with another tx, or
│                       already past the state an operation needs
├── DispatchTimeout     relayer did not accept in time
└── PollTimeout         status polling exhausted its attempts

An unverified payment is not an error: verify_payment returns
a PaymentVerification with verified=False.

============================================================
"""

from typing import Optional

from core.exceptions import RelayMonitorError, Severity


class ClearingError(RelayMonitorError):
    """Base exception for the clearing protocol."""

    error_code = "CLEARING_ERROR"

    def __init__(self, message: str, token: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if token:
            context["token"] = token
        super().__init__(message, context=context, **kwargs)
        self.token = token


class InvalidRequest(ClearingError):
    default_severity = Severity.LOW
    error_code = "INVALID_REQUEST"


class TokenNotFound(ClearingError):
    default_severity = Severity.LOW
    error_code = "TOKEN_NOT_FOUND"


class TokenExpired(ClearingError):
    default_severity = Severity.LOW
    error_code = "TOKEN_EXPIRED"


class AlreadyProcessed(ClearingError):
    error_code = "ALREADY_PROCESSED"


class DispatchTimeout(ClearingError):
    default_severity = Severity.HIGH
    error_code = "DISPATCH_TIMEOUT"


class PollTimeout(ClearingError):
    error_code = "POLL_TIMEOUT"


__all__ = [
    "ClearingError",
    "InvalidRequest",
    "TokenNotFound",
    "TokenExpired",
    "AlreadyProcessed",
    "DispatchTimeout",
    "PollTimeout",
]
