"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Root of the exception hierarchy shared by every subsystem.

- Carries severity and context for logging
- Serializes to a dict for API error bodies
- Subsystems derive their own families from RelayMonitorError

============================================================
EXCEPTION HIERARCHY
============================================================
RelayMonitorError (base)
├── ConfigurationError
│   └── InvalidConfigError
├── UpstreamError                 (channel_resolver, clearing)
├── ResolutionError               (channel_resolver.exceptions)
└── ClearingError                 (clearing.errors)

Decoder skips are never raised: malformed metric lines are
counted and dropped inside metrics_ingestion.

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for logging."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================
# BASE EXCEPTION
# ============================================================

class RelayMonitorError(Exception):
    """
    Base exception for all relay monitor errors.

    All exceptions carry:
    - severity: for log level selection
    - context: for debugging and API error details
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging and API responses."""
        return {
            "type": type(self).__name__,
            "code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx_str = ", ".join(
            f"{k}={v}" for k, v in self.context.items()
            if k not in ("cause_type", "cause_message")
        )
        return f"{self.message} ({ctx_str})" if ctx_str else self.message


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(RelayMonitorError):
    """Error in configuration."""

    default_severity = Severity.HIGH
    error_code = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key
        super().__init__(message, context=context, **kwargs)


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(
            message=f"Invalid configuration for {key}: {reason}",
            config_key=key,
            context={"reason": reason, "actual_value": str(value)[:100]},
        )


# ============================================================
# UPSTREAM ERRORS
# ============================================================

class UpstreamError(RelayMonitorError):
    """
    A remote HTTP dependency answered with an error or not at all.

    Raised by the chain REST client, the metrics source, the payment
    verifier and the relayer dispatcher.
    """

    error_code = "UPSTREAM_ERROR"

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if url:
            context["url"] = url
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(message, context=context, **kwargs)
        self.url = url
        self.status_code = status_code
        self.response_body = response_body


__all__ = [
    "Severity",
    "RelayMonitorError",
    "ConfigurationError",
    "InvalidConfigError",
    "UpstreamError",
]
