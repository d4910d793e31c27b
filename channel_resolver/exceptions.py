"""
Channel Resolver - Exceptions.

============================================================
EXCEPTION HIERARCHY
============================================================
ResolutionError (base)
├── ResolutionNotFound    channel, connection or client absent,
│                         or no endpoint known for the chain
├── ResolutionTimeout     a remote lookup exceeded its bound
└── ResolutionFailed      the chain endpoint answered with an error

ChainQueryError is the transport level error raised by the
chain REST client. The resolver converts it into one of the
above before it reaches callers.

============================================================
"""

from typing import Optional

from core.exceptions import RelayMonitorError, Severity, UpstreamError


class ResolutionError(RelayMonitorError):
    """Base exception for channel resolution failures."""

    error_code = "RESOLUTION_ERROR"

    def __init__(
        self,
        message: str,
        chain_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        port_id: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if chain_id:
            context["chain_id"] = chain_id
        if channel_id:
            context["channel_id"] = channel_id
        if port_id:
            context["port_id"] = port_id
        super().__init__(message, context=context, **kwargs)
        self.chain_id = chain_id
        self.channel_id = channel_id
        self.port_id = port_id


class ResolutionNotFound(ResolutionError):
    """The channel could not be resolved from chain state."""

    default_severity = Severity.LOW
    error_code = "RESOLUTION_NOT_FOUND"


class ResolutionTimeout(ResolutionError):
    """A remote state lookup did not answer in time."""

    error_code = "RESOLUTION_TIMEOUT"


class ResolutionFailed(ResolutionError):
    """The chain endpoint returned an error."""

    error_code = "RESOLUTION_FAILED"


class ChainQueryError(UpstreamError):
    """HTTP failure talking to a chain REST endpoint."""

    error_code = "CHAIN_QUERY_ERROR"


__all__ = [
    "ResolutionError",
    "ResolutionNotFound",
    "ResolutionTimeout",
    "ResolutionFailed",
    "ChainQueryError",
]
