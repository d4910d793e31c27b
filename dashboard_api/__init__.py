"""
Dashboard API Package.

HTTP and websocket surface of the relay monitor, plus the
client used to wait on clearing tokens.
"""

from .api import (
    ApiEncoder,
    json_response,
    status_for_error,
    error_response,
    RelayMonitorAPI,
    create_app,
)
from .schemas import (
    PacketIdentifierSchema,
    ChannelPairSchema,
    ClearingTargetsSchema,
    TokenRequestCreate,
    PaymentVerificationCreate,
    ResolveBatchCreate,
    SubscriptionMessage,
)
from .status_client import ClearingStatusClient


__all__ = [
    "ApiEncoder",
    "json_response",
    "status_for_error",
    "error_response",
    "RelayMonitorAPI",
    "create_app",
    "PacketIdentifierSchema",
    "ChannelPairSchema",
    "ClearingTargetsSchema",
    "TokenRequestCreate",
    "PaymentVerificationCreate",
    "ResolveBatchCreate",
    "SubscriptionMessage",
    "ClearingStatusClient",
]
