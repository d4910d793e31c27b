"""
Clearing Package.

Paid clearing of stuck packets: a signed, time-bounded token
authorizes a fee payment; once verified, clearing is dispatched
to an external relayer and its progress is published to
subscribers, with polling as fallback.

Components:
- types: Targets, tokens, statuses
- errors: ClearingError hierarchy
- state_machine: Token lifecycle transitions
- fees / denoms: Fee policy and amount formatting
- signing: HMAC token signatures
- payment: Payment transaction verification
- dispatch: Relayer dispatch
- subscriptions / polling: Status delivery
- statistics: Operation history and totals
- engine: The protocol engine
"""

from .types import (
    RequestType,
    ClearingState,
    FailureReason,
    PacketIdentifier,
    ChannelPair,
    ClearingTargets,
    ClearingToken,
    PaymentOutcome,
    PaymentVerification,
    ExecutionProgress,
    ExecutionInfo,
    ClearingStatus,
)
from .errors import (
    ClearingError,
    InvalidRequest,
    TokenNotFound,
    TokenExpired,
    AlreadyProcessed,
    DispatchTimeout,
    PollTimeout,
)
from .state_machine import VALID_TRANSITIONS, TransitionGuard, ClearingStateMachine
from .fees import FeePolicy, FeeQuote
from .denoms import DenomInfo, KNOWN_DENOMS, get_denom_info, format_amount, parse_amount
from .signing import TokenSigner
from .payment import PaymentVerifier, ChainPaymentVerifier, evaluate_payment
from .dispatch import ExecutionDispatcher, HermesDispatcher, build_clear_requests
from .subscriptions import Subscription, SubscriptionHub
from .polling import poll_for_completion
from .statistics import ClearingOperation, WalletStatistics, PlatformStatistics
from .engine import ClearingConfig, ClearingEngine


__all__ = [
    "RequestType",
    "ClearingState",
    "FailureReason",
    "PacketIdentifier",
    "ChannelPair",
    "ClearingTargets",
    "ClearingToken",
    "PaymentOutcome",
    "PaymentVerification",
    "ExecutionProgress",
    "ExecutionInfo",
    "ClearingStatus",
    "ClearingError",
    "InvalidRequest",
    "TokenNotFound",
    "TokenExpired",
    "AlreadyProcessed",
    "DispatchTimeout",
    "PollTimeout",
    "VALID_TRANSITIONS",
    "TransitionGuard",
    "ClearingStateMachine",
    "FeePolicy",
    "FeeQuote",
    "DenomInfo",
    "KNOWN_DENOMS",
    "get_denom_info",
    "format_amount",
    "parse_amount",
    "TokenSigner",
    "PaymentVerifier",
    "ChainPaymentVerifier",
    "evaluate_payment",
    "ExecutionDispatcher",
    "HermesDispatcher",
    "build_clear_requests",
    "Subscription",
    "SubscriptionHub",
    "poll_for_completion",
    "ClearingOperation",
    "WalletStatistics",
    "PlatformStatistics",
    "ClearingConfig",
    "ClearingEngine",
]
