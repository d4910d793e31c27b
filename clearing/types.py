"""
Clearing - Types.

============================================================
PURPOSE
============================================================
Value types of the clearing protocol.

- Targets: what a clearing request asks to unblock
- ClearingToken: the signed, time-bounded payment authorization
- ClearingStatus: an immutable view of a token's lifecycle
- PaymentVerification / ExecutionProgress: collaborator results

Amounts are integers in the accepted denom's base unit.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from core.clock import to_iso8601


DEFAULT_PORT = "transfer"
TOKEN_VERSION = 1
PAYMENT_MEMO_PREFIX = "CLR-"


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


# ============================================================
# ENUMS
# ============================================================

class RequestType(Enum):
    """Scope of a clearing request."""

    PACKET = "packet"
    CHANNEL = "channel"
    BULK = "bulk"


class ClearingState(Enum):
    """
    Lifecycle of a clearing token.

    pending -> paid -> executing -> completed | failed
    """

    PENDING = "pending"
    PAID = "paid"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (ClearingState.COMPLETED, ClearingState.FAILED)


class FailureReason(Enum):
    """Why a token ended in FAILED."""

    TIMEOUT = "timeout"
    DISPATCH_REJECTED = "dispatch_rejected"
    DISPATCH_TIMEOUT = "dispatch_timeout"
    DISPATCH_ERROR = "dispatch_error"
    EXECUTION_FAILED = "execution_failed"


# ============================================================
# TARGETS
# ============================================================

@dataclass(frozen=True)
class PacketIdentifier:
    """One packet on a source chain channel."""

    chain_id: str
    channel_id: str
    sequence: int
    port_id: str = DEFAULT_PORT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "channel_id": self.channel_id,
            "port_id": self.port_id,
            "sequence": self.sequence,
        }


@dataclass(frozen=True)
class ChannelPair:
    """A source/destination channel pair, cleared as a whole."""

    src_chain: str
    dst_chain: str
    src_channel: str
    dst_channel: str
    src_port: str = DEFAULT_PORT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "src_chain": self.src_chain,
            "dst_chain": self.dst_chain,
            "src_channel": self.src_channel,
            "dst_channel": self.dst_channel,
            "src_port": self.src_port,
        }


@dataclass(frozen=True)
class ClearingTargets:
    """Packets and channel pairs of a request."""

    packets: Tuple[PacketIdentifier, ...] = ()
    channels: Tuple[ChannelPair, ...] = ()

    @property
    def count(self) -> int:
        return len(self.packets) + len(self.channels)

    def is_empty(self) -> bool:
        return self.count == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "packets": [p.to_dict() for p in self.packets],
            "channels": [c.to_dict() for c in self.channels],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClearingTargets":
        """Build from a plain mapping using the to_dict() field names."""
        packets = tuple(
            PacketIdentifier(
                chain_id=p["chain_id"],
                channel_id=p["channel_id"],
                sequence=int(p["sequence"]),
                port_id=p.get("port_id") or DEFAULT_PORT,
            )
            for p in data.get("packets") or []
        )
        channels = tuple(
            ChannelPair(
                src_chain=c["src_chain"],
                dst_chain=c["dst_chain"],
                src_channel=c["src_channel"],
                dst_channel=c["dst_channel"],
                src_port=c.get("src_port") or DEFAULT_PORT,
            )
            for c in data.get("channels") or []
        )
        return cls(packets=packets, channels=channels)


# ============================================================
# TOKEN
# ============================================================

@dataclass(frozen=True)
class ClearingToken:
    """
    Authorization for one fee payment.

    Immutable once issued. The signature covers every other field,
    so altering targets or amounts invalidates it.
    """

    token: str
    version: int
    request_type: RequestType
    targets: ClearingTargets
    wallet_address: str
    chain_id: str
    issued_at: int
    """Unix seconds."""
    expires_at: int
    """Unix seconds."""
    service_fee: int
    estimated_gas_fee: int
    total_required: int
    accepted_denom: str
    nonce: str
    signature: str = ""

    @property
    def payment_memo(self) -> str:
        return f"{PAYMENT_MEMO_PREFIX}{self.token}"

    def is_expired(self, now_unix: float) -> bool:
        return now_unix > self.expires_at

    def signing_payload(self) -> Dict[str, Any]:
        """Every field except the signature, in wire form."""
        return {
            "token": self.token,
            "version": self.version,
            "request_type": self.request_type.value,
            "target_identifiers": self.targets.to_dict(),
            "wallet_address": self.wallet_address,
            "chain_id": self.chain_id,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
            "service_fee": str(self.service_fee),
            "estimated_gas_fee": str(self.estimated_gas_fee),
            "total_required": str(self.total_required),
            "accepted_denom": self.accepted_denom,
            "nonce": self.nonce,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.signing_payload()
        data["signature"] = self.signature
        return data


# ============================================================
# COLLABORATOR RESULTS
# ============================================================

class PaymentOutcome(Enum):
    """Result category of a payment verification."""

    VERIFIED = "verified"
    INSUFFICIENT = "insufficient"
    WRONG_DENOM = "wrong_denom"
    NO_PAYMENT = "no_payment"
    MEMO_MISMATCH = "memo_mismatch"
    TX_FAILED = "tx_failed"
    TX_NOT_FOUND = "tx_not_found"
    DUPLICATE_TX = "duplicate_tx"


@dataclass(frozen=True)
class PaymentVerification:
    """Outcome of checking a payment transaction against a token."""

    verified: bool
    outcome: PaymentOutcome
    tx_ref: str
    required: int = 0
    paid: int = 0
    denom: str = ""
    overpaid: bool = False
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verified": self.verified,
            "status": self.outcome.value,
            "tx_hash": self.tx_ref,
            "required": str(self.required),
            "paid": str(self.paid),
            "denom": self.denom,
            "overpaid": self.overpaid,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentVerification":
        return cls(
            verified=bool(data.get("verified")),
            outcome=PaymentOutcome(data["status"]),
            tx_ref=data.get("tx_hash", ""),
            required=int(data.get("required") or 0),
            paid=int(data.get("paid") or 0),
            denom=data.get("denom", ""),
            overpaid=bool(data.get("overpaid")),
            message=data.get("message", ""),
        )


@dataclass(frozen=True)
class ExecutionProgress:
    """A progress report from the execution collaborator."""

    packets_cleared: int = 0
    packets_failed: int = 0
    tx_hashes: Tuple[str, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class ExecutionInfo:
    """Accumulated execution progress of a token."""

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    packets_cleared: int = 0
    packets_failed: int = 0
    tx_hashes: Tuple[str, ...] = ()
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": to_iso8601(self.started_at) if self.started_at else None,
            "completed_at": to_iso8601(self.completed_at) if self.completed_at else None,
            "packets_cleared": self.packets_cleared,
            "packets_failed": self.packets_failed,
            "tx_hashes": list(self.tx_hashes),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionInfo":
        return cls(
            started_at=_parse_time(data.get("started_at")),
            completed_at=_parse_time(data.get("completed_at")),
            packets_cleared=int(data.get("packets_cleared") or 0),
            packets_failed=int(data.get("packets_failed") or 0),
            tx_hashes=tuple(data.get("tx_hashes") or ()),
            error=data.get("error"),
        )


# ============================================================
# STATUS
# ============================================================

@dataclass(frozen=True)
class ClearingStatus:
    """Point-in-time view of a token's lifecycle. A new value per change."""

    token: str
    state: ClearingState
    updated_at: datetime
    failure_reason: Optional[FailureReason] = None
    message: str = ""
    payment: Optional[PaymentVerification] = None
    execution: Optional[ExecutionInfo] = None
    history: Tuple[str, ...] = field(default_factory=tuple)
    """States passed through, oldest first."""

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "status": self.state.value,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "message": self.message,
            "updated_at": to_iso8601(self.updated_at),
            "payment": self.payment.to_dict() if self.payment else None,
            "execution": self.execution.to_dict() if self.execution else None,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClearingStatus":
        """Rebuild a status from its API representation."""
        reason = data.get("failure_reason")
        payment = data.get("payment")
        execution = data.get("execution")
        return cls(
            token=data["token"],
            state=ClearingState(data["status"]),
            updated_at=_parse_time(data["updated_at"]),
            failure_reason=FailureReason(reason) if reason else None,
            message=data.get("message", ""),
            payment=PaymentVerification.from_dict(payment) if payment else None,
            execution=ExecutionInfo.from_dict(execution) if execution else None,
            history=tuple(data.get("history") or ()),
        )


__all__ = [
    "DEFAULT_PORT",
    "TOKEN_VERSION",
    "PAYMENT_MEMO_PREFIX",
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
]
