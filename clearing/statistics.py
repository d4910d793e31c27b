"""
Clearing - Operation History and Statistics.

============================================================
PURPOSE
============================================================
Read-only views over paid clearing tokens.

- ClearingOperation: one paid token, as a wallet sees it
- WalletStatistics: totals for one wallet
- PlatformStatistics: totals across every wallet

Everything is computed from the tokens the engine still holds,
so the figures cover its retention window only. Rates are
percentages in [0, 100].

============================================================
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.clock import to_iso8601

from .types import ClearingState, ClearingTargets, FailureReason, RequestType


TOP_CHANNELS = 5


# ============================================================
# OPERATION
# ============================================================

@dataclass(frozen=True)
class ClearingOperation:
    """A paid clearing token and what came of it."""

    token: str
    wallet_address: str
    chain_id: str
    request_type: RequestType
    state: ClearingState
    targets: ClearingTargets
    issued_at: datetime
    payment_tx: str
    amount_paid: int
    denom: str
    failure_reason: Optional[FailureReason] = None
    packets_cleared: int = 0
    packets_failed: int = 0
    execution_tx_hashes: Tuple[str, ...] = ()
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state is ClearingState.COMPLETED

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def channel_labels(self) -> List[str]:
        """Channels this operation touched, one label per target."""
        labels = [f"{p.chain_id}/{p.channel_id}" for p in self.targets.packets]
        labels.extend(
            f"{c.src_chain}/{c.src_channel}->{c.dst_chain}/{c.dst_channel}"
            for c in self.targets.channels
        )
        return labels

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "wallet_address": self.wallet_address,
            "chain_id": self.chain_id,
            "operation_type": self.request_type.value,
            "status": self.state.value,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "packets_targeted": self.targets.count,
            "packets_cleared": self.packets_cleared,
            "packets_failed": self.packets_failed,
            "issued_at": to_iso8601(self.issued_at),
            "started_at": to_iso8601(self.started_at) if self.started_at else None,
            "completed_at": to_iso8601(self.completed_at) if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "payment_tx_hash": self.payment_tx,
            "amount_paid": str(self.amount_paid),
            "denom": self.denom,
            "execution_tx_hashes": list(self.execution_tx_hashes),
        }


# ============================================================
# SUMMARIES
# ============================================================

@dataclass
class WalletStatistics:
    """Totals over one wallet's paid operations."""

    wallet_address: str
    total_requests: int = 0
    successful_clears: int = 0
    failed_clears: int = 0
    in_progress: int = 0
    total_packets_cleared: int = 0
    fees_paid: Dict[str, int] = field(default_factory=dict)
    """Denom -> amount in base units."""
    success_rate: float = 0.0
    avg_clear_time_ms: int = 0
    most_active_channels: List[Tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "total_requests": self.total_requests,
            "successful_clears": self.successful_clears,
            "failed_clears": self.failed_clears,
            "in_progress": self.in_progress,
            "total_packets_cleared": self.total_packets_cleared,
            "fees_paid": {denom: str(amount) for denom, amount in self.fees_paid.items()},
            "success_rate": self.success_rate,
            "avg_clear_time_ms": self.avg_clear_time_ms,
            "most_active_channels": [
                {"channel": channel, "count": count} for channel, count in self.most_active_channels
            ],
        }


@dataclass
class PlatformStatistics:
    """Totals over every wallet."""

    total_operations: int = 0
    total_packets_cleared: int = 0
    total_users: int = 0
    fees_collected: Dict[str, int] = field(default_factory=dict)
    success_rate: float = 0.0
    avg_clear_time_ms: int = 0
    tokens_by_state: Dict[str, int] = field(default_factory=dict)
    """Every held token, paid or not, by current state."""
    top_channels: List[Tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_operations": self.total_operations,
            "total_packets_cleared": self.total_packets_cleared,
            "total_users": self.total_users,
            "fees_collected": {denom: str(amount) for denom, amount in self.fees_collected.items()},
            "success_rate": self.success_rate,
            "avg_clear_time_ms": self.avg_clear_time_ms,
            "tokens_by_state": dict(self.tokens_by_state),
            "top_channels": [
                {"channel": channel, "operations": count} for channel, count in self.top_channels
            ],
        }


def _finished_rate(operations: List[ClearingOperation]) -> float:
    finished = [op for op in operations if op.state.is_terminal()]
    if not finished:
        return 0.0
    return round(sum(1 for op in finished if op.success) / len(finished) * 100, 2)


def _avg_duration(operations: List[ClearingOperation]) -> int:
    durations = [op.duration_ms for op in operations if op.success and op.duration_ms is not None]
    if not durations:
        return 0
    return int(sum(durations) / len(durations))


def _sum_fees(operations: List[ClearingOperation]) -> Dict[str, int]:
    fees: Dict[str, int] = {}
    for op in operations:
        fees[op.denom] = fees.get(op.denom, 0) + op.amount_paid
    return fees


def summarize_wallet(wallet_address: str, operations: Iterable[ClearingOperation]) -> WalletStatistics:
    """Fold one wallet's operations into its statistics."""
    ops = [op for op in operations if op.wallet_address == wallet_address]
    channels: Counter = Counter()
    for op in ops:
        channels.update(set(op.channel_labels()))

    return WalletStatistics(
        wallet_address=wallet_address,
        total_requests=len(ops),
        successful_clears=sum(1 for op in ops if op.success),
        failed_clears=sum(1 for op in ops if op.state is ClearingState.FAILED),
        in_progress=sum(1 for op in ops if not op.state.is_terminal()),
        total_packets_cleared=sum(op.packets_cleared for op in ops),
        fees_paid=_sum_fees(ops),
        success_rate=_finished_rate(ops),
        avg_clear_time_ms=_avg_duration(ops),
        most_active_channels=channels.most_common(TOP_CHANNELS),
    )


def summarize_platform(
    operations: Iterable[ClearingOperation],
    tokens_by_state: Dict[str, int],
) -> PlatformStatistics:
    """Fold every operation into platform-wide statistics."""
    ops = list(operations)
    channels: Counter = Counter()
    for op in ops:
        channels.update(set(op.channel_labels()))

    return PlatformStatistics(
        total_operations=len(ops),
        total_packets_cleared=sum(op.packets_cleared for op in ops),
        total_users=len({op.wallet_address for op in ops}),
        fees_collected=_sum_fees(ops),
        success_rate=_finished_rate(ops),
        avg_clear_time_ms=_avg_duration(ops),
        tokens_by_state=tokens_by_state,
        top_channels=channels.most_common(TOP_CHANNELS),
    )


__all__ = [
    "ClearingOperation",
    "WalletStatistics",
    "PlatformStatistics",
    "summarize_wallet",
    "summarize_platform",
]
