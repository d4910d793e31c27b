"""
Metrics Ingestion - Data Models.

============================================================
PURPOSE
============================================================
Samples decoded from the relay metrics feed and the aggregates
folded from them.

Every aggregate is rebuilt from scratch on each ingestion pass.
Nothing here carries state between passes; combining passes is
done explicitly with merge_snapshots().

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from core.clock import to_iso8601

from .labels import UNKNOWN, DEFAULT_PORT


ChannelKey = Tuple[str, str, str]
"""(chain_id, src_channel, dst_channel)"""


# ============================================================
# DECODED SAMPLE
# ============================================================

@dataclass(frozen=True)
class MetricSample:
    """One decoded exposition line."""

    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    @property
    def series_key(self) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
        """Identity of the series: name plus the full label set."""
        return self.name, tuple(sorted(self.labels.items()))


# ============================================================
# AGGREGATES
# ============================================================

def success_rate(effected: float, total: float) -> float:
    """Percentage of effected packets, 0 when nothing was relayed."""
    if total <= 0:
        return 0.0
    rate = effected / total * 100
    return min(max(rate, 0.0), 100.0)


@dataclass
class SystemAggregate:
    """System-wide counters."""

    chain_count: float = 0.0
    total_transactions: float = 0.0
    total_packets: float = 0.0
    reconnects: Dict[str, float] = field(default_factory=dict)
    timeouts: Dict[str, float] = field(default_factory=dict)
    errors: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_count": self.chain_count,
            "total_transactions": self.total_transactions,
            "total_packets": self.total_packets,
            "reconnects": dict(self.reconnects),
            "timeouts": dict(self.timeouts),
            "errors": dict(self.errors),
        }


@dataclass
class PacketTotals:
    """Packet counts summed across every channel."""

    total: float = 0.0
    effected: float = 0.0
    uneffected: float = 0.0
    frontrun: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "effected": self.effected,
            "uneffected": self.uneffected,
            "frontrun": self.frontrun,
        }


@dataclass
class ChannelAggregate:
    """
    Packet counters of one channel as seen from its source chain.

    dst_chain stays UNKNOWN until the channel resolver fills it in.
    """

    chain_id: str
    src_channel: str
    dst_channel: str
    src_port: str = DEFAULT_PORT
    dst_port: str = DEFAULT_PORT
    dst_chain: str = UNKNOWN
    packets_relayed: float = 0.0
    packets_effected: float = 0.0
    success_rate: float = 0.0

    @property
    def key(self) -> ChannelKey:
        return self.chain_id, self.src_channel, self.dst_channel

    def to_dict(self) -> Dict[str, Any]:
        return {
            "src_chain": self.chain_id,
            "dst_chain": self.dst_chain,
            "src_channel": self.src_channel,
            "dst_channel": self.dst_channel,
            "src_port": self.src_port,
            "dst_port": self.dst_port,
            "packets_relayed": self.packets_relayed,
            "packets_effected": self.packets_effected,
            "success_rate": self.success_rate,
        }


@dataclass
class RelayerAggregate:
    """Performance counters of one relayer signer address."""

    signer: str
    total_packets: float = 0.0
    effected_packets: float = 0.0
    frontrun_count: float = 0.0
    success_rate: float = 0.0
    memo: Optional[str] = None
    software: Optional[str] = None
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signer": self.signer,
            "total_packets": self.total_packets,
            "effected_packets": self.effected_packets,
            "frontrun_count": self.frontrun_count,
            "success_rate": self.success_rate,
            "memo": self.memo,
            "software": self.software,
            "version": self.version,
        }


@dataclass(frozen=True)
class StuckPacketRecord:
    """A packet reported stuck by the gauge feed. Derived, not a ledger entry."""

    src_chain: str
    dst_chain: str
    src_channel: str
    dst_channel: str
    sequence: int
    stuck_since: datetime
    estimated_timeout: datetime

    @property
    def key(self) -> Tuple[str, str, str, str, int]:
        return self.src_chain, self.dst_chain, self.src_channel, self.dst_channel, self.sequence

    def to_dict(self) -> Dict[str, Any]:
        return {
            "src_chain": self.src_chain,
            "dst_chain": self.dst_chain,
            "src_channel": self.src_channel,
            "dst_channel": self.dst_channel,
            "sequence": self.sequence,
            "stuck_since": to_iso8601(self.stuck_since),
            "estimated_timeout": to_iso8601(self.estimated_timeout),
        }


@dataclass
class FlowPoint:
    """Packet counts of one histogram bucket."""

    timestamp: datetime
    effected: float = 0.0
    uneffected: float = 0.0


@dataclass
class PacketFlowSeries:
    """Time series from ibc_packet_flow_histogram. Empty when the feed has none."""

    points: List[FlowPoint] = field(default_factory=list)
    interval: str = "1h"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interval": self.interval,
            "timestamps": [to_iso8601(p.timestamp) for p in self.points],
            "effected_packets": [p.effected for p in self.points],
            "uneffected_packets": [p.uneffected for p in self.points],
        }


# ============================================================
# SNAPSHOT
# ============================================================

@dataclass
class AggregateSnapshot:
    """Result of one aggregation pass."""

    observed_at: datetime
    system: SystemAggregate = field(default_factory=SystemAggregate)
    packets: PacketTotals = field(default_factory=PacketTotals)
    channels: List[ChannelAggregate] = field(default_factory=list)
    relayers: List[RelayerAggregate] = field(default_factory=list)
    stuck_packets: List[StuckPacketRecord] = field(default_factory=list)
    flow: PacketFlowSeries = field(default_factory=PacketFlowSeries)

    samples_processed: int = 0
    unattributed_samples: int = 0
    unknown_metric_samples: int = 0

    def get_channel(self, chain_id: str, src_channel: str, dst_channel: str) -> Optional[ChannelAggregate]:
        for channel in self.channels:
            if channel.key == (chain_id, src_channel, dst_channel):
                return channel
        return None

    def get_relayer(self, signer: str) -> Optional[RelayerAggregate]:
        for relayer in self.relayers:
            if relayer.signer == signer:
                return relayer
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "observed_at": to_iso8601(self.observed_at),
            "system": self.system.to_dict(),
            "packets": self.packets.to_dict(),
            "channels": [c.to_dict() for c in self.channels],
            "relayers": [r.to_dict() for r in self.relayers],
            "stuck_packets": [s.to_dict() for s in self.stuck_packets],
            "packet_flow": self.flow.to_dict(),
            "samples_processed": self.samples_processed,
            "unattributed_samples": self.unattributed_samples,
            "unknown_metric_samples": self.unknown_metric_samples,
        }


__all__ = [
    "ChannelKey",
    "MetricSample",
    "success_rate",
    "SystemAggregate",
    "PacketTotals",
    "ChannelAggregate",
    "RelayerAggregate",
    "StuckPacketRecord",
    "FlowPoint",
    "PacketFlowSeries",
    "AggregateSnapshot",
]
