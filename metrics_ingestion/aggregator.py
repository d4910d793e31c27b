"""
Metrics Ingestion - Aggregator.

============================================================
PURPOSE
============================================================
Folds decoded samples into an AggregateSnapshot.

One pass over the samples, dispatching each by metric name
into an accumulation rule:

- system counters       chain / tx / packet totals
- per-chain counters    reconnects, timeouts, errors by chain
- effected packets      channel + relayer counters
- uneffected packets    channel + relayer counters
- front-run counters    relayer front-run count
- stuck gauges          stuck packet records

Packet flow histogram samples are collected alongside.

============================================================
GUARANTEES
============================================================
- Pure: the same (samples, observed_at) always gives an equal
  snapshot. No state is kept between calls.
- Duplicate series (same name, same labels): last value wins.
- Distinct series that land on the same key are summed.
- Missing required labels go to the "unknown" key and are
  counted in unattributed_samples. Nothing is dropped.
- Success rates are computed once, after the pass.
- Never raises.

============================================================
"""

import logging
import math
import re
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from core.clock import ClockProtocol, SystemClock, from_unix

from .labels import (
    UNKNOWN,
    DEFAULT_PORT,
    DEFAULT_STUCK_MINUTES,
    MetricRule,
    schema_for,
    required_label,
    optional_label,
    signer_label,
)
from .models import (
    ChannelKey,
    MetricSample,
    success_rate,
    SystemAggregate,
    PacketTotals,
    ChannelAggregate,
    RelayerAggregate,
    StuckPacketRecord,
    FlowPoint,
    PacketFlowSeries,
    AggregateSnapshot,
)


logger = logging.getLogger(__name__)


STUCK_TIMEOUT_ESTIMATE = timedelta(minutes=30)


# ============================================================
# RELAYER SOFTWARE DETECTION
# ============================================================

_SOFTWARE_NAMES = {
    "hermes": "Hermes",
    "rly": "Go Relayer",
    "relayer": "Go Relayer",
    "ts-relayer": "TS Relayer",
}

_MEMO_RE = re.compile(
    r'(?P<software>hermes|rly|ts-relayer|relayer)[/\s:@]+v?(?P<version>\d+(?:\.\d+)*[\w.-]*)',
    re.IGNORECASE,
)


def parse_relayer_memo(memo: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Best-effort software/version detection from a relayer memo.

    Examples:
        "hermes/1.7.3"               -> ("Hermes", "1.7.3")
        "rly/2.4.2"                  -> ("Go Relayer", "2.4.2")
        "Relayer 1 | hermes 1.13.0"  -> ("Hermes", "1.13.0")

    Returns:
        (software, version), either may be None
    """
    if not memo:
        return None, None

    # Memos can carry an operator prefix before a pipe
    candidates = [part.strip() for part in memo.split("|")][::-1]

    for part in candidates:
        match = _MEMO_RE.search(part)
        if match:
            name = _SOFTWARE_NAMES.get(match.group("software").lower())
            return name, match.group("version")

    for part in candidates:
        token = part.split("/")[0].split()[0].lower() if part else ""
        if token in _SOFTWARE_NAMES:
            return _SOFTWARE_NAMES[token], None

    return None, None


# ============================================================
# PASS STATE
# ============================================================

class _Pass:
    """Mutable accumulators for a single aggregation pass."""

    def __init__(self, observed_at: datetime):
        self.observed_at = observed_at
        self.system = SystemAggregate()
        self.packets = PacketTotals()
        self.channels: Dict[ChannelKey, ChannelAggregate] = {}
        self.relayers: Dict[str, RelayerAggregate] = {}
        self.stuck: List[StuckPacketRecord] = []
        self.flow: Dict[datetime, FlowPoint] = {}
        self.samples_processed = 0
        self.unattributed = 0
        self.unknown_metrics = 0

    def channel(self, key: ChannelKey, src_port: str, dst_port: str) -> ChannelAggregate:
        aggregate = self.channels.get(key)
        if aggregate is None:
            aggregate = ChannelAggregate(
                chain_id=key[0],
                src_channel=key[1],
                dst_channel=key[2],
                src_port=src_port,
                dst_port=dst_port,
            )
            self.channels[key] = aggregate
        return aggregate

    def relayer(self, signer: str) -> RelayerAggregate:
        aggregate = self.relayers.get(signer)
        if aggregate is None:
            aggregate = RelayerAggregate(signer=signer)
            self.relayers[signer] = aggregate
        return aggregate


# ============================================================
# ACCUMULATION RULES
# ============================================================

def _apply_system(state: _Pass, sample: MetricSample) -> bool:
    if sample.name == "chainpulse_chains":
        state.system.chain_count += sample.value
    elif sample.name == "chainpulse_txs":
        state.system.total_transactions += sample.value
    else:
        state.system.total_packets += sample.value
    return True


def _apply_chain(state: _Pass, sample: MetricSample) -> bool:
    chain_id, present = required_label(sample.labels, "chain_id")
    target = {
        "chainpulse_reconnects": state.system.reconnects,
        "chainpulse_timeouts": state.system.timeouts,
        "chainpulse_errors": state.system.errors,
    }[sample.name]
    target[chain_id] = target.get(chain_id, 0.0) + sample.value
    return present


def _apply_packets(state: _Pass, sample: MetricSample, effected: bool) -> bool:
    labels = sample.labels
    chain_id, has_chain = required_label(labels, "chain_id")
    src_channel, has_src = required_label(labels, "src_channel")
    dst_channel, has_dst = required_label(labels, "dst_channel")
    signer, has_signer = required_label(labels, "signer")

    channel = state.channel(
        (chain_id, src_channel, dst_channel),
        optional_label(labels, "src_port", DEFAULT_PORT),
        optional_label(labels, "dst_port", DEFAULT_PORT),
    )
    relayer = state.relayer(signer)

    channel.packets_relayed += sample.value
    relayer.total_packets += sample.value
    if effected:
        channel.packets_effected += sample.value
        relayer.effected_packets += sample.value
        state.packets.effected += sample.value
    else:
        state.packets.uneffected += sample.value

    memo = labels.get("memo")
    if memo and relayer.memo is None:
        relayer.memo = memo

    return has_chain and has_src and has_dst and has_signer


def _apply_frontrun(state: _Pass, sample: MetricSample) -> bool:
    signer, present = signer_label(sample.labels)
    state.relayer(signer).frontrun_count += sample.value
    state.packets.frontrun += sample.value
    return present


def _apply_stuck(state: _Pass, sample: MetricSample) -> bool:
    labels = sample.labels
    src_chain, has_src_chain = required_label(labels, "src_chain")
    dst_chain, has_dst_chain = required_label(labels, "dst_chain")
    src_channel, has_src = required_label(labels, "src_channel")
    dst_channel, has_dst = required_label(labels, "dst_channel")
    present = has_src_chain and has_dst_chain and has_src and has_dst

    if sample.value <= 0:
        return present
    if not math.isfinite(sample.value) or sample.value < 1 or sample.value != math.floor(sample.value):
        logger.debug(f"Stuck gauge {src_chain}/{src_channel} has non-sequence value {sample.value}, skipped")
        return present

    raw_minutes = optional_label(labels, "stuck_minutes", str(DEFAULT_STUCK_MINUTES))
    try:
        minutes = max(int(raw_minutes), 0)
    except ValueError:
        minutes = DEFAULT_STUCK_MINUTES

    stuck_since = state.observed_at - timedelta(minutes=minutes)
    state.stuck.append(StuckPacketRecord(
        src_chain=src_chain,
        dst_chain=dst_chain,
        src_channel=src_channel,
        dst_channel=dst_channel,
        sequence=int(sample.value),
        stuck_since=stuck_since,
        estimated_timeout=stuck_since + STUCK_TIMEOUT_ESTIMATE,
    ))
    return present


def _apply_flow(state: _Pass, sample: MetricSample) -> bool:
    raw_ts, present = required_label(sample.labels, "timestamp")
    try:
        timestamp = from_unix(int(raw_ts)) if present else from_unix(0)
    except (ValueError, OverflowError, OSError):
        timestamp = from_unix(0)
        present = False

    point = state.flow.get(timestamp)
    if point is None:
        point = FlowPoint(timestamp=timestamp)
        state.flow[timestamp] = point

    if optional_label(sample.labels, "type", "uneffected") == "effected":
        point.effected += sample.value
    else:
        point.uneffected += sample.value
    return present


# ============================================================
# FINALIZATION
# ============================================================

def _finalize_relayer(relayer: RelayerAggregate) -> None:
    relayer.success_rate = success_rate(relayer.effected_packets, relayer.total_packets)
    relayer.software, relayer.version = parse_relayer_memo(relayer.memo)


def _build_snapshot(
    observed_at: datetime,
    system: SystemAggregate,
    packets: PacketTotals,
    channels: Iterable[ChannelAggregate],
    relayers: Iterable[RelayerAggregate],
    stuck: Iterable[StuckPacketRecord],
    flow: Iterable[FlowPoint],
    samples_processed: int,
    unattributed: int,
    unknown_metrics: int,
) -> AggregateSnapshot:
    channel_list = list(channels)
    for channel in channel_list:
        channel.success_rate = success_rate(channel.packets_effected, channel.packets_relayed)

    relayer_list = list(relayers)
    for relayer in relayer_list:
        _finalize_relayer(relayer)

    packets.total = packets.effected + packets.uneffected

    system.reconnects = dict(sorted(system.reconnects.items()))
    system.timeouts = dict(sorted(system.timeouts.items()))
    system.errors = dict(sorted(system.errors.items()))

    return AggregateSnapshot(
        observed_at=observed_at,
        system=system,
        packets=packets,
        channels=sorted(channel_list, key=lambda c: (-c.packets_relayed, c.key)),
        relayers=sorted(relayer_list, key=lambda r: (-r.effected_packets, r.signer)),
        stuck_packets=sorted(stuck, key=lambda s: (s.stuck_since, s.key)),
        flow=PacketFlowSeries(points=sorted(flow, key=lambda p: p.timestamp)),
        samples_processed=samples_processed,
        unattributed_samples=unattributed,
        unknown_metric_samples=unknown_metrics,
    )


# ============================================================
# AGGREGATION
# ============================================================

def _deduplicate(samples: Iterable[MetricSample]) -> List[MetricSample]:
    """Collapse repeated series, keeping the last value at the first position."""
    series: Dict[tuple, MetricSample] = {}
    for sample in samples:
        series[sample.series_key] = sample
    return list(series.values())


def aggregate(samples: Iterable[MetricSample], observed_at: datetime) -> AggregateSnapshot:
    """
    Fold samples into a snapshot.

    Args:
        samples: Decoded samples, in feed order
        observed_at: Instant the feed was read, anchors stuck ages

    Returns:
        AggregateSnapshot (never raises)
    """
    state = _Pass(observed_at)

    for sample in _deduplicate(samples):
        state.samples_processed += 1
        schema = schema_for(sample.name)
        if schema is None:
            state.unknown_metrics += 1
            continue

        rule = schema.rule
        if rule is MetricRule.SYSTEM_COUNTER:
            attributed = _apply_system(state, sample)
        elif rule is MetricRule.CHAIN_COUNTER:
            attributed = _apply_chain(state, sample)
        elif rule is MetricRule.EFFECTED_PACKETS:
            attributed = _apply_packets(state, sample, effected=True)
        elif rule is MetricRule.UNEFFECTED_PACKETS:
            attributed = _apply_packets(state, sample, effected=False)
        elif rule is MetricRule.FRONTRUN_COUNTER:
            attributed = _apply_frontrun(state, sample)
        elif rule is MetricRule.STUCK_GAUGE:
            attributed = _apply_stuck(state, sample)
        else:
            attributed = _apply_flow(state, sample)

        if not attributed:
            state.unattributed += 1

    return _build_snapshot(
        observed_at=observed_at,
        system=state.system,
        packets=state.packets,
        channels=state.channels.values(),
        relayers=state.relayers.values(),
        stuck=state.stuck,
        flow=state.flow.values(),
        samples_processed=state.samples_processed,
        unattributed=state.unattributed,
        unknown_metrics=state.unknown_metrics,
    )


# ============================================================
# MERGING
# ============================================================

def _sum_maps(a: Dict[str, float], b: Dict[str, float]) -> Dict[str, float]:
    merged = dict(a)
    for key, value in b.items():
        merged[key] = merged.get(key, 0.0) + value
    return merged


def merge_snapshots(a: AggregateSnapshot, b: AggregateSnapshot) -> AggregateSnapshot:
    """
    Combine two snapshots into a new one.

    Counters are summed and rates recomputed. Neither input is
    modified. Stuck records are unioned by key.
    """
    system = SystemAggregate(
        chain_count=a.system.chain_count + b.system.chain_count,
        total_transactions=a.system.total_transactions + b.system.total_transactions,
        total_packets=a.system.total_packets + b.system.total_packets,
        reconnects=_sum_maps(a.system.reconnects, b.system.reconnects),
        timeouts=_sum_maps(a.system.timeouts, b.system.timeouts),
        errors=_sum_maps(a.system.errors, b.system.errors),
    )
    packets = PacketTotals(
        effected=a.packets.effected + b.packets.effected,
        uneffected=a.packets.uneffected + b.packets.uneffected,
        frontrun=a.packets.frontrun + b.packets.frontrun,
    )

    channels: Dict[ChannelKey, ChannelAggregate] = {}
    for source in (a.channels, b.channels):
        for channel in source:
            merged = channels.get(channel.key)
            if merged is None:
                channels[channel.key] = ChannelAggregate(
                    chain_id=channel.chain_id,
                    src_channel=channel.src_channel,
                    dst_channel=channel.dst_channel,
                    src_port=channel.src_port,
                    dst_port=channel.dst_port,
                    dst_chain=channel.dst_chain,
                    packets_relayed=channel.packets_relayed,
                    packets_effected=channel.packets_effected,
                )
                continue
            merged.packets_relayed += channel.packets_relayed
            merged.packets_effected += channel.packets_effected
            if merged.dst_chain == UNKNOWN:
                merged.dst_chain = channel.dst_chain

    relayers: Dict[str, RelayerAggregate] = {}
    for source in (a.relayers, b.relayers):
        for relayer in source:
            merged = relayers.get(relayer.signer)
            if merged is None:
                relayers[relayer.signer] = RelayerAggregate(
                    signer=relayer.signer,
                    total_packets=relayer.total_packets,
                    effected_packets=relayer.effected_packets,
                    frontrun_count=relayer.frontrun_count,
                    memo=relayer.memo,
                )
                continue
            merged.total_packets += relayer.total_packets
            merged.effected_packets += relayer.effected_packets
            merged.frontrun_count += relayer.frontrun_count
            if merged.memo is None:
                merged.memo = relayer.memo

    stuck: Dict[tuple, StuckPacketRecord] = {}
    for record in list(a.stuck_packets) + list(b.stuck_packets):
        existing = stuck.get(record.key)
        # Keep the oldest sighting
        if existing is None or record.stuck_since < existing.stuck_since:
            stuck[record.key] = record

    flow: Dict[datetime, FlowPoint] = {}
    for point in list(a.flow.points) + list(b.flow.points):
        merged_point = flow.setdefault(point.timestamp, FlowPoint(timestamp=point.timestamp))
        merged_point.effected += point.effected
        merged_point.uneffected += point.uneffected

    return _build_snapshot(
        observed_at=max(a.observed_at, b.observed_at),
        system=system,
        packets=packets,
        channels=channels.values(),
        relayers=relayers.values(),
        stuck=stuck.values(),
        flow=flow.values(),
        samples_processed=a.samples_processed + b.samples_processed,
        unattributed=a.unattributed_samples + b.unattributed_samples,
        unknown_metrics=a.unknown_metric_samples + b.unknown_metric_samples,
    )


# ============================================================
# CLOCK-BOUND WRAPPER
# ============================================================

class MetricsAggregator:
    """Aggregates against an injected clock."""

    def __init__(self, clock: Optional[ClockProtocol] = None):
        self._clock = clock or SystemClock()

    def aggregate(self, samples: Iterable[MetricSample]) -> AggregateSnapshot:
        snapshot = aggregate(samples, self._clock.now())
        if snapshot.unattributed_samples:
            logger.debug(
                f"[aggregator] {snapshot.unattributed_samples} samples attributed to '{UNKNOWN}'"
            )
        return snapshot


__all__ = [
    "STUCK_TIMEOUT_ESTIMATE",
    "parse_relayer_memo",
    "aggregate",
    "merge_snapshots",
    "MetricsAggregator",
]
