"""
Metrics Ingestion - Label Schema.

============================================================
PURPOSE
============================================================
Documents the label set each known metric family carries.

Labels are a plain mapping of string to string. Required keys
are the ones an aggregate is keyed on; when one is absent the
sample is attributed to UNKNOWN and counted as unattributed.
Optional keys fall back to a documented default.

============================================================
METRIC FAMILIES
============================================================
system counters       chainpulse_chains, chainpulse_txs, chainpulse_packets
                      (no labels)
per-chain counters    chainpulse_reconnects, chainpulse_timeouts,
                      chainpulse_errors
                      required: chain_id
packet counters       ibc_effected_packets, ibc_uneffected_packets
                      required: chain_id, src_channel, dst_channel, signer
                      optional: src_port, dst_port (transfer), memo
front-run counters    ibc_frontrun_total, ibc_frontrun_counter
                      required: signer (frontrunned_by accepted)
stuck gauges          ibc_stuck_packets
                      required: src_chain, dst_chain, src_channel,
                                dst_channel
                      optional: stuck_minutes (60)
packet flow           ibc_packet_flow_histogram
                      required: timestamp
                      optional: type (uneffected)

============================================================
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


UNKNOWN = "unknown"
DEFAULT_PORT = "transfer"
DEFAULT_STUCK_MINUTES = 60


# ============================================================
# METRIC RULES
# ============================================================

class MetricRule(Enum):
    """Accumulation rule a metric name dispatches to."""

    SYSTEM_COUNTER = "system_counter"
    CHAIN_COUNTER = "chain_counter"
    EFFECTED_PACKETS = "effected_packets"
    UNEFFECTED_PACKETS = "uneffected_packets"
    FRONTRUN_COUNTER = "frontrun_counter"
    STUCK_GAUGE = "stuck_gauge"
    PACKET_FLOW = "packet_flow"


@dataclass(frozen=True)
class LabelSchema:
    """Required and optional labels of one metric family."""

    rule: MetricRule
    required: Tuple[str, ...] = ()
    optional: Dict[str, str] = field(default_factory=dict)


_PACKET_REQUIRED = ("chain_id", "src_channel", "dst_channel", "signer")
_PACKET_OPTIONAL = {"src_port": DEFAULT_PORT, "dst_port": DEFAULT_PORT, "memo": ""}
_STUCK_REQUIRED = ("src_chain", "dst_chain", "src_channel", "dst_channel")


METRIC_SCHEMAS: Dict[str, LabelSchema] = {
    "chainpulse_chains": LabelSchema(MetricRule.SYSTEM_COUNTER),
    "chainpulse_txs": LabelSchema(MetricRule.SYSTEM_COUNTER),
    "chainpulse_packets": LabelSchema(MetricRule.SYSTEM_COUNTER),
    "chainpulse_reconnects": LabelSchema(MetricRule.CHAIN_COUNTER, ("chain_id",)),
    "chainpulse_timeouts": LabelSchema(MetricRule.CHAIN_COUNTER, ("chain_id",)),
    "chainpulse_errors": LabelSchema(MetricRule.CHAIN_COUNTER, ("chain_id",)),
    "ibc_effected_packets": LabelSchema(
        MetricRule.EFFECTED_PACKETS, _PACKET_REQUIRED, _PACKET_OPTIONAL
    ),
    "ibc_uneffected_packets": LabelSchema(
        MetricRule.UNEFFECTED_PACKETS, _PACKET_REQUIRED, _PACKET_OPTIONAL
    ),
    "ibc_frontrun_total": LabelSchema(MetricRule.FRONTRUN_COUNTER, ("signer",)),
    "ibc_frontrun_counter": LabelSchema(MetricRule.FRONTRUN_COUNTER, ("signer",)),
    "ibc_stuck_packets": LabelSchema(
        MetricRule.STUCK_GAUGE,
        _STUCK_REQUIRED,
        {"stuck_minutes": str(DEFAULT_STUCK_MINUTES)},
    ),
    "ibc_packet_flow_histogram": LabelSchema(
        MetricRule.PACKET_FLOW, ("timestamp",), {"type": "uneffected"}
    ),
}


def schema_for(name: str) -> Optional[LabelSchema]:
    """Get the label schema of a metric name, None when unknown."""
    return METRIC_SCHEMAS.get(name)


# ============================================================
# LABEL ACCESS
# ============================================================

def required_label(labels: Mapping[str, str], key: str) -> Tuple[str, bool]:
    """
    Read a required label.

    Returns:
        (value, present). Absent or empty values read as UNKNOWN.
    """
    value = labels.get(key)
    if value:
        return value, True
    return UNKNOWN, False


def optional_label(labels: Mapping[str, str], key: str, default: str) -> str:
    value = labels.get(key)
    return value if value else default


def signer_label(labels: Mapping[str, str]) -> Tuple[str, bool]:
    """Front-run samples name the relayer as signer or frontrunned_by."""
    for key in ("signer", "frontrunned_by"):
        value = labels.get(key)
        if value:
            return value, True
    return UNKNOWN, False


__all__ = [
    "UNKNOWN",
    "DEFAULT_PORT",
    "DEFAULT_STUCK_MINUTES",
    "MetricRule",
    "LabelSchema",
    "METRIC_SCHEMAS",
    "schema_for",
    "required_label",
    "optional_label",
    "signer_label",
]
