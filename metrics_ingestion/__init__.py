"""
Metrics Ingestion Package.

Decodes the relay metrics exposition feed and folds it into
dashboard aggregates.

Components:
- labels: Label schema per metric family
- models: Samples and aggregates
- decoder: Line decoder with skip accounting
- aggregator: Pure aggregation pass and snapshot merging
- source: HTTP source and ingestion service
"""

from .labels import UNKNOWN, MetricRule, LabelSchema, METRIC_SCHEMAS, schema_for
from .models import (
    MetricSample,
    SystemAggregate,
    PacketTotals,
    ChannelAggregate,
    RelayerAggregate,
    StuckPacketRecord,
    FlowPoint,
    PacketFlowSeries,
    AggregateSnapshot,
    success_rate,
)
from .decoder import DecodeSkip, DecodedBody, decode, decode_with_reason, decode_lines
from .aggregator import aggregate, merge_snapshots, parse_relayer_memo, MetricsAggregator
from .source import (
    MetricsFetchError,
    MetricsSource,
    IngestionReport,
    IngestionResult,
    MetricsIngestionService,
)


__all__ = [
    "UNKNOWN",
    "MetricRule",
    "LabelSchema",
    "METRIC_SCHEMAS",
    "schema_for",
    "MetricSample",
    "SystemAggregate",
    "PacketTotals",
    "ChannelAggregate",
    "RelayerAggregate",
    "StuckPacketRecord",
    "FlowPoint",
    "PacketFlowSeries",
    "AggregateSnapshot",
    "success_rate",
    "DecodeSkip",
    "DecodedBody",
    "decode",
    "decode_with_reason",
    "decode_lines",
    "aggregate",
    "merge_snapshots",
    "parse_relayer_memo",
    "MetricsAggregator",
    "MetricsFetchError",
    "MetricsSource",
    "IngestionReport",
    "IngestionResult",
    "MetricsIngestionService",
]
