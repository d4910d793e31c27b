"""
Metrics Ingestion - Source and Service.

============================================================
PURPOSE
============================================================
Fetches the exposition feed and runs one ingestion pass:

    fetch -> decode -> aggregate -> (enrich) -> snapshot

The service keeps the latest snapshot together with an
IngestionReport describing how complete the data was. Gaps in
the feed are reported as warnings, never as failures. Only a
failed fetch is raised to the caller.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from core.clock import ClockProtocol, SystemClock, to_iso8601
from core.exceptions import UpstreamError
from core.http_client import HttpClientBase

from .aggregator import aggregate
from .decoder import decode_lines
from .labels import UNKNOWN
from .models import AggregateSnapshot


logger = logging.getLogger(__name__)


# ============================================================
# METRICS SOURCE
# ============================================================

class MetricsFetchError(UpstreamError):
    """The metrics endpoint could not be read."""

    error_code = "METRICS_FETCH_ERROR"


class MetricsSource(HttpClientBase):
    """Reads the plain-text exposition body from the metrics endpoint."""

    name = "metrics"
    error_class = MetricsFetchError

    def __init__(self, url: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.url = url

    async def fetch_text(self) -> str:
        return await self._request("GET", self.url, expect_json=False)


# ============================================================
# ENRICHMENT COLLABORATOR
# ============================================================

class BatchResolver(Protocol):
    """What the service needs from the channel resolver."""

    async def resolve_batch(self, keys: Sequence[Tuple[str, str, str]]) -> List[Any]:
        ...


# ============================================================
# INGESTION REPORT
# ============================================================

@dataclass
class IngestionReport:
    """Completeness accounting for one ingestion pass."""

    observed_at: datetime
    lines_total: int = 0
    lines_skipped: int = 0
    skip_reasons: Dict[str, int] = field(default_factory=dict)
    samples: int = 0
    unattributed_samples: int = 0
    unknown_metric_samples: int = 0
    channels_resolved: int = 0
    channels_unresolved: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "observed_at": to_iso8601(self.observed_at),
            "lines_total": self.lines_total,
            "lines_skipped": self.lines_skipped,
            "skip_reasons": dict(self.skip_reasons),
            "samples": self.samples,
            "unattributed_samples": self.unattributed_samples,
            "unknown_metric_samples": self.unknown_metric_samples,
            "channels_resolved": self.channels_resolved,
            "channels_unresolved": self.channels_unresolved,
            "partial": self.is_partial,
            "warnings": list(self.warnings),
        }


@dataclass
class IngestionResult:
    snapshot: AggregateSnapshot
    report: IngestionReport


# ============================================================
# INGESTION SERVICE
# ============================================================

class MetricsIngestionService:
    """
    Runs ingestion passes and holds the latest snapshot.

    The snapshot is replaced wholesale on every pass.
    """

    def __init__(
        self,
        source: MetricsSource,
        clock: Optional[ClockProtocol] = None,
        resolver: Optional[BatchResolver] = None,
    ) -> None:
        self._source = source
        self._clock = clock or SystemClock()
        self._resolver = resolver
        self._latest: Optional[IngestionResult] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def latest(self) -> Optional[IngestionResult]:
        return self._latest

    def ingest_text(self, text: str) -> IngestionResult:
        """Decode and aggregate an already fetched body."""
        observed_at = self._clock.now()
        decoded = decode_lines(text)
        snapshot = aggregate(decoded.samples, observed_at)

        report = IngestionReport(
            observed_at=observed_at,
            lines_total=decoded.lines_total,
            lines_skipped=decoded.lines_skipped,
            skip_reasons=decoded.skip_reasons,
            samples=len(decoded.samples),
            unattributed_samples=snapshot.unattributed_samples,
            unknown_metric_samples=snapshot.unknown_metric_samples,
        )

        if decoded.lines_total == 0:
            report.warnings.append("metrics feed returned no samples")
        if decoded.lines_skipped:
            report.warnings.append(
                f"{decoded.lines_skipped} of {decoded.lines_total} lines could not be decoded"
            )
        if snapshot.unattributed_samples:
            report.warnings.append(
                f"{snapshot.unattributed_samples} samples missing required labels, "
                f"attributed to '{UNKNOWN}'"
            )

        return IngestionResult(snapshot=snapshot, report=report)

    async def refresh(self, enrich: bool = True) -> IngestionResult:
        """
        Run one full ingestion pass.

        Raises:
            MetricsFetchError: If the feed cannot be read
        """
        async with self._refresh_lock:
            try:
                text = await self._source.fetch_text()
            except MetricsFetchError as e:
                logger.error(f"[ingestion] Metrics fetch failed: {e}")
                raise

            result = self.ingest_text(text)

            if enrich and self._resolver is not None:
                await self._enrich(result)

            for warning in result.report.warnings:
                logger.warning(f"[ingestion] Partial data: {warning}")

            logger.info(
                f"[ingestion] Pass complete: {result.report.samples} samples, "
                f"{len(result.snapshot.channels)} channels, "
                f"{len(result.snapshot.stuck_packets)} stuck packets"
            )

            self._latest = result
            return result

    async def get_snapshot(self, max_age_seconds: float = 30.0) -> IngestionResult:
        """Return the latest result, refreshing it when older than max_age_seconds."""
        latest = self._latest
        if latest is not None:
            age = (self._clock.now() - latest.snapshot.observed_at).total_seconds()
            if age <= max_age_seconds:
                return latest
        return await self.refresh()

    async def _enrich(self, result: IngestionResult) -> None:
        """Fill dst_chain of each channel aggregate from the resolver."""
        channels = [
            c for c in result.snapshot.channels
            if c.chain_id != UNKNOWN and c.src_channel != UNKNOWN
        ]
        if not channels:
            return

        keys = [(c.chain_id, c.src_channel, c.src_port) for c in channels]
        outcomes = await self._resolver.resolve_batch(keys)

        for channel, outcome in zip(channels, outcomes):
            if outcome.resolution is not None:
                channel.dst_chain = outcome.resolution.counterparty_chain_id
                result.report.channels_resolved += 1
            else:
                result.report.channels_unresolved += 1

        if result.report.channels_unresolved:
            result.report.warnings.append(
                f"{result.report.channels_unresolved} channels could not be resolved"
            )

    async def close(self) -> None:
        await self._source.close()


__all__ = [
    "MetricsFetchError",
    "MetricsSource",
    "IngestionReport",
    "IngestionResult",
    "MetricsIngestionService",
]
