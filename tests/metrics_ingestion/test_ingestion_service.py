"""
Tests for the Metrics Ingestion Service.

============================================================
PURPOSE
============================================================
Fetch, decode, aggregate and enrich, with the feed and the
resolver mocked.

TEST PRINCIPLES:
- Feed gaps become report warnings, not failures
- Only a failed fetch reaches the caller
- Enrichment fills dst_chain and counts unresolved channels

============================================================
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.clock import MockClock
from channel_resolver.exceptions import ResolutionNotFound
from channel_resolver.models import BatchResolutionResult, ChannelResolution
from metrics_ingestion.labels import UNKNOWN
from metrics_ingestion.source import MetricsFetchError, MetricsIngestionService


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

FEED = (
    "# HELP ibc_effected_packets effected\n"
    'ibc_effected_packets{chain_id="cosmoshub-4",src_channel="channel-141",'
    'dst_channel="channel-0",signer="cosmos1xyz"} 100\n'
    'ibc_uneffected_packets{chain_id="cosmoshub-4",src_channel="channel-141",'
    'dst_channel="channel-0",signer="cosmos1xyz"} 10\n'
    'ibc_effected_packets{chain_id="osmosis-1",src_channel="channel-0",'
    'dst_channel="channel-141",signer="osmo1abc"} 5\n'
)


def make_source(text: str = FEED) -> MagicMock:
    source = MagicMock()
    source.fetch_text = AsyncMock(return_value=text)
    source.close = AsyncMock()
    return source


def resolution_for(chain_id: str, channel_id: str, counterparty_chain: str) -> ChannelResolution:
    return ChannelResolution(
        source_chain_id=chain_id,
        channel_id=channel_id,
        port_id="transfer",
        counterparty_chain_id=counterparty_chain,
        counterparty_channel_id="channel-0",
        counterparty_port_id="transfer",
        counterparty_client_id="07-tendermint-1",
        counterparty_connection_id="connection-1",
        connection_id="connection-257",
        client_id="07-tendermint-259",
    )


# ============================================================
# INGESTION
# ============================================================

class TestIngestText:
    """Tests for ingest_text()."""

    def test_clean_feed_has_no_warnings(self):
        service = MetricsIngestionService(make_source(), clock=MockClock(NOW))

        result = service.ingest_text(FEED)

        assert result.report.samples == 3
        assert result.report.lines_skipped == 0
        assert not result.report.is_partial
        assert result.snapshot.observed_at == NOW

    def test_gaps_are_reported(self):
        text = FEED + "broken line\n" + 'ibc_effected_packets{chain_id="x"} 1\n'
        service = MetricsIngestionService(make_source(), clock=MockClock(NOW))

        result = service.ingest_text(text)

        assert result.report.is_partial
        assert result.report.lines_skipped == 1
        assert result.report.unattributed_samples == 1
        assert len(result.report.warnings) == 2

    def test_empty_feed_is_partial(self):
        service = MetricsIngestionService(make_source(), clock=MockClock(NOW))

        result = service.ingest_text("")

        assert result.report.is_partial
        assert result.snapshot.channels == []


class TestRefresh:
    """Tests for refresh() and get_snapshot()."""

    @pytest.mark.asyncio
    async def test_refresh_stores_latest(self):
        service = MetricsIngestionService(make_source(), clock=MockClock(NOW))

        result = await service.refresh()

        assert service.latest is result
        channel = result.snapshot.get_channel("cosmoshub-4", "channel-141", "channel-0")
        assert channel.packets_relayed == 110

    @pytest.mark.asyncio
    async def test_fetch_failure_is_raised(self):
        source = make_source()
        source.fetch_text = AsyncMock(side_effect=MetricsFetchError("HTTP 503", url="http://m"))
        service = MetricsIngestionService(source, clock=MockClock(NOW))

        with pytest.raises(MetricsFetchError):
            await service.refresh()
        assert service.latest is None

    @pytest.mark.asyncio
    async def test_get_snapshot_reuses_fresh_result(self):
        source = make_source()
        clock = MockClock(NOW)
        service = MetricsIngestionService(source, clock=clock)

        first = await service.get_snapshot(max_age_seconds=30)
        clock.advance(10)
        second = await service.get_snapshot(max_age_seconds=30)
        clock.advance(60)
        third = await service.get_snapshot(max_age_seconds=30)

        assert first is second
        assert third is not first
        assert source.fetch_text.await_count == 2


class TestEnrichment:
    """Tests for counterparty enrichment."""

    @pytest.mark.asyncio
    async def test_dst_chain_filled_from_resolver(self):
        resolver = MagicMock()
        resolver.resolve_batch = AsyncMock(side_effect=lambda keys: [
            BatchResolutionResult(
                key=keys[0], resolution=resolution_for("cosmoshub-4", "channel-141", "osmosis-1")
            ),
            BatchResolutionResult(
                key=keys[1],
                error=ResolutionNotFound("no endpoint", chain_id="osmosis-1"),
            ),
        ])
        service = MetricsIngestionService(make_source(), clock=MockClock(NOW), resolver=resolver)

        result = await service.refresh()

        hub = result.snapshot.get_channel("cosmoshub-4", "channel-141", "channel-0")
        osmo = result.snapshot.get_channel("osmosis-1", "channel-0", "channel-141")
        assert hub.dst_chain == "osmosis-1"
        assert osmo.dst_chain == UNKNOWN
        assert result.report.channels_resolved == 1
        assert result.report.channels_unresolved == 1
        assert result.report.is_partial

        keys = resolver.resolve_batch.await_args.args[0]
        assert keys == [
            ("cosmoshub-4", "channel-141", "transfer"),
            ("osmosis-1", "channel-0", "transfer"),
        ]

    @pytest.mark.asyncio
    async def test_enrich_can_be_skipped(self):
        resolver = MagicMock()
        resolver.resolve_batch = AsyncMock(return_value=[])
        service = MetricsIngestionService(make_source(), clock=MockClock(NOW), resolver=resolver)

        await service.refresh(enrich=False)

        resolver.resolve_batch.assert_not_awaited()
