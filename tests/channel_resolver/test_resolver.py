"""
Tests for the Channel Resolver.

============================================================
PURPOSE
============================================================
Counterparty resolution with the chain state endpoints mocked.

TEST PRINCIPLES:
- A cached key never triggers a second remote lookup sequence
- Concurrent requests for one key share one lookup
- One failing batch entry never affects the others
- Failures are typed, never swallowed

============================================================
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from core.exceptions import UpstreamError
from channel_resolver import (
    ChainEndpointRegistry,
    ChainStateClient,
    ChannelResolver,
    ResolutionFailed,
    ResolutionNotFound,
    ResolutionTimeout,
)


REST_URL = "https://rest.cosmoshub.example"


def channel_body(counterparty_channel: str = "channel-141") -> dict:
    return {
        "channel": {
            "state": "STATE_OPEN",
            "counterparty": {"port_id": "transfer", "channel_id": counterparty_channel},
            "connection_hops": ["connection-257"],
        }
    }


CONNECTION_BODY = {
    "connection": {
        "client_id": "07-tendermint-259",
        "counterparty": {"client_id": "07-tendermint-1", "connection_id": "connection-1"},
    }
}

CLIENT_STATE_BODY = {
    "identified_client_state": {
        "client_id": "07-tendermint-259",
        "client_state": {"chain_id": "osmosis-1"},
    }
}


def make_client() -> MagicMock:
    client = MagicMock()
    client.get_channel = AsyncMock(return_value=channel_body())
    client.get_connection = AsyncMock(return_value=CONNECTION_BODY)
    client.get_channel_client_state = AsyncMock(return_value=CLIENT_STATE_BODY)
    client.close = AsyncMock()
    return client


def make_resolver(client=None, **kwargs) -> ChannelResolver:
    registry = ChainEndpointRegistry({"cosmoshub-4": REST_URL, "osmosis-1": "https://rest.osmo.example"})
    return ChannelResolver(registry, client=client or make_client(), **kwargs)


# ============================================================
# SINGLE RESOLUTION
# ============================================================

class TestResolve:
    """Tests for resolve()."""

    @pytest.mark.asyncio
    async def test_walks_channel_connection_client(self):
        client = make_client()
        resolver = make_resolver(client)

        resolution = await resolver.resolve("cosmoshub-4", "channel-0")

        assert resolution.counterparty_chain_id == "osmosis-1"
        assert resolution.counterparty_channel_id == "channel-141"
        assert resolution.counterparty_port_id == "transfer"
        assert resolution.connection_id == "connection-257"
        assert resolution.client_id == "07-tendermint-259"
        assert resolution.counterparty_client_id == "07-tendermint-1"
        assert resolution.counterparty_connection_id == "connection-1"
        client.get_channel.assert_awaited_once_with(REST_URL, "channel-0", "transfer")
        client.get_connection.assert_awaited_once_with(REST_URL, "connection-257")

    @pytest.mark.asyncio
    async def test_second_resolve_hits_cache(self):
        client = make_client()
        resolver = make_resolver(client)

        first = await resolver.resolve("cosmoshub-4", "channel-0")
        second = await resolver.resolve("cosmoshub-4", "channel-0")

        assert first is second
        assert client.get_channel.await_count == 1
        assert client.get_connection.await_count == 1
        assert client.get_channel_client_state.await_count == 1
        assert resolver.cache_stats()["hits"] == 1
        assert resolver.cache_stats()["remote_lookups"] == 1

    @pytest.mark.asyncio
    async def test_clear_forces_new_lookup(self):
        client = make_client()
        resolver = make_resolver(client)

        await resolver.resolve("cosmoshub-4", "channel-0")
        resolver.clear()
        await resolver.resolve("cosmoshub-4", "channel-0")

        assert client.get_channel.await_count == 2
        assert resolver.cache_stats()["entries"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_resolves_share_one_lookup(self):
        client = make_client()
        gate = asyncio.Event()

        async def slow_channel(*args):
            await gate.wait()
            return channel_body()

        client.get_channel = AsyncMock(side_effect=slow_channel)
        resolver = make_resolver(client)

        tasks = [asyncio.create_task(resolver.resolve("cosmoshub-4", "channel-0")) for _ in range(4)]
        await asyncio.sleep(0)
        assert resolver.cache_stats()["in_flight"] == 1
        gate.set()
        results = await asyncio.gather(*tasks)

        assert all(r is results[0] for r in results)
        assert client.get_channel.await_count == 1
        assert resolver.cache_stats()["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_waiters_share_the_failure(self):
        client = make_client()
        gate = asyncio.Event()

        async def missing_channel(*args):
            await gate.wait()
            return None

        client.get_channel = AsyncMock(side_effect=missing_channel)
        resolver = make_resolver(client)

        tasks = [asyncio.create_task(resolver.resolve("cosmoshub-4", "channel-9")) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(o, ResolutionNotFound) for o in outcomes)
        assert client.get_channel.await_count == 1
        assert resolver.get_cached("cosmoshub-4", "channel-9") is None

    @pytest.mark.asyncio
    async def test_cancelled_leader_does_not_cancel_waiters(self):
        client = make_client()
        started = asyncio.Event()
        gate = asyncio.Event()

        async def slow_channel(*args):
            started.set()
            await gate.wait()
            return channel_body()

        client.get_channel = AsyncMock(side_effect=slow_channel)
        resolver = make_resolver(client)

        leader = asyncio.create_task(resolver.resolve("cosmoshub-4", "channel-141"))
        await started.wait()
        batch = asyncio.create_task(resolver.resolve_batch([("cosmoshub-4", "channel-141")]))
        while resolver.cache_stats()["hits"] < 1:
            await asyncio.sleep(0)

        leader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leader
        await asyncio.sleep(0)
        gate.set()
        results = await batch

        assert results[0].ok
        assert results[0].resolution.counterparty_chain_id == "osmosis-1"
        assert client.get_channel.await_count == 2
        assert resolver.cache_stats()["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_the_lookup_running(self):
        client = make_client()
        gate = asyncio.Event()

        async def slow_channel(*args):
            await gate.wait()
            return channel_body()

        client.get_channel = AsyncMock(side_effect=slow_channel)
        resolver = make_resolver(client)

        leader = asyncio.create_task(resolver.resolve("cosmoshub-4", "channel-0"))
        await asyncio.sleep(0)
        waiter = asyncio.create_task(resolver.resolve("cosmoshub-4", "channel-0"))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        gate.set()

        assert (await leader).counterparty_chain_id == "osmosis-1"
        assert client.get_channel.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_chain_is_not_found(self):
        client = make_client()
        resolver = make_resolver(client)

        with pytest.raises(ResolutionNotFound):
            await resolver.resolve("unknown-1", "channel-0")
        client.get_channel.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_channel_is_not_found(self):
        client = make_client()
        client.get_channel = AsyncMock(return_value=None)
        resolver = make_resolver(client)

        with pytest.raises(ResolutionNotFound) as exc_info:
            await resolver.resolve("cosmoshub-4", "channel-404")
        assert exc_info.value.channel_id == "channel-404"
        client.get_connection.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_client_state_without_chain_id_is_not_found(self):
        client = make_client()
        client.get_channel_client_state = AsyncMock(
            return_value={"identified_client_state": {"client_state": {}}}
        )
        resolver = make_resolver(client)

        with pytest.raises(ResolutionNotFound):
            await resolver.resolve("cosmoshub-4", "channel-0")

    @pytest.mark.asyncio
    async def test_slow_endpoint_times_out(self):
        client = make_client()

        async def hang(*args):
            await asyncio.sleep(5)

        client.get_channel = AsyncMock(side_effect=hang)
        resolver = make_resolver(client, lookup_timeout=0.05)

        with pytest.raises(ResolutionTimeout):
            await resolver.resolve("cosmoshub-4", "channel-0")

    @pytest.mark.asyncio
    async def test_upstream_error_is_resolution_failed(self):
        client = make_client()
        client.get_connection = AsyncMock(
            side_effect=UpstreamError("HTTP 500 from chain-rest", url=REST_URL, status_code=500)
        )
        resolver = make_resolver(client)

        with pytest.raises(ResolutionFailed) as exc_info:
            await resolver.resolve("cosmoshub-4", "channel-0")
        assert isinstance(exc_info.value.cause, UpstreamError)

    @pytest.mark.asyncio
    async def test_get_counterparty_chain_id_swallows_resolution_errors(self):
        client = make_client()
        client.get_channel = AsyncMock(return_value=None)
        resolver = make_resolver(client)

        assert await resolver.get_counterparty_chain_id("cosmoshub-4", "channel-0") is None


# ============================================================
# BATCH RESOLUTION
# ============================================================

class TestResolveBatch:
    """Tests for resolve_batch()."""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_the_rest(self):
        client = make_client()

        async def channel(rest_url, channel_id, port_id):
            if channel_id == "channel-3":
                raise UpstreamError("HTTP 502 from chain-rest", url=rest_url, status_code=502)
            return channel_body()

        client.get_channel = AsyncMock(side_effect=channel)
        resolver = make_resolver(client)
        keys = [("cosmoshub-4", f"channel-{i}") for i in range(5)]

        results = await resolver.resolve_batch(keys)

        assert [r.key[1] for r in results] == [f"channel-{i}" for i in range(5)]
        assert [r.ok for r in results] == [True, True, True, False, True]
        assert isinstance(results[3].error, ResolutionFailed)
        assert all(r.resolution.counterparty_chain_id == "osmosis-1" for r in results if r.ok)

    @pytest.mark.asyncio
    async def test_groups_never_exceed_batch_size(self):
        client = make_client()
        active = 0
        peak = 0

        async def channel(*args):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return channel_body()

        client.get_channel = AsyncMock(side_effect=channel)
        resolver = make_resolver(client)

        results = await resolver.resolve_batch([("cosmoshub-4", f"channel-{i}") for i in range(12)])

        assert len(results) == 12
        assert all(r.ok for r in results)
        assert peak <= 5

    @pytest.mark.asyncio
    async def test_port_defaults_to_transfer(self):
        resolver = make_resolver()

        results = await resolver.resolve_batch([("cosmoshub-4", "channel-0"), ("cosmoshub-4", "channel-1", "icahost")])

        assert results[0].key == ("cosmoshub-4", "channel-0", "transfer")
        assert results[1].key == ("cosmoshub-4", "channel-1", "icahost")

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            make_resolver(batch_size=0)


# ============================================================
# ENDPOINT REGISTRY
# ============================================================

class TestChainEndpointRegistry:
    """Tests for ChainEndpointRegistry."""

    def test_trailing_slash_is_stripped(self):
        registry = ChainEndpointRegistry({"osmosis-1": "https://rest.osmo.example/"})

        assert registry.lookup("osmosis-1") == "https://rest.osmo.example"

    def test_repeated_failures_invalidate_and_reload(self):
        loads = iter([{"osmosis-1": "https://new.osmo.example"}])
        registry = ChainEndpointRegistry(
            {"osmosis-1": "https://old.osmo.example"},
            loader=lambda: next(loads),
            failure_threshold=2,
        )

        assert registry.report_failure("osmosis-1") is False
        assert registry.report_failure("osmosis-1") is True
        assert "osmosis-1" not in registry.known_chains()
        assert registry.lookup("osmosis-1") == "https://new.osmo.example"
        assert registry.failure_count("osmosis-1") == 0

    def test_success_resets_failures(self):
        registry = ChainEndpointRegistry({"osmosis-1": "https://rest.osmo.example"})

        registry.report_failure("osmosis-1")
        registry.report_success("osmosis-1")

        assert registry.failure_count("osmosis-1") == 0

    def test_loader_error_reads_as_missing(self):
        def broken():
            raise RuntimeError("config unreadable")

        registry = ChainEndpointRegistry(loader=broken)

        assert registry.lookup("osmosis-1") is None

    @pytest.mark.asyncio
    async def test_resolver_reports_failures_to_registry(self):
        client = make_client()
        client.get_channel = AsyncMock(side_effect=UpstreamError("HTTP 503", url=REST_URL, status_code=503))
        registry = ChainEndpointRegistry({"cosmoshub-4": REST_URL}, failure_threshold=5)
        resolver = ChannelResolver(registry, client=client)

        with pytest.raises(ResolutionFailed):
            await resolver.resolve("cosmoshub-4", "channel-0")

        assert registry.failure_count("cosmoshub-4") == 1


# ============================================================
# REST CLIENT AGAINST A LOCAL SERVER
# ============================================================

class TestChainStateClient:
    """End-to-end resolution through ChainStateClient and aiohttp."""

    @pytest.mark.asyncio
    async def test_resolution_over_http(self):
        async def get_channel(request):
            return web.json_response(channel_body())

        async def get_connection(request):
            return web.json_response(CONNECTION_BODY)

        async def get_client_state(request):
            return web.json_response(CLIENT_STATE_BODY)

        app = web.Application()
        app.router.add_get("/ibc/core/channel/v1/channels/{channel}/ports/{port}", get_channel)
        app.router.add_get("/ibc/core/connection/v1/connections/{connection}", get_connection)
        app.router.add_get(
            "/ibc/core/channel/v1/channels/{channel}/ports/{port}/client_state", get_client_state
        )

        server = TestServer(app)
        await server.start_server()
        client = ChainStateClient(timeout=5)
        base_url = str(server.make_url("/")).rstrip("/")
        try:
            registry = ChainEndpointRegistry({"cosmoshub-4": base_url})
            resolver = ChannelResolver(registry, client=client)

            resolution = await resolver.resolve("cosmoshub-4", "channel-0")
            missing = await client.get_channel(base_url, "channel-0", "no/such")

            assert resolution.counterparty_chain_id == "osmosis-1"
            assert missing is None
        finally:
            await client.close()
            await server.close()
