"""
Channel Resolver - Resolver.

============================================================
PURPOSE
============================================================
Finds the counterparty of a (chain, channel, port) triple by
walking the source chain's own state:

    1. channel      -> counterparty channel, first connection hop
    2. connection   -> client id, counterparty client/connection
    3. client state -> counterparty chain id

The counterparty chain never has to be reachable.

============================================================
CONCURRENCY
============================================================
- The cache and the in-flight table belong to one resolver.
- Concurrent resolutions of the same key share one lookup: the
  first caller performs it, the others await its future.
  If that first caller is cancelled, a waiter takes over the
  lookup instead of inheriting the cancellation.
- Every remote call is bounded by lookup_timeout.
- Batches run in groups of batch_size. Entries in a group run
  concurrently, groups run one after another.

============================================================
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Sequence

from core.exceptions import UpstreamError

from .client import ChainStateClient
from .exceptions import (
    ResolutionError,
    ResolutionNotFound,
    ResolutionTimeout,
    ResolutionFailed,
)
from .models import (
    DEFAULT_PORT,
    ResolutionKey,
    ChannelResolution,
    BatchResolutionResult,
    normalize_key,
)
from .registry import ChainEndpointRegistry


logger = logging.getLogger(__name__)


DEFAULT_BATCH_SIZE = 5
DEFAULT_LOOKUP_TIMEOUT = 10.0


class ChannelResolver:
    """Resolves channel counterparties with caching and in-flight de-duplication."""

    def __init__(
        self,
        registry: ChainEndpointRegistry,
        client: Optional[ChainStateClient] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        lookup_timeout: float = DEFAULT_LOOKUP_TIMEOUT,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._registry = registry
        self._client = client or ChainStateClient(timeout=lookup_timeout)
        self._batch_size = batch_size
        self._lookup_timeout = lookup_timeout

        self._cache: Dict[ResolutionKey, ChannelResolution] = {}
        self._in_flight: Dict[ResolutionKey, asyncio.Future] = {}

        self._hits = 0
        self._misses = 0
        self._lookups = 0

    @property
    def batch_size(self) -> int:
        return self._batch_size

    # ─────────────────────────────────────────────────────────────
    # Resolution
    # ─────────────────────────────────────────────────────────────

    async def resolve(
        self,
        source_chain_id: str,
        channel_id: str,
        port_id: str = DEFAULT_PORT,
    ) -> ChannelResolution:
        """
        Resolve the counterparty of a channel end.

        Raises:
            ResolutionNotFound: Channel, connection or client state absent
            ResolutionTimeout: A remote lookup exceeded lookup_timeout
            ResolutionFailed: The chain endpoint returned an error
        """
        key = (source_chain_id, channel_id, port_id or DEFAULT_PORT)

        while True:
            cached = self._cache.get(key)
            if cached is not None:
                self._hits += 1
                return cached

            # No await between the check and the insert in _lead()
            pending = self._in_flight.get(key)
            if pending is None:
                return await self._lead(key)

            self._hits += 1
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # The leading caller was cancelled, not this one
                logger.debug(f"[resolver] Lookup of {key} abandoned by its caller, retrying")

    async def _lead(self, key: ResolutionKey) -> ChannelResolution:
        """Perform the lookup for key on behalf of every concurrent caller."""
        self._misses += 1
        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future

        try:
            resolution = await self._lookup(key)
        except BaseException as e:
            if isinstance(e, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(e)
                # Mark retrieved when nobody else was waiting
                future.exception()
            raise
        else:
            self._cache[key] = resolution
            future.set_result(resolution)
            return resolution
        finally:
            self._in_flight.pop(key, None)

    async def _lookup(self, key: ResolutionKey) -> ChannelResolution:
        chain_id, channel_id, port_id = key

        rest_url = self._registry.lookup(chain_id)
        if rest_url is None:
            raise ResolutionNotFound(
                f"No REST endpoint registered for {chain_id}",
                chain_id=chain_id, channel_id=channel_id, port_id=port_id,
            )

        self._lookups += 1
        logger.debug(f"[resolver] Resolving {chain_id}/{port_id}/{channel_id}")

        channel_data = await self._call(
            key, "channel", self._client.get_channel(rest_url, channel_id, port_id)
        )
        channel = (channel_data or {}).get("channel") or {}
        counterparty = channel.get("counterparty") or {}
        counterparty_channel_id = counterparty.get("channel_id")
        hops = channel.get("connection_hops") or []
        if not counterparty_channel_id or not hops:
            raise self._not_found(key, "channel has no counterparty or connection hop")
        connection_id = hops[0]

        connection_data = await self._call(
            key, "connection", self._client.get_connection(rest_url, connection_id)
        )
        connection = (connection_data or {}).get("connection") or {}
        client_id = connection.get("client_id")
        connection_counterparty = connection.get("counterparty") or {}
        counterparty_client_id = connection_counterparty.get("client_id")
        counterparty_connection_id = connection_counterparty.get("connection_id")
        if not client_id or not counterparty_client_id or not counterparty_connection_id:
            raise self._not_found(key, f"connection {connection_id} is incomplete")

        client_data = await self._call(
            key, "client_state", self._client.get_channel_client_state(rest_url, channel_id, port_id)
        )
        identified = (client_data or {}).get("identified_client_state") or {}
        counterparty_chain_id = (identified.get("client_state") or {}).get("chain_id")
        if not counterparty_chain_id:
            raise self._not_found(key, "client state has no chain id")

        self._registry.report_success(chain_id)

        resolution = ChannelResolution(
            source_chain_id=chain_id,
            channel_id=channel_id,
            port_id=port_id,
            counterparty_chain_id=counterparty_chain_id,
            counterparty_channel_id=counterparty_channel_id,
            counterparty_port_id=counterparty.get("port_id") or port_id,
            counterparty_client_id=counterparty_client_id,
            counterparty_connection_id=counterparty_connection_id,
            connection_id=connection_id,
            client_id=client_id,
        )
        logger.info(
            f"[resolver] {chain_id}/{channel_id} -> "
            f"{counterparty_chain_id}/{counterparty_channel_id}"
        )
        return resolution

    async def _call(self, key: ResolutionKey, step: str, request: Awaitable[Any]) -> Any:
        """Run one remote lookup under the timeout, mapping transport errors."""
        chain_id, channel_id, port_id = key
        try:
            return await asyncio.wait_for(request, timeout=self._lookup_timeout)
        except asyncio.TimeoutError:
            self._registry.report_failure(chain_id)
            raise ResolutionTimeout(
                f"{step} lookup timed out after {self._lookup_timeout}s",
                chain_id=chain_id, channel_id=channel_id, port_id=port_id,
            )
        except UpstreamError as e:
            self._registry.report_failure(chain_id)
            if isinstance(e.cause, asyncio.TimeoutError):
                raise ResolutionTimeout(
                    f"{step} lookup timed out",
                    chain_id=chain_id, channel_id=channel_id, port_id=port_id, cause=e,
                )
            raise ResolutionFailed(
                f"{step} lookup failed: {e.message}",
                chain_id=chain_id, channel_id=channel_id, port_id=port_id, cause=e,
            )

    @staticmethod
    def _not_found(key: ResolutionKey, reason: str) -> ResolutionNotFound:
        chain_id, channel_id, port_id = key
        return ResolutionNotFound(
            f"Cannot resolve {chain_id}/{port_id}/{channel_id}: {reason}",
            chain_id=chain_id, channel_id=channel_id, port_id=port_id,
        )

    # ─────────────────────────────────────────────────────────────
    # Batch Resolution
    # ─────────────────────────────────────────────────────────────

    async def resolve_batch(self, keys: Sequence[Sequence[str]]) -> List[BatchResolutionResult]:
        """
        Resolve many channels with bounded concurrency.

        Args:
            keys: (chain, channel) or (chain, channel, port) entries

        Returns:
            One result per entry, in input order. A failing entry
            carries its error and never affects the others.
        """
        normalized = [normalize_key(k) for k in keys]
        results: List[BatchResolutionResult] = []

        for start in range(0, len(normalized), self._batch_size):
            group = normalized[start:start + self._batch_size]
            outcomes = await asyncio.gather(
                *(self.resolve(*key) for key in group),
                return_exceptions=True,
            )
            for key, outcome in zip(group, outcomes):
                results.append(self._to_result(key, outcome))

        failed = sum(1 for r in results if not r.ok)
        if failed:
            logger.warning(f"[resolver] Batch of {len(results)}: {failed} entries failed")
        return results

    @staticmethod
    def _to_result(key: ResolutionKey, outcome: Any) -> BatchResolutionResult:
        if isinstance(outcome, ChannelResolution):
            return BatchResolutionResult(key=key, resolution=outcome)
        if isinstance(outcome, ResolutionError):
            return BatchResolutionResult(key=key, error=outcome)
        chain_id, channel_id, port_id = key
        if isinstance(outcome, asyncio.CancelledError):
            return BatchResolutionResult(
                key=key,
                error=ResolutionFailed(
                    "Lookup was cancelled",
                    chain_id=chain_id, channel_id=channel_id, port_id=port_id,
                ),
            )
        logger.error(f"[resolver] Unexpected error resolving {key}: {outcome!r}")
        return BatchResolutionResult(
            key=key,
            error=ResolutionFailed(
                f"Unexpected error: {outcome}",
                chain_id=chain_id, channel_id=channel_id, port_id=port_id, cause=outcome,
            ),
        )

    # ─────────────────────────────────────────────────────────────
    # Cache Access
    # ─────────────────────────────────────────────────────────────

    def get_cached(
        self, source_chain_id: str, channel_id: str, port_id: str = DEFAULT_PORT
    ) -> Optional[ChannelResolution]:
        """Cached resolution without any remote call."""
        return self._cache.get((source_chain_id, channel_id, port_id))

    async def get_counterparty_chain_id(
        self, source_chain_id: str, channel_id: str, port_id: str = DEFAULT_PORT
    ) -> Optional[str]:
        """Counterparty chain id, or None when the channel cannot be resolved."""
        try:
            resolution = await self.resolve(source_chain_id, channel_id, port_id)
        except ResolutionError as e:
            logger.debug(f"[resolver] No counterparty for {source_chain_id}/{channel_id}: {e}")
            return None
        return resolution.counterparty_chain_id

    def clear(self) -> None:
        """Drop every cached resolution."""
        count = len(self._cache)
        self._cache.clear()
        logger.info(f"[resolver] Cache cleared ({count} entries)")

    def cache_stats(self) -> Dict[str, int]:
        return {
            "entries": len(self._cache),
            "in_flight": len(self._in_flight),
            "hits": self._hits,
            "misses": self._misses,
            "remote_lookups": self._lookups,
        }

    async def close(self) -> None:
        await self._client.close()


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_LOOKUP_TIMEOUT",
    "ChannelResolver",
]
