"""
Clearing - Execution Dispatch.

============================================================
PURPOSE
============================================================
Hands a paid token to the external relayer and relays its
progress back to the engine.

Contract:
- dispatch() returns True once the relayer accepted the work
- progress arrives later through the report callback
- the engine calls dispatch() at most once per token

HermesDispatcher checks the relayer is reachable, accepts, then
posts one clear_packets request per channel in the background,
reporting after each one. The last report is final.

============================================================
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Protocol, Set, Tuple

from core.exceptions import UpstreamError
from core.http_client import HttpClientBase

from .types import ClearingToken, ExecutionProgress


logger = logging.getLogger(__name__)


ProgressCallback = Callable[[str, ExecutionProgress, bool], Awaitable[Any]]
"""report(token_id, progress, final)"""


class ExecutionDispatcher(Protocol):
    """External collaborator performing the clearing."""

    async def dispatch(self, token: ClearingToken, report: ProgressCallback) -> bool:
        ...


# ============================================================
# CLEAR REQUESTS
# ============================================================

@dataclass
class ClearPacketsRequest:
    """Body of POST /clear_packets. No sequences means the whole channel."""

    chain_id: str
    port: str
    channel: str
    sequences: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "chain_id": self.chain_id,
            "port": self.port,
            "channel": self.channel,
        }
        if self.sequences:
            body["sequences"] = list(self.sequences)
        return body


def build_clear_requests(token: ClearingToken) -> List[ClearPacketsRequest]:
    """Group a token's targets into one request per source channel."""
    grouped: "OrderedDict[Tuple[str, str, str], Set[int]]" = OrderedDict()
    whole_channels: Set[Tuple[str, str, str]] = set()

    for pair in token.targets.channels:
        key = (pair.src_chain, pair.src_port, pair.src_channel)
        grouped.setdefault(key, set())
        whole_channels.add(key)

    for packet in token.targets.packets:
        key = (packet.chain_id, packet.port_id, packet.channel_id)
        grouped.setdefault(key, set()).add(packet.sequence)

    requests = []
    for (chain_id, port, channel), sequences in grouped.items():
        # A whole-channel clear already covers listed sequences
        seqs = [] if (chain_id, port, channel) in whole_channels else sorted(sequences)
        requests.append(ClearPacketsRequest(chain_id, port, channel, seqs))
    return requests


def _extract_tx_hashes(result: Any) -> List[str]:
    hashes: List[str] = []
    if isinstance(result, dict):
        for key in ("tx_hash", "txhash", "hash"):
            value = result.get(key)
            if isinstance(value, str) and value:
                hashes.append(value)
        for value in result.values():
            if isinstance(value, (dict, list)):
                hashes.extend(_extract_tx_hashes(value))
    elif isinstance(result, list):
        for item in result:
            hashes.extend(_extract_tx_hashes(item))
    return hashes


# ============================================================
# HERMES DISPATCHER
# ============================================================

class HermesDispatcher(HttpClientBase):
    """Dispatches clearing to a Hermes relayer REST endpoint."""

    name = "hermes"

    def __init__(self, base_url: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")
        self._tasks: Set[asyncio.Task] = set()

    async def dispatch(self, token: ClearingToken, report: ProgressCallback) -> bool:
        requests = build_clear_requests(token)
        if not requests:
            logger.warning(f"[hermes] Token {token.token} has nothing to clear")
            return False

        try:
            await self._request("GET", f"{self.base_url}/version")
        except UpstreamError as e:
            logger.error(f"[hermes] Relayer unavailable, rejecting {token.token}: {e}")
            return False

        task = asyncio.create_task(self._run(token, requests, report))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"[hermes] Accepted {token.token}: {len(requests)} clear requests")
        return True

    async def _run(
        self,
        token: ClearingToken,
        requests: List[ClearPacketsRequest],
        report: ProgressCallback,
    ) -> None:
        for index, request in enumerate(requests):
            final = index == len(requests) - 1
            progress = await self._clear(request)
            try:
                await report(token.token, progress, final)
            except Exception as e:
                logger.error(f"[hermes] Progress report for {token.token} failed: {e}")
                return

    async def _clear(self, request: ClearPacketsRequest) -> ExecutionProgress:
        expected = len(request.sequences)
        try:
            body = await self._request(
                "POST", f"{self.base_url}/clear_packets", json_body=request.to_dict()
            )
        except UpstreamError as e:
            logger.warning(
                f"[hermes] clear_packets failed for {request.chain_id}/{request.channel}: {e}"
            )
            return ExecutionProgress(packets_failed=expected, error=e.message)

        if isinstance(body, dict) and body.get("status") == "error":
            error = str(body.get("result") or "relayer reported an error")
            return ExecutionProgress(packets_failed=expected, error=error)

        result = body.get("result") if isinstance(body, dict) else body
        tx_hashes = tuple(dict.fromkeys(_extract_tx_hashes(result)))
        cleared = expected if expected else len(tx_hashes)
        return ExecutionProgress(packets_cleared=cleared, tx_hashes=tx_hashes)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await super().close()


__all__ = [
    "ProgressCallback",
    "ExecutionDispatcher",
    "ClearPacketsRequest",
    "build_clear_requests",
    "HermesDispatcher",
]
