"""
Channel Resolver - Data Models.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Tuple

from .exceptions import ResolutionError


DEFAULT_PORT = "transfer"

ResolutionKey = Tuple[str, str, str]
"""(source_chain_id, channel_id, port_id)"""


@dataclass(frozen=True)
class ChannelResolution:
    """
    Counterparty information of one channel end.

    Channel topology is treated as immutable, so a resolution is
    never updated once created.
    """

    source_chain_id: str
    channel_id: str
    port_id: str
    counterparty_chain_id: str
    counterparty_channel_id: str
    counterparty_port_id: str
    counterparty_client_id: str
    counterparty_connection_id: str
    connection_id: str
    client_id: str

    @property
    def key(self) -> ResolutionKey:
        return self.source_chain_id, self.channel_id, self.port_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BatchResolutionResult:
    """Outcome of one entry of a batch resolution."""

    key: ResolutionKey
    resolution: Optional[ChannelResolution] = None
    error: Optional[ResolutionError] = None

    @property
    def ok(self) -> bool:
        return self.resolution is not None

    def to_dict(self) -> Dict[str, Any]:
        chain_id, channel_id, port_id = self.key
        return {
            "chain_id": chain_id,
            "channel_id": channel_id,
            "port_id": port_id,
            "resolution": self.resolution.to_dict() if self.resolution else None,
            "error": self.error.to_dict() if self.error else None,
        }


def normalize_key(entry) -> ResolutionKey:
    """Accept (chain, channel) or (chain, channel, port)."""
    if len(entry) == 2:
        return entry[0], entry[1], DEFAULT_PORT
    chain_id, channel_id, port_id = entry
    return chain_id, channel_id, port_id or DEFAULT_PORT


__all__ = [
    "DEFAULT_PORT",
    "ResolutionKey",
    "ChannelResolution",
    "BatchResolutionResult",
    "normalize_key",
]
