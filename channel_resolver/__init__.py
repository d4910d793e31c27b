"""
Channel Resolver Package.

Discovers which channel on which counterparty chain a given
(chain, channel, port) triple is connected to.

Components:
- registry: Chain id to REST endpoint mapping
- client: IBC state queries over aiohttp
- resolver: Cached, de-duplicated, batched resolution
"""

from .exceptions import (
    ResolutionError,
    ResolutionNotFound,
    ResolutionTimeout,
    ResolutionFailed,
    ChainQueryError,
)
from .models import (
    DEFAULT_PORT,
    ResolutionKey,
    ChannelResolution,
    BatchResolutionResult,
)
from .registry import ChainEndpointRegistry
from .client import ChainStateClient
from .resolver import ChannelResolver, DEFAULT_BATCH_SIZE


__all__ = [
    "ResolutionError",
    "ResolutionNotFound",
    "ResolutionTimeout",
    "ResolutionFailed",
    "ChainQueryError",
    "DEFAULT_PORT",
    "ResolutionKey",
    "ChannelResolution",
    "BatchResolutionResult",
    "ChainEndpointRegistry",
    "ChainStateClient",
    "ChannelResolver",
    "DEFAULT_BATCH_SIZE",
]
