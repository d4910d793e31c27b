"""
Channel Resolver - Chain State Client.

Read-only IBC queries against a chain's REST (LCD) endpoint.
Each method returns the decoded JSON body, or None when the
endpoint answers 404.
"""

from typing import Any, Dict, Optional

from core.http_client import HttpClientBase

from .exceptions import ChainQueryError


class ChainStateClient(HttpClientBase):
    """aiohttp client for IBC channel, connection and client state."""

    name = "chain-rest"
    error_class = ChainQueryError

    async def get_channel(self, rest_url: str, channel_id: str, port_id: str) -> Optional[Dict[str, Any]]:
        url = f"{rest_url}/ibc/core/channel/v1/channels/{channel_id}/ports/{port_id}"
        return await self._request("GET", url, allow_not_found=True)

    async def get_connection(self, rest_url: str, connection_id: str) -> Optional[Dict[str, Any]]:
        url = f"{rest_url}/ibc/core/connection/v1/connections/{connection_id}"
        return await self._request("GET", url, allow_not_found=True)

    async def get_channel_client_state(
        self, rest_url: str, channel_id: str, port_id: str
    ) -> Optional[Dict[str, Any]]:
        url = f"{rest_url}/ibc/core/channel/v1/channels/{channel_id}/ports/{port_id}/client_state"
        return await self._request("GET", url, allow_not_found=True)


__all__ = ["ChainStateClient"]
