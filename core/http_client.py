"""
Core Module - HTTP Client Base.

============================================================
PURPOSE
============================================================
Shared aiohttp plumbing for every outbound HTTP dependency:
metrics feed, chain REST endpoints, payment tx lookups and the
relayer REST API.

- Lazily created session, or an injected one (tests, sharing)
- 4xx/5xx answers become a typed UpstreamError
- Connection failures become a typed UpstreamError
- Every call is bounded by the client timeout

============================================================
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Type

import aiohttp

from .exceptions import UpstreamError


logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 10.0
USER_AGENT = "IBCRelayMonitor/1.0"


class HttpClientBase:
    """
    Base class for aiohttp backed clients.

    Subclasses set `name` for log prefixes and may narrow
    `error_class` to their own UpstreamError subclass.
    """

    name: str = "http"
    error_class: Type[UpstreamError] = UpstreamError

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None

    # ─────────────────────────────────────────────────────────────
    # HTTP Helpers
    # ─────────────────────────────────────────────────────────────

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"User-Agent": USER_AGENT},
            )
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        expect_json: bool = True,
        allow_not_found: bool = False,
    ) -> Any:
        """
        Make an HTTP request with error handling.

        Args:
            method: HTTP method
            url: Absolute URL
            params: Query parameters
            json_body: JSON request body
            expect_json: Decode the body as JSON, else return text
            allow_not_found: Return None on 404 instead of raising

        Raises:
            UpstreamError (or error_class): On HTTP errors, bad bodies
            and connection failures
        """
        session = await self._get_session()

        try:
            async with session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Accept": "application/json" if expect_json else "text/plain"},
            ) as response:
                if response.status == 404 and allow_not_found:
                    return None

                if response.status >= 400:
                    body = await response.text()
                    raise self.error_class(
                        message=f"HTTP {response.status} from {self.name}",
                        url=url,
                        status_code=response.status,
                        response_body=body[:500],
                    )

                if not expect_json:
                    return await response.text()

                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise self.error_class(
                        message=f"Invalid JSON from {self.name}",
                        url=url,
                        status_code=response.status,
                        cause=e,
                    )

        except aiohttp.ClientError as e:
            raise self.error_class(
                message=f"Connection error: {e}",
                url=url,
                cause=e,
            )
        except asyncio.TimeoutError as e:
            raise self.error_class(
                message=f"Request to {self.name} timed out after {self._timeout}s",
                url=url,
                cause=e,
            )

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Close resources."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name})>"


__all__ = [
    "DEFAULT_TIMEOUT",
    "HttpClientBase",
]
