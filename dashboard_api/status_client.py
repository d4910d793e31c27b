"""
Clearing Status Client.

============================================================
PURPOSE
============================================================
Client side of clearing status delivery.

Waits for a token to finish by subscribing to the push socket.
When the socket cannot be established, or drops and the
reconnect attempts run out, it falls back to polling the
status endpoint.

A caller's on_update sees each state once, in order, no matter
which transport delivered it.

============================================================
USAGE
============================================================
```python
async with ClearingStatusClient("http://localhost:8080") as client:
    final = await client.wait_for_completion(token, on_update=print)
```

============================================================
"""

import asyncio
import inspect
import json
import logging
from typing import Optional, Set

import aiohttp

from core.http_client import HttpClientBase
from clearing import (
    ClearingState,
    ClearingStatus,
    TokenNotFound,
    poll_for_completion,
)
from clearing.subscriptions import StatusCallback


logger = logging.getLogger(__name__)


STATUS_PATH = "/api/clearing/status/{token}"
UPDATES_PATH = "/api/ws/clearing-updates"


class ClearingStatusClient(HttpClientBase):
    """Waits for clearing tokens over websocket push, with polling fallback."""

    name = "clearing-status"

    def __init__(
        self,
        base_url: str,
        poll_interval: float = 2.0,
        poll_max_attempts: int = 150,
        max_reconnect_attempts: int = 5,
        reconnect_interval: float = 1.0,
        max_reconnect_interval: float = 30.0,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._base_url = base_url.rstrip("/")
        self._poll_interval = poll_interval
        self._poll_max_attempts = poll_max_attempts
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_interval = reconnect_interval
        self._max_reconnect_interval = max_reconnect_interval

    # --------------------------------------------------------
    # POLLING
    # --------------------------------------------------------

    async def fetch_status(self, token: str) -> ClearingStatus:
        """
        Read the current status once.

        Raises:
            TokenNotFound: If the server does not know the token
            UpstreamError: On transport failures
        """
        url = self._base_url + STATUS_PATH.format(token=token)
        payload = await self._request("GET", url, allow_not_found=True)
        if payload is None:
            raise TokenNotFound(f"Unknown token {token}", token=token)
        return ClearingStatus.from_dict(payload["data"])

    # --------------------------------------------------------
    # WAITING
    # --------------------------------------------------------

    async def wait_for_completion(
        self,
        token: str,
        on_update: Optional[StatusCallback] = None,
    ) -> ClearingStatus:
        """
        Wait until the token reaches completed or failed.

        Raises:
            TokenNotFound: If the token is unknown
            PollTimeout: If polling ran out of attempts
        """
        last_state: Optional[ClearingState] = None

        async def notify(status: ClearingStatus) -> None:
            nonlocal last_state
            if status.state == last_state:
                return
            last_state = status.state
            if on_update is not None:
                result = on_update(status)
                if inspect.isawaitable(result):
                    await result

        final = await self._watch(token, notify)
        if final is not None:
            return final

        logger.warning(f"[{self.name}] Push unavailable for {token}, falling back to polling")
        return await poll_for_completion(
            self.fetch_status,
            token,
            interval=self._poll_interval,
            max_attempts=self._poll_max_attempts,
            on_update=notify,
        )

    async def _watch(self, token: str, notify) -> Optional[ClearingStatus]:
        """
        Follow the push socket. Returns None when it is unusable.

        A connection counts against max_reconnect_attempts unless it
        delivered a state not seen before, so a server that accepts
        and drops the socket still ends in the polling fallback.
        """
        session = await self._get_session()
        url = self._base_url + UPDATES_PATH
        attempts = 0
        seen: Set[ClearingState] = set()

        while True:
            try:
                async with session.ws_connect(url, heartbeat=20.0) as ws:
                    logger.debug(f"[{self.name}] Connected to {url}")
                    await ws.send_json({"type": "subscribe", "token": token})

                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            status = await self._handle_message(token, msg.data, notify)
                            if status is None:
                                continue
                            if status.state not in seen:
                                seen.add(status.state)
                                attempts = 0
                            if status.is_terminal:
                                await ws.send_json({"type": "unsubscribe", "token": token})
                                return status
                        elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.ERROR):
                            break

                    logger.warning(f"[{self.name}] Socket closed before {token} finished")

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"[{self.name}] Socket connection failed: {e}")

            attempts += 1
            if attempts > self._max_reconnect_attempts:
                logger.error(f"[{self.name}] Max reconnection attempts reached")
                return None

            delay = min(
                self._reconnect_interval * (2 ** (attempts - 1)),
                self._max_reconnect_interval,
            )
            logger.info(f"[{self.name}] Reconnecting in {delay:.1f}s (attempt {attempts})")
            await asyncio.sleep(delay)

    async def _handle_message(self, token: str, data: str, notify) -> Optional[ClearingStatus]:
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"[{self.name}] Ignoring non-JSON message")
            return None

        if message.get("token") != token:
            return None

        if message.get("type") == "error":
            if message.get("error") == "token not found":
                raise TokenNotFound(f"Unknown token {token}", token=token)
            logger.warning(f"[{self.name}] Server error for {token}: {message.get('error')}")
            return None

        if message.get("type") != "clearing_update":
            return None

        status = ClearingStatus.from_dict(message["status"])
        await notify(status)
        return status


__all__ = [
    "ClearingStatusClient",
]
