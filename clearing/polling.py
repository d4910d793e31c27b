"""
Clearing - Polling Fallback.

Used when the push channel is unavailable: reads the status at a
fixed interval until it is terminal or the attempts run out.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

from .errors import PollTimeout
from .subscriptions import StatusCallback
from .types import ClearingStatus


logger = logging.getLogger(__name__)


DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_MAX_ATTEMPTS = 150

StatusReader = Callable[[str], Union[ClearingStatus, Awaitable[ClearingStatus]]]


async def poll_for_completion(
    get_status: StatusReader,
    token: str,
    interval: float = DEFAULT_POLL_INTERVAL,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    on_update: Optional[StatusCallback] = None,
) -> ClearingStatus:
    """
    Poll until the token reaches a terminal state.

    Args:
        get_status: Sync or async status reader
        token: Token id
        interval: Seconds between reads
        max_attempts: Reads before giving up
        on_update: Called whenever the observed state changes

    Returns:
        The terminal ClearingStatus

    Raises:
        PollTimeout: If no terminal state was seen in max_attempts reads
        TokenNotFound: Propagated from get_status
    """
    last_state = None

    for attempt in range(1, max_attempts + 1):
        status = get_status(token)
        if inspect.isawaitable(status):
            status = await status

        if status.state != last_state:
            last_state = status.state
            if on_update is not None:
                result = on_update(status)
                if inspect.isawaitable(result):
                    await result

        if status.is_terminal:
            logger.debug(f"[polling] {token} terminal after {attempt} attempts")
            return status

        if attempt < max_attempts:
            await asyncio.sleep(interval)

    raise PollTimeout(
        f"No terminal status after {max_attempts} attempts",
        token=token,
        context={"interval": interval, "max_attempts": max_attempts},
    )


__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_MAX_ATTEMPTS",
    "StatusReader",
    "poll_for_completion",
]
