"""
Clearing - Status Subscriptions.

============================================================
PURPOSE
============================================================
Fan-out of status changes to subscribers, independent of the
transport that carries them (websocket, in-process callback).

- Each subscriber owns a queue and a delivery task
- A subscriber sees a token's changes in the order they happened
- No ordering is promised across different subscribers
- A slow or failing subscriber never blocks the publisher
- unsubscribe() stops delivery immediately and releases the
  registration; the token itself is untouched

============================================================
"""

import asyncio
import inspect
import itertools
import logging
from typing import Awaitable, Callable, Dict, Optional, Union

from .types import ClearingStatus


logger = logging.getLogger(__name__)


StatusCallback = Callable[[ClearingStatus], Union[None, Awaitable[None]]]


class Subscription:
    """Handle for one subscriber of one token."""

    def __init__(self, hub: "SubscriptionHub", subscription_id: int, token: str, callback: StatusCallback):
        self._hub = hub
        self.subscription_id = subscription_id
        self.token = token
        self._callback = callback
        self._queue: "asyncio.Queue[ClearingStatus]" = asyncio.Queue()
        self._active = True
        self._task: asyncio.Task = asyncio.get_running_loop().create_task(self._deliver())

    @property
    def active(self) -> bool:
        return self._active

    def _enqueue(self, status: ClearingStatus) -> None:
        if self._active:
            self._queue.put_nowait(status)

    async def _deliver(self) -> None:
        while self._active:
            status = await self._queue.get()
            try:
                if not self._active:
                    return
                result = self._callback(status)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"[subscriptions] Subscriber {self.subscription_id} for {self.token} failed: {e}"
                )
            finally:
                self._queue.task_done()

    def unsubscribe(self) -> None:
        """Stop delivery now. Safe to call more than once."""
        if not self._active:
            return
        self._active = False
        self._hub._remove(self)
        self._task.cancel()

    async def wait_idle(self) -> None:
        """Wait until every queued status has been delivered."""
        if self._active:
            await self._queue.join()


class SubscriptionHub:
    """Registry of subscribers per token."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Dict[int, Subscription]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, token: str, callback: StatusCallback) -> Subscription:
        """Register a callback. Must be called from a running event loop."""
        subscription = Subscription(self, next(self._ids), token, callback)
        self._subscribers.setdefault(token, {})[subscription.subscription_id] = subscription
        logger.debug(f"[subscriptions] Subscriber {subscription.subscription_id} on {token}")
        return subscription

    def publish(self, status: ClearingStatus) -> int:
        """
        Queue a status for every subscriber of its token.

        Returns:
            Number of subscribers the status was queued for
        """
        subscribers = list(self._subscribers.get(status.token, {}).values())
        for subscription in subscribers:
            subscription._enqueue(status)
        return len(subscribers)

    def subscriber_count(self, token: Optional[str] = None) -> int:
        if token is not None:
            return len(self._subscribers.get(token, {}))
        return sum(len(subs) for subs in self._subscribers.values())

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscribers.get(subscription.token)
        if subs is None:
            return
        subs.pop(subscription.subscription_id, None)
        if not subs:
            del self._subscribers[subscription.token]

    def drop_token(self, token: str) -> int:
        """Unsubscribe everyone following token. Returns how many."""
        subs = list(self._subscribers.get(token, {}).values())
        for subscription in subs:
            subscription.unsubscribe()
        return len(subs)

    def close(self) -> None:
        """Unsubscribe everyone."""
        for subs in list(self._subscribers.values()):
            for subscription in list(subs.values()):
                subscription.unsubscribe()


__all__ = [
    "StatusCallback",
    "Subscription",
    "SubscriptionHub",
]
