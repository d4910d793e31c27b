"""
Tests for status delivery: subscriptions and polling.

============================================================
PURPOSE
============================================================
Push delivery through SubscriptionHub, the polling fallback,
and the wire form of a status.

TEST PRINCIPLES:
- Each subscriber sees statuses in publish order
- One failing subscriber never affects another
- Polling stops at the first terminal state

============================================================
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from clearing import (
    ClearingState,
    ClearingStatus,
    ExecutionInfo,
    FailureReason,
    PaymentOutcome,
    PaymentVerification,
    PollTimeout,
    SubscriptionHub,
    TokenNotFound,
    poll_for_completion,
)


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def status(state: ClearingState, token: str = "tok-1", **kwargs) -> ClearingStatus:
    return ClearingStatus(token=token, state=state, updated_at=NOW, **kwargs)


# ============================================================
# SUBSCRIPTIONS
# ============================================================

class TestSubscriptionHub:
    """Tests for SubscriptionHub."""

    @pytest.mark.asyncio
    async def test_statuses_arrive_in_order(self):
        hub = SubscriptionHub()
        seen = []
        subscription = hub.subscribe("tok-1", lambda s: seen.append(s.state))

        for state in (ClearingState.PAID, ClearingState.EXECUTING, ClearingState.COMPLETED):
            assert hub.publish(status(state)) == 1
        await subscription.wait_idle()
        hub.close()

        assert seen == [ClearingState.PAID, ClearingState.EXECUTING, ClearingState.COMPLETED]

    @pytest.mark.asyncio
    async def test_async_callbacks_keep_order(self):
        hub = SubscriptionHub()
        seen = []

        async def slow_first(s):
            if s.state is ClearingState.PAID:
                await asyncio.sleep(0.01)
            seen.append(s.state)

        subscription = hub.subscribe("tok-1", slow_first)
        hub.publish(status(ClearingState.PAID))
        hub.publish(status(ClearingState.EXECUTING))
        await subscription.wait_idle()
        hub.close()

        assert seen == [ClearingState.PAID, ClearingState.EXECUTING]

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_isolated(self):
        hub = SubscriptionHub()
        seen = []

        def broken(s):
            raise RuntimeError("subscriber down")

        failing = hub.subscribe("tok-1", broken)
        healthy = hub.subscribe("tok-1", lambda s: seen.append(s.state))

        hub.publish(status(ClearingState.PAID))
        hub.publish(status(ClearingState.EXECUTING))
        await failing.wait_idle()
        await healthy.wait_idle()

        assert failing.active
        assert seen == [ClearingState.PAID, ClearingState.EXECUTING]
        hub.close()

    @pytest.mark.asyncio
    async def test_other_tokens_are_not_delivered(self):
        hub = SubscriptionHub()
        seen = []
        subscription = hub.subscribe("tok-1", seen.append)

        assert hub.publish(status(ClearingState.PAID, token="tok-2")) == 0
        await subscription.wait_idle()
        hub.close()

        assert seen == []

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self):
        hub = SubscriptionHub()
        seen = []
        subscription = hub.subscribe("tok-1", seen.append)

        subscription.unsubscribe()
        subscription.unsubscribe()

        assert not subscription.active
        assert hub.publish(status(ClearingState.PAID)) == 0
        assert hub.subscriber_count() == 0
        assert seen == []

    @pytest.mark.asyncio
    async def test_subscriber_count(self):
        hub = SubscriptionHub()
        hub.subscribe("tok-1", lambda s: None)
        hub.subscribe("tok-1", lambda s: None)
        hub.subscribe("tok-2", lambda s: None)

        assert hub.subscriber_count() == 3
        assert hub.subscriber_count("tok-1") == 2
        assert hub.subscriber_count("tok-3") == 0

        hub.close()

        assert hub.subscriber_count() == 0


# ============================================================
# POLLING
# ============================================================

class TestPollForCompletion:
    """Tests for poll_for_completion()."""

    @pytest.mark.asyncio
    async def test_returns_first_terminal_status(self):
        reads = iter([
            status(ClearingState.PAID),
            status(ClearingState.EXECUTING),
            status(ClearingState.EXECUTING),
            status(ClearingState.COMPLETED),
        ])
        updates = []

        result = await poll_for_completion(
            lambda token: next(reads), "tok-1", interval=0, max_attempts=10,
            on_update=lambda s: updates.append(s.state),
        )

        assert result.state is ClearingState.COMPLETED
        assert updates == [ClearingState.PAID, ClearingState.EXECUTING, ClearingState.COMPLETED]

    @pytest.mark.asyncio
    async def test_async_reader(self):
        reader = AsyncMock(side_effect=[
            status(ClearingState.EXECUTING),
            status(ClearingState.FAILED, failure_reason=FailureReason.EXECUTION_FAILED),
        ])

        result = await poll_for_completion(reader, "tok-1", interval=0, max_attempts=5)

        assert result.failure_reason is FailureReason.EXECUTION_FAILED
        assert reader.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        reader = AsyncMock(return_value=status(ClearingState.EXECUTING))

        with pytest.raises(PollTimeout):
            await poll_for_completion(reader, "tok-1", interval=0, max_attempts=3)

        assert reader.await_count == 3

    @pytest.mark.asyncio
    async def test_unknown_token_propagates(self):
        reader = AsyncMock(side_effect=TokenNotFound("Unknown token tok-1", token="tok-1"))

        with pytest.raises(TokenNotFound):
            await poll_for_completion(reader, "tok-1", interval=0, max_attempts=3)


# ============================================================
# WIRE FORM
# ============================================================

class TestStatusWireForm:
    """Tests for ClearingStatus.to_dict() / from_dict()."""

    def test_completed_status(self):
        original = status(
            ClearingState.COMPLETED,
            message="Cleared 2 packets",
            payment=PaymentVerification(
                verified=True,
                outcome=PaymentOutcome.VERIFIED,
                tx_ref="TXHASH1",
                required=1_106_250,
                paid=1_106_250,
                denom="uatom",
                message="Payment verified",
            ),
            execution=ExecutionInfo(
                started_at=NOW, completed_at=NOW, packets_cleared=2, tx_hashes=("A", "B"),
            ),
            history=("pending", "paid", "executing", "completed"),
        )

        data = original.to_dict()

        assert data["status"] == "completed"
        assert data["payment"]["required"] == "1106250"
        assert ClearingStatus.from_dict(data) == original

    def test_failed_status(self):
        data = status(ClearingState.FAILED, failure_reason=FailureReason.TIMEOUT).to_dict()

        assert data["failure_reason"] == "timeout"
        assert data["payment"] is None
        assert ClearingStatus.from_dict(data).failure_reason is FailureReason.TIMEOUT
