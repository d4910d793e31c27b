"""
Tests for payment verification and relayer dispatch.

============================================================
PURPOSE
============================================================
Transaction evaluation against a token, the chain-backed
verifier, and the Hermes dispatcher against a local HTTP server.

TEST PRINCIPLES:
- Every rejection names its reason
- Shortfalls within 1% are accepted
- Overpayment is accepted and flagged
- Dispatch progress ends with exactly one final report

============================================================
"""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from core.exceptions import UpstreamError
from clearing import (
    ChainPaymentVerifier,
    ChannelPair,
    ClearingTargets,
    ClearingToken,
    HermesDispatcher,
    PacketIdentifier,
    PaymentOutcome,
    RequestType,
    build_clear_requests,
    evaluate_payment,
)
from clearing.payment import MSG_SEND_TYPE
from clearing.types import TOKEN_VERSION


SERVICE = "cosmos1service"


def make_token(targets: ClearingTargets = None, request_type=RequestType.PACKET) -> ClearingToken:
    return ClearingToken(
        token="tok-1",
        version=TOKEN_VERSION,
        request_type=request_type,
        targets=targets or ClearingTargets(packets=(
            PacketIdentifier(chain_id="cosmoshub-4", channel_id="channel-141", sequence=42),
        )),
        wallet_address="cosmos1wallet",
        chain_id="cosmoshub-4",
        issued_at=1_700_000_000,
        expires_at=1_700_000_300,
        service_fee=1_100_000,
        estimated_gas_fee=6_250,
        total_required=1_106_250,
        accepted_denom="uatom",
        nonce="00ff00ff00ff00ff",
        signature="sig",
    )


def payment_tx(amount, denom="uatom", memo="CLR-tok-1", to_address=SERVICE, code=0, msg_type=MSG_SEND_TYPE):
    return {
        "tx": {
            "body": {
                "memo": memo,
                "messages": [{
                    "@type": msg_type,
                    "from_address": "cosmos1wallet",
                    "to_address": to_address,
                    "amount": [{"denom": denom, "amount": str(amount)}],
                }],
            },
        },
        "tx_response": {"txhash": "TXHASH1", "code": code, "raw_log": "out of gas" if code else ""},
    }


async def start_server(app: web.Application):
    server = TestServer(app)
    await server.start_server()
    return server, str(server.make_url("/")).rstrip("/")


# ============================================================
# PAYMENT EVALUATION
# ============================================================

class TestEvaluatePayment:
    """Tests for evaluate_payment()."""

    def test_exact_payment(self):
        result = evaluate_payment(make_token(), "TXHASH1", payment_tx(1_106_250), SERVICE)

        assert result.verified
        assert result.outcome is PaymentOutcome.VERIFIED
        assert result.paid == 1_106_250
        assert not result.overpaid

    def test_shortfall_within_tolerance(self):
        result = evaluate_payment(make_token(), "TXHASH1", payment_tx(1_100_000), SERVICE)

        assert result.verified

    def test_insufficient(self):
        result = evaluate_payment(make_token(), "TXHASH1", payment_tx(1_090_000), SERVICE)

        assert not result.verified
        assert result.outcome is PaymentOutcome.INSUFFICIENT
        assert result.paid == 1_090_000
        assert result.required == 1_106_250

    def test_overpayment_is_flagged(self):
        result = evaluate_payment(make_token(), "TXHASH1", payment_tx(1_200_000), SERVICE)

        assert result.verified
        assert result.overpaid

    def test_split_payment_is_summed(self):
        tx = payment_tx(600_000)
        tx["tx"]["body"]["messages"].append({
            "@type": MSG_SEND_TYPE,
            "to_address": SERVICE,
            "amount": [{"denom": "uatom", "amount": "506250"}],
        })

        result = evaluate_payment(make_token(), "TXHASH1", tx, SERVICE)

        assert result.verified
        assert result.paid == 1_106_250

    @pytest.mark.parametrize("tx,outcome", [
        (payment_tx(1_106_250, code=11), PaymentOutcome.TX_FAILED),
        (payment_tx(1_106_250, memo="CLR-other"), PaymentOutcome.MEMO_MISMATCH),
        (payment_tx(1_106_250, memo=""), PaymentOutcome.MEMO_MISMATCH),
        (payment_tx(1_106_250, to_address="cosmos1someoneelse"), PaymentOutcome.NO_PAYMENT),
        (payment_tx(1_106_250, msg_type="/ibc.applications.transfer.v1.MsgTransfer"), PaymentOutcome.NO_PAYMENT),
        (payment_tx(1_106_250, denom="uosmo"), PaymentOutcome.WRONG_DENOM),
    ])
    def test_rejections(self, tx, outcome):
        result = evaluate_payment(make_token(), "TXHASH1", tx, SERVICE)

        assert not result.verified
        assert result.outcome is outcome
        assert result.message


class TestChainPaymentVerifier:
    """Tests for ChainPaymentVerifier against a local REST server."""

    @pytest.mark.asyncio
    async def test_fetches_and_evaluates(self):
        async def get_tx(request):
            if request.match_info["hash"] == "TXHASH1":
                return web.json_response(payment_tx(1_106_250))
            return web.json_response({"code": 5, "message": "tx not found"}, status=404)

        app = web.Application()
        app.router.add_get("/cosmos/tx/v1beta1/txs/{hash}", get_tx)
        server, base_url = await start_server(app)
        verifier = ChainPaymentVerifier(lambda chain_id: base_url, SERVICE)
        try:
            found = await verifier.verify(make_token(), "TXHASH1")
            missing = await verifier.verify(make_token(), "TXHASH9")
        finally:
            await verifier.close()
            await server.close()

        assert found.outcome is PaymentOutcome.VERIFIED
        assert missing.outcome is PaymentOutcome.TX_NOT_FOUND
        assert not missing.verified

    @pytest.mark.asyncio
    async def test_unknown_chain_is_upstream_error(self):
        verifier = ChainPaymentVerifier(lambda chain_id: None, SERVICE)

        with pytest.raises(UpstreamError):
            await verifier.verify(make_token(), "TXHASH1")


# ============================================================
# DISPATCH
# ============================================================

class TestBuildClearRequests:
    """Tests for build_clear_requests()."""

    def test_packets_grouped_per_channel(self):
        token = make_token(ClearingTargets(packets=(
            PacketIdentifier("cosmoshub-4", "channel-141", 43),
            PacketIdentifier("cosmoshub-4", "channel-141", 42),
            PacketIdentifier("cosmoshub-4", "channel-5", 7),
        )))

        requests = build_clear_requests(token)

        assert [r.to_dict() for r in requests] == [
            {"chain_id": "cosmoshub-4", "port": "transfer", "channel": "channel-141", "sequences": [42, 43]},
            {"chain_id": "cosmoshub-4", "port": "transfer", "channel": "channel-5", "sequences": [7]},
        ]

    def test_whole_channel_covers_its_packets(self):
        pair = ChannelPair("cosmoshub-4", "osmosis-1", "channel-141", "channel-0")
        token = make_token(
            ClearingTargets(
                packets=(PacketIdentifier("cosmoshub-4", "channel-141", 42),),
                channels=(pair,),
            ),
            request_type=RequestType.BULK,
        )

        requests = build_clear_requests(token)

        assert len(requests) == 1
        assert requests[0].to_dict() == {
            "chain_id": "cosmoshub-4", "port": "transfer", "channel": "channel-141",
        }


class TestHermesDispatcher:
    """Tests for HermesDispatcher against a local relayer."""

    def _relayer_app(self, clear_body, posted):
        async def version(request):
            return web.json_response({"status": "success", "result": [{"name": "hermes", "version": "1.13.0"}]})

        async def clear_packets(request):
            posted.append(await request.json())
            return web.json_response(clear_body)

        app = web.Application()
        app.router.add_get("/version", version)
        app.router.add_post("/clear_packets", clear_packets)
        return app

    @pytest.mark.asyncio
    async def test_accepts_and_reports_final_progress(self):
        posted = []
        app = self._relayer_app({"status": "success", "result": [{"tx_hash": "AAA"}]}, posted)
        server, base_url = await start_server(app)
        dispatcher = HermesDispatcher(base_url)
        reports = []
        done = asyncio.Event()

        async def report(token_id, progress, final):
            reports.append((token_id, progress, final))
            if final:
                done.set()

        token = make_token(ClearingTargets(packets=(
            PacketIdentifier("cosmoshub-4", "channel-141", 42),
            PacketIdentifier("cosmoshub-4", "channel-141", 43),
        )))
        try:
            accepted = await dispatcher.dispatch(token, report)
            await asyncio.wait_for(done.wait(), timeout=5)
        finally:
            await dispatcher.close()
            await server.close()

        assert accepted
        assert posted == [{"chain_id": "cosmoshub-4", "port": "transfer", "channel": "channel-141", "sequences": [42, 43]}]
        assert len(reports) == 1
        token_id, progress, final = reports[0]
        assert token_id == "tok-1"
        assert final
        assert progress.packets_cleared == 2
        assert progress.tx_hashes == ("AAA",)

    @pytest.mark.asyncio
    async def test_relayer_error_is_reported_as_failed_packets(self):
        posted = []
        app = self._relayer_app({"status": "error", "result": "channel not found"}, posted)
        server, base_url = await start_server(app)
        dispatcher = HermesDispatcher(base_url)
        reports = []
        done = asyncio.Event()

        async def report(token_id, progress, final):
            reports.append(progress)
            done.set()

        try:
            accepted = await dispatcher.dispatch(make_token(), report)
            await asyncio.wait_for(done.wait(), timeout=5)
        finally:
            await dispatcher.close()
            await server.close()

        assert accepted
        assert reports[0].packets_cleared == 0
        assert reports[0].packets_failed == 1
        assert reports[0].error == "channel not found"

    @pytest.mark.asyncio
    async def test_unreachable_relayer_rejects(self):
        app = web.Application()
        server, base_url = await start_server(app)
        dispatcher = HermesDispatcher(base_url)

        async def report(token_id, progress, final):
            raise AssertionError("no report expected")

        try:
            accepted = await dispatcher.dispatch(make_token(), report)
        finally:
            await dispatcher.close()
            await server.close()

        assert not accepted

    @pytest.mark.asyncio
    async def test_nothing_to_clear_rejects(self):
        dispatcher = HermesDispatcher("http://127.0.0.1:1")

        async def report(token_id, progress, final):
            raise AssertionError("no report expected")

        accepted = await dispatcher.dispatch(make_token(ClearingTargets()), report)
        await dispatcher.close()

        assert not accepted
