"""
Clearing - Payment Verification.

============================================================
PURPOSE
============================================================
Checks a payment transaction against a clearing token.

A payment is valid when the transaction:
- succeeded on chain (code 0)
- carries the memo CLR-<token>
- sends coins to the service address in MsgSend messages
- pays only in the token's accepted denom
- pays the required total within a 1% tolerance

Overpayment is accepted and flagged for refund.

============================================================
"""

import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from core.exceptions import UpstreamError
from core.http_client import HttpClientBase

from .types import ClearingToken, PaymentOutcome, PaymentVerification


logger = logging.getLogger(__name__)


MSG_SEND_TYPE = "/cosmos.bank.v1beta1.MsgSend"
DEFAULT_TOLERANCE_PERCENT = Decimal("1")


class PaymentVerifier(Protocol):
    """Checks a transaction reference against a token."""

    async def verify(self, token: ClearingToken, tx_ref: str) -> PaymentVerification:
        ...


# ============================================================
# TRANSACTION EVALUATION
# ============================================================

def _payments_to(tx: Dict[str, Any], service_address: str) -> List[Tuple[str, int]]:
    """(denom, amount) of every coin sent to the service address."""
    payments: List[Tuple[str, int]] = []
    messages = ((tx.get("tx") or {}).get("body") or {}).get("messages") or []
    for message in messages:
        if message.get("@type") != MSG_SEND_TYPE:
            continue
        if message.get("to_address") != service_address:
            continue
        for coin in message.get("amount") or []:
            try:
                payments.append((coin.get("denom", ""), int(coin.get("amount", "0"))))
            except (TypeError, ValueError):
                continue
    return payments


def evaluate_payment(
    token: ClearingToken,
    tx_ref: str,
    tx: Dict[str, Any],
    service_address: str,
    tolerance_percent: Decimal = DEFAULT_TOLERANCE_PERCENT,
) -> PaymentVerification:
    """
    Evaluate a decoded GetTx response against a token.

    Args:
        token: Token the payment is for
        tx_ref: Transaction hash
        tx: Body of GET /cosmos/tx/v1beta1/txs/{hash}
        service_address: Address fees must be sent to
        tolerance_percent: Allowed shortfall, in percent of total

    Returns:
        PaymentVerification (never raises)
    """
    required = token.total_required
    denom = token.accepted_denom

    def result(outcome: PaymentOutcome, message: str, paid: int = 0, overpaid: bool = False):
        return PaymentVerification(
            verified=outcome is PaymentOutcome.VERIFIED,
            outcome=outcome,
            tx_ref=tx_ref,
            required=required,
            paid=paid,
            denom=denom,
            overpaid=overpaid,
            message=message,
        )

    tx_response = tx.get("tx_response") or {}
    if str(tx_response.get("code") or 0) != "0":
        return result(PaymentOutcome.TX_FAILED, f"Transaction failed on chain: {tx_response.get('raw_log', '')}")

    memo = ((tx.get("tx") or {}).get("body") or {}).get("memo", "")
    if memo != token.payment_memo:
        return result(PaymentOutcome.MEMO_MISMATCH, f"Expected memo {token.payment_memo}")

    payments = _payments_to(tx, service_address)
    if not payments:
        return result(PaymentOutcome.NO_PAYMENT, "No payment to the service address found")

    wrong = sorted({d for d, _ in payments if d != denom})
    if wrong:
        return result(PaymentOutcome.WRONG_DENOM, f"Expected {denom}, got {', '.join(wrong)}")

    paid = sum(amount for _, amount in payments)
    tolerance = Decimal(required) * tolerance_percent / Decimal(100)

    if Decimal(required - paid) > tolerance:
        return result(
            PaymentOutcome.INSUFFICIENT,
            f"Insufficient payment: required {required} {denom}, paid {paid} {denom}",
            paid=paid,
        )

    overpaid = Decimal(paid - required) > tolerance
    if overpaid:
        logger.info(
            f"[payment] Overpayment for {token.token}: required {required}, paid {paid} {denom}"
        )

    return result(PaymentOutcome.VERIFIED, "Payment verified", paid=paid, overpaid=overpaid)


# ============================================================
# CHAIN PAYMENT VERIFIER
# ============================================================

class ChainPaymentVerifier(HttpClientBase):
    """Fetches the payment transaction from the token chain's REST endpoint."""

    name = "payment-tx"

    def __init__(
        self,
        endpoint_lookup: Callable[[str], Optional[str]],
        service_address: str,
        tolerance_percent: Decimal = DEFAULT_TOLERANCE_PERCENT,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._endpoint_lookup = endpoint_lookup
        self._service_address = service_address
        self._tolerance_percent = tolerance_percent

    async def verify(self, token: ClearingToken, tx_ref: str) -> PaymentVerification:
        rest_url = self._endpoint_lookup(token.chain_id)
        if rest_url is None:
            raise UpstreamError(
                f"No REST endpoint registered for {token.chain_id}",
                context={"chain_id": token.chain_id},
            )

        tx = await self._request(
            "GET", f"{rest_url}/cosmos/tx/v1beta1/txs/{tx_ref}", allow_not_found=True
        )
        if tx is None:
            return PaymentVerification(
                verified=False,
                outcome=PaymentOutcome.TX_NOT_FOUND,
                tx_ref=tx_ref,
                required=token.total_required,
                denom=token.accepted_denom,
                message="Transaction not found",
            )

        return evaluate_payment(
            token, tx_ref, tx, self._service_address, self._tolerance_percent
        )


__all__ = [
    "MSG_SEND_TYPE",
    "DEFAULT_TOLERANCE_PERCENT",
    "PaymentVerifier",
    "evaluate_payment",
    "ChainPaymentVerifier",
]
