"""
Clearing - Protocol Engine.

============================================================
PURPOSE
============================================================
Runs the paid clearing handshake:

    request_token -> (wallet pays) -> verify_payment
        -> dispatch -> report_execution ... -> completed | failed

============================================================
RULES
============================================================
- Tokens are signed, immutable and valid for token_ttl_seconds
- Only a verified payment moves pending -> paid
- Only an accepted dispatch moves paid -> executing
- Only execution reports move executing -> completed | failed
- A pending token past its expiry becomes failed (timeout),
  applied lazily on every read and by sweep_expired()
- verify_payment is serialized per token; repeating it with the
  same tx returns the stored result without a second transition
- A tx hash can pay for one token only
- Dispatch happens at most once per token
- Subscribers are notified of every transition
- A payment verified after the token left pending is never
  applied; the token keeps its failure
- Finished tokens are forgotten after their retention window
  by purge_terminal()

============================================================
"""

import asyncio
import logging
import re
import secrets
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Set, Union

from core.clock import ClockProtocol, SystemClock, from_unix

from .dispatch import ExecutionDispatcher
from .errors import (
    InvalidRequest,
    TokenNotFound,
    TokenExpired,
    AlreadyProcessed,
    DispatchTimeout,
)
from .fees import FeePolicy
from .payment import PaymentVerifier
from .signing import TokenSigner
from .state_machine import ClearingStateMachine, StateTransitionEvent
from .statistics import (
    ClearingOperation,
    WalletStatistics,
    PlatformStatistics,
    summarize_wallet,
    summarize_platform,
)
from .subscriptions import StatusCallback, Subscription, SubscriptionHub
from .types import (
    TOKEN_VERSION,
    RequestType,
    ClearingState,
    FailureReason,
    ClearingTargets,
    ClearingToken,
    PaymentOutcome,
    PaymentVerification,
    ExecutionProgress,
    ExecutionInfo,
    ClearingStatus,
)


logger = logging.getLogger(__name__)


_CHAIN_ID_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]{0,63}$")
_CHANNEL_ID_RE = re.compile(r"^channel-\d+$")
_PORT_ID_RE = re.compile(r"^[a-zA-Z0-9._+\-#\[\]<>]{2,128}$")


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class ClearingConfig:
    """Tunables of the clearing engine."""

    token_ttl_seconds: int = 300
    """Validity window of an issued token."""

    dispatch_timeout_seconds: float = 30.0
    """Upper bound on waiting for the relayer to accept a dispatch."""

    retention_seconds: float = 86400.0
    """How long a finished, paid token is kept for history and statistics."""

    unpaid_retention_seconds: float = 600.0
    """How long a token that failed without payment is kept."""


# ============================================================
# TOKEN RECORD
# ============================================================

class _TokenRecord:
    """Engine-owned state of one token."""

    def __init__(self, token: ClearingToken, machine: ClearingStateMachine):
        self.token = token
        self.machine = machine
        self.lock = asyncio.Lock()
        self.payment: Optional[PaymentVerification] = None
        self.execution: Optional[ExecutionInfo] = None
        self.dispatched = False
        self.message = "Awaiting payment"


# ============================================================
# ENGINE
# ============================================================

class ClearingEngine:
    """Issues clearing tokens and drives them through their lifecycle."""

    def __init__(
        self,
        signer: TokenSigner,
        payment_verifier: PaymentVerifier,
        dispatcher: ExecutionDispatcher,
        fee_policy: Optional[FeePolicy] = None,
        clock: Optional[ClockProtocol] = None,
        config: Optional[ClearingConfig] = None,
        hub: Optional[SubscriptionHub] = None,
    ) -> None:
        self._signer = signer
        self._verifier = payment_verifier
        self._dispatcher = dispatcher
        self._fees = fee_policy or FeePolicy()
        self._clock = clock or SystemClock()
        self._config = config or ClearingConfig()
        self._hub = hub or SubscriptionHub()

        self._records: Dict[str, _TokenRecord] = {}
        self._tx_owners: Dict[str, str] = {}
        self._dispatch_tasks: Set[asyncio.Task] = set()

    @property
    def fee_policy(self) -> FeePolicy:
        return self._fees

    @property
    def hub(self) -> SubscriptionHub:
        return self._hub

    # --------------------------------------------------------
    # TOKEN ISSUANCE
    # --------------------------------------------------------

    def request_token(
        self,
        wallet_address: str,
        chain_id: str,
        request_type: Union[RequestType, str],
        targets: Union[ClearingTargets, Dict[str, Any]],
    ) -> ClearingToken:
        """
        Issue a signed token authorizing one fee payment.

        Raises:
            InvalidRequest: Empty, malformed or inconsistent request
        """
        kind = self._parse_request_type(request_type)
        if not isinstance(targets, ClearingTargets):
            try:
                targets = ClearingTargets.from_dict(targets or {})
            except (KeyError, TypeError, ValueError) as e:
                raise InvalidRequest(f"Malformed targets: {e}")

        self._validate_request(wallet_address, chain_id, kind, targets)

        quote = self._fees.quote(chain_id, targets)
        issued_at = self._clock.unix_seconds()

        token = self._signer.sign(ClearingToken(
            token=str(uuid.uuid4()),
            version=TOKEN_VERSION,
            request_type=kind,
            targets=targets,
            wallet_address=wallet_address,
            chain_id=chain_id,
            issued_at=issued_at,
            expires_at=issued_at + self._config.token_ttl_seconds,
            service_fee=quote.service_fee,
            estimated_gas_fee=quote.estimated_gas_fee,
            total_required=quote.total_required,
            accepted_denom=quote.denom,
            nonce=secrets.token_hex(8),
        ))

        machine = ClearingStateMachine(token.token, self._clock)
        record = _TokenRecord(token, machine)
        machine.add_listener(lambda event: self._on_transition(record, event))
        self._records[token.token] = record

        logger.info(
            f"[clearing] Issued {token.token} for {wallet_address} on {chain_id}: "
            f"{kind.value}, {targets.count} targets, {token.total_required} {token.accepted_denom}"
        )
        return token

    @staticmethod
    def _parse_request_type(request_type: Union[RequestType, str]) -> RequestType:
        if isinstance(request_type, RequestType):
            return request_type
        try:
            return RequestType(str(request_type).lower())
        except ValueError:
            raise InvalidRequest(f"Unknown request type: {request_type!r}")

    def _validate_request(
        self,
        wallet_address: str,
        chain_id: str,
        kind: RequestType,
        targets: ClearingTargets,
    ) -> None:
        if not wallet_address or not wallet_address.strip():
            raise InvalidRequest("wallet_address is required")
        if not chain_id or not _CHAIN_ID_RE.match(chain_id):
            raise InvalidRequest(f"Invalid chain_id: {chain_id!r}")

        if kind is RequestType.PACKET:
            if not targets.packets:
                raise InvalidRequest("packet request requires at least one packet")
            if targets.channels:
                raise InvalidRequest("packet request must not list channels")
        elif kind is RequestType.CHANNEL:
            if not targets.channels:
                raise InvalidRequest("channel request requires at least one channel pair")
            if targets.packets:
                raise InvalidRequest("channel request must not list packets")
        elif targets.is_empty():
            raise InvalidRequest("bulk request requires packets or channels")

        if targets.count > self._fees.max_targets:
            raise InvalidRequest(
                f"Too many targets: {targets.count} (max {self._fees.max_targets})"
            )

        seen = set()
        for packet in targets.packets:
            if not _CHAIN_ID_RE.match(packet.chain_id or ""):
                raise InvalidRequest(f"Invalid packet chain_id: {packet.chain_id!r}")
            if not _CHANNEL_ID_RE.match(packet.channel_id or ""):
                raise InvalidRequest(f"Invalid packet channel_id: {packet.channel_id!r}")
            if not _PORT_ID_RE.match(packet.port_id or ""):
                raise InvalidRequest(f"Invalid packet port_id: {packet.port_id!r}")
            if packet.sequence < 1:
                raise InvalidRequest(f"Invalid packet sequence: {packet.sequence}")
            if packet in seen:
                raise InvalidRequest(f"Duplicate packet: {packet.channel_id}/{packet.sequence}")
            seen.add(packet)

        for pair in targets.channels:
            for chain in (pair.src_chain, pair.dst_chain):
                if not _CHAIN_ID_RE.match(chain or ""):
                    raise InvalidRequest(f"Invalid channel pair chain: {chain!r}")
            for channel in (pair.src_channel, pair.dst_channel):
                if not _CHANNEL_ID_RE.match(channel or ""):
                    raise InvalidRequest(f"Invalid channel pair channel: {channel!r}")
            if not _PORT_ID_RE.match(pair.src_port or ""):
                raise InvalidRequest(f"Invalid channel pair port: {pair.src_port!r}")
            if pair in seen:
                raise InvalidRequest(f"Duplicate channel pair: {pair.src_channel}")
            seen.add(pair)

    # --------------------------------------------------------
    # LOOKUPS
    # --------------------------------------------------------

    def _get_record(self, token: str) -> _TokenRecord:
        record = self._records.get(token)
        if record is None:
            raise TokenNotFound(f"Unknown token {token}", token=token)
        return record

    def get_token(self, token: str) -> ClearingToken:
        return self._get_record(token).token

    def validate_token(self, token: ClearingToken) -> None:
        """
        Check a client-presented token against the issued one.

        Raises:
            TokenNotFound: Unknown token id
            InvalidRequest: Signature or fields do not match
        """
        record = self._get_record(token.token)
        if not self._signer.verify(token) or token != record.token:
            raise InvalidRequest("Token signature does not match", token=token.token)

    def get_status(self, token: str) -> ClearingStatus:
        """
        Current status of a token.

        Raises:
            TokenNotFound: Unknown token id
        """
        record = self._get_record(token)
        self._apply_expiry(record)
        return self._status_of(record)

    def _status_of(self, record: _TokenRecord) -> ClearingStatus:
        machine = record.machine
        return ClearingStatus(
            token=record.token.token,
            state=machine.current_state,
            updated_at=machine.updated_at,
            failure_reason=machine.failure_reason,
            message=record.message,
            payment=record.payment,
            execution=record.execution,
            history=machine.states_visited(),
        )

    # --------------------------------------------------------
    # EXPIRY
    # --------------------------------------------------------

    def _apply_expiry(self, record: _TokenRecord) -> bool:
        if record.machine.current_state is not ClearingState.PENDING:
            return False
        if not record.token.is_expired(self._clock.timestamp()):
            return False
        record.message = "Token expired before payment"
        record.machine.mark_failed(FailureReason.TIMEOUT, "Token expired")
        return True

    def sweep_expired(self) -> int:
        """Fail every pending token past its expiry. Returns how many."""
        expired = sum(1 for record in list(self._records.values()) if self._apply_expiry(record))
        if expired:
            logger.info(f"[clearing] Expired {expired} unpaid tokens")
        return expired

    def purge_terminal(self, older_than: Optional[float] = None) -> int:
        """
        Forget finished tokens past their retention window.

        Paid tokens are kept for retention_seconds after they finish,
        unpaid ones for unpaid_retention_seconds. older_than overrides
        both. The payment tx of a forgotten token is released with it.

        Returns:
            Number of tokens forgotten
        """
        now = self._clock.now()
        stale = []
        for token, record in self._records.items():
            if not record.machine.is_terminal():
                continue
            if older_than is not None:
                window = older_than
            elif record.payment is not None:
                window = self._config.retention_seconds
            else:
                window = self._config.unpaid_retention_seconds
            if (now - record.machine.updated_at).total_seconds() > window:
                stale.append(token)

        for token in stale:
            record = self._records.pop(token)
            if record.payment is not None:
                self._tx_owners.pop(record.payment.tx_ref, None)
            self._hub.drop_token(token)

        if stale:
            logger.info(f"[clearing] Purged {len(stale)} finished tokens")
        return len(stale)

    # --------------------------------------------------------
    # PAYMENT
    # --------------------------------------------------------

    async def verify_payment(self, token: str, tx_ref: str) -> PaymentVerification:
        """
        Verify the fee payment for a token.

        Returns:
            PaymentVerification. verified=False leaves the token pending.

        Raises:
            TokenNotFound: Unknown token id
            TokenExpired: Token expired before it was paid
            AlreadyProcessed: Token already paid by a different tx
            InvalidRequest: Empty tx reference
        """
        record = self._get_record(token)
        tx_ref = (tx_ref or "").strip()
        if not tx_ref:
            raise InvalidRequest("Transaction reference is required", token=token)

        async with record.lock:
            self._apply_expiry(record)

            if record.payment is not None:
                if record.payment.tx_ref == tx_ref:
                    return record.payment
                raise AlreadyProcessed(
                    f"Token already paid by {record.payment.tx_ref}", token=token
                )

            state = record.machine.current_state
            if state is ClearingState.FAILED and record.machine.failure_reason is FailureReason.TIMEOUT:
                raise TokenExpired(f"Token {token} expired", token=token)
            if state is not ClearingState.PENDING:
                raise AlreadyProcessed(f"Token is {state.value}", token=token)

            owner = self._tx_owners.get(tx_ref)
            if owner is not None and owner != token:
                logger.warning(f"[clearing] tx {tx_ref} already paid for {owner}, rejected for {token}")
                return PaymentVerification(
                    verified=False,
                    outcome=PaymentOutcome.DUPLICATE_TX,
                    tx_ref=tx_ref,
                    required=record.token.total_required,
                    denom=record.token.accepted_denom,
                    message="Transaction already used for another token",
                )

            verification = await self._verifier.verify(record.token, tx_ref)

            if not verification.verified:
                logger.warning(
                    f"[clearing] Payment {tx_ref} for {token} not verified: "
                    f"{verification.outcome.value} {verification.message}"
                )
                return verification

            # Reads during the verifier call may have expired the token
            self._apply_expiry(record)
            state = record.machine.current_state
            if state is not ClearingState.PENDING:
                self._reject_late_payment(record, verification, state)

            # No await from here on: the transition cannot be pre-empted
            record.payment = verification
            record.message = "Payment verified, dispatching"
            record.machine.mark_paid(tx_ref)
            self._tx_owners[tx_ref] = token
            self._schedule_dispatch(record)
            return verification

    def _reject_late_payment(
        self,
        record: _TokenRecord,
        verification: PaymentVerification,
        state: ClearingState,
    ) -> None:
        """
        A payment verified after the token left PENDING is never applied.

        The token stays failed and the payment is only noted in the
        status message, so it can be refunded.
        """
        token = record.token.token
        tx_ref = verification.tx_ref
        logger.warning(
            f"[clearing] Payment {tx_ref} for {token} verified after the token became "
            f"{state.value}; not applied, refund required"
        )
        if record.machine.failure_reason is FailureReason.TIMEOUT:
            record.message = f"Payment {tx_ref} arrived after expiry; eligible for refund"
            raise TokenExpired(
                f"Token {token} expired while its payment was being verified",
                token=token,
                context={"tx_hash": tx_ref, "refund_due": str(verification.paid)},
            )
        raise AlreadyProcessed(f"Token is {state.value}", token=token)

    # --------------------------------------------------------
    # DISPATCH
    # --------------------------------------------------------

    def _schedule_dispatch(self, record: _TokenRecord) -> None:
        if record.dispatched:
            return
        record.dispatched = True
        task = asyncio.get_running_loop().create_task(self._dispatch(record))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def _dispatch(self, record: _TokenRecord) -> None:
        token = record.token
        timeout = self._config.dispatch_timeout_seconds
        try:
            accepted = await asyncio.wait_for(
                self._dispatcher.dispatch(token, self.report_execution), timeout=timeout
            )
        except asyncio.TimeoutError:
            error = DispatchTimeout(f"Relayer did not accept within {timeout}s", token=token.token)
            logger.error(f"[clearing] {error}")
            self._fail_dispatch(record, FailureReason.DISPATCH_TIMEOUT, error.message)
            return
        except Exception as e:
            logger.error(f"[clearing] Dispatch of {token.token} failed: {e}")
            self._fail_dispatch(record, FailureReason.DISPATCH_ERROR, str(e))
            return

        if not accepted:
            self._fail_dispatch(record, FailureReason.DISPATCH_REJECTED, "Relayer rejected the request")
            return

        self._start_execution(record)

    def _fail_dispatch(self, record: _TokenRecord, reason: FailureReason, message: str) -> None:
        if record.machine.current_state is not ClearingState.PAID:
            return
        record.message = message
        record.machine.mark_failed(reason, message, error=message)

    def _start_execution(self, record: _TokenRecord) -> None:
        if record.machine.current_state is not ClearingState.PAID:
            return
        record.execution = ExecutionInfo(started_at=self._clock.now())
        record.message = "Clearing in progress"
        record.machine.mark_executing()

    async def wait_for_dispatches(self) -> None:
        """Wait for every scheduled dispatch to settle."""
        if self._dispatch_tasks:
            await asyncio.gather(*list(self._dispatch_tasks), return_exceptions=True)

    # --------------------------------------------------------
    # EXECUTION REPORTS
    # --------------------------------------------------------

    async def report_execution(
        self,
        token: str,
        progress: ExecutionProgress,
        final: bool = False,
    ) -> ClearingStatus:
        """
        Record progress from the execution collaborator.

        A final report ends the token: failed when nothing was
        cleared and an error or failed packet was reported,
        completed otherwise.

        Raises:
            TokenNotFound: Unknown token id
            AlreadyProcessed: Token is not dispatched or already terminal
        """
        record = self._get_record(token)
        state = record.machine.current_state

        if state is ClearingState.PAID and record.dispatched:
            self._start_execution(record)
            state = record.machine.current_state
        if state is not ClearingState.EXECUTING:
            raise AlreadyProcessed(f"Token is {state.value}, cannot report execution", token=token)

        current = record.execution or ExecutionInfo(started_at=self._clock.now())
        record.execution = replace(
            current,
            packets_cleared=current.packets_cleared + progress.packets_cleared,
            packets_failed=current.packets_failed + progress.packets_failed,
            tx_hashes=current.tx_hashes + tuple(
                h for h in progress.tx_hashes if h not in current.tx_hashes
            ),
            error=progress.error or current.error,
        )

        if not final:
            return self._status_of(record)

        execution = record.execution
        record.execution = replace(execution, completed_at=self._clock.now())

        failed = execution.packets_cleared == 0 and (
            execution.error is not None or execution.packets_failed > 0
        )
        if failed:
            record.message = execution.error or "No packets were cleared"
            record.machine.mark_failed(
                FailureReason.EXECUTION_FAILED, "Execution failed", error=execution.error
            )
        else:
            record.message = f"Cleared {execution.packets_cleared} packets"
            record.machine.mark_completed()

        return self._status_of(record)

    # --------------------------------------------------------
    # SUBSCRIPTIONS
    # --------------------------------------------------------

    def subscribe(self, token: str, on_update: StatusCallback) -> Subscription:
        """
        Register a callback for every status transition of a token.

        Raises:
            TokenNotFound: Unknown token id
        """
        self._get_record(token)
        return self._hub.subscribe(token, on_update)

    def _on_transition(self, record: _TokenRecord, event: StateTransitionEvent) -> None:
        self._hub.publish(self._status_of(record))

    # --------------------------------------------------------
    # INTROSPECTION
    # --------------------------------------------------------

    def token_count(self) -> int:
        return len(self._records)

    def tokens_in_state(self, state: ClearingState) -> List[str]:
        return [t for t, r in self._records.items() if r.machine.current_state is state]

    # --------------------------------------------------------
    # HISTORY AND STATISTICS
    # --------------------------------------------------------

    def _operations(self) -> List[ClearingOperation]:
        return [
            self._operation_of(record)
            for record in self._records.values()
            if record.payment is not None
        ]

    @staticmethod
    def _operation_of(record: _TokenRecord) -> ClearingOperation:
        token = record.token
        execution = record.execution or ExecutionInfo()
        return ClearingOperation(
            token=token.token,
            wallet_address=token.wallet_address,
            chain_id=token.chain_id,
            request_type=token.request_type,
            state=record.machine.current_state,
            targets=token.targets,
            issued_at=from_unix(token.issued_at),
            payment_tx=record.payment.tx_ref,
            amount_paid=record.payment.paid,
            denom=record.payment.denom or token.accepted_denom,
            failure_reason=record.machine.failure_reason,
            packets_cleared=execution.packets_cleared,
            packets_failed=execution.packets_failed,
            execution_tx_hashes=execution.tx_hashes,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            error=execution.error,
        )

    def operations_for(self, wallet_address: str, limit: int = 50, offset: int = 0) -> List[ClearingOperation]:
        """Paid operations of one wallet, newest first."""
        operations = [op for op in self._operations() if op.wallet_address == wallet_address]
        operations.sort(key=lambda op: op.issued_at, reverse=True)
        return operations[offset:offset + limit]

    def wallet_statistics(self, wallet_address: str) -> WalletStatistics:
        return summarize_wallet(wallet_address, self._operations())

    def statistics(self) -> PlatformStatistics:
        """Platform totals over every held token."""
        by_state: Dict[str, int] = {state.value: 0 for state in ClearingState}
        for record in self._records.values():
            by_state[record.machine.current_state.value] += 1
        return summarize_platform(self._operations(), by_state)

    async def close(self) -> None:
        for task in list(self._dispatch_tasks):
            task.cancel()
        await self.wait_for_dispatches()
        self._hub.close()


__all__ = [
    "ClearingConfig",
    "ClearingEngine",
]
