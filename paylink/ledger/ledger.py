"""
Request ledger: lifecycle of payment requests

PENDING → PAID | EXPIRED | CANCELLED; every terminal state is absorbing.
All transitions go through the store's compare-and-swap so concurrent
callers cannot both win.
"""

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Union

import structlog
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from paylink.chains import get_chain, resolve_token, same_address
from paylink.errors import (
    AlreadySettled,
    Cancelled,
    Expired,
    InvalidRequest,
    InvalidTransition,
    NotFound,
)
from paylink.ledger.store import RecordStore
from paylink.models import FeeTransaction, PaymentRequest, RequestStatus, utcnow
from paylink.notifications import Notifier, PaymentEvent

logger = structlog.get_logger()


def terminal_error(request: PaymentRequest, status: RequestStatus):
    """Error describing why a request in ``status`` cannot move any further"""
    details = {"request_id": request.id, "status": status.value}
    if status is RequestStatus.PAID:
        return AlreadySettled(f"Request {request.id} is already paid", details={**details, "tx_hash": request.tx_hash})
    if status is RequestStatus.CANCELLED:
        return Cancelled(f"Request {request.id} was cancelled", details=details)
    if status is RequestStatus.EXPIRED:
        return Expired(
            f"Request {request.id} has expired",
            details={**details, "expires_at": request.expires_at.isoformat() if request.expires_at else None},
        )
    return InvalidTransition(f"Request {request.id} cannot transition from {status.value}", details=details)


def _parse_amount(amount: Union[str, int, float, Decimal], decimals: int) -> Decimal:
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise InvalidRequest(f"Invalid amount: {amount!r}", details={"amount": str(amount)}) from e
    if not value.is_finite() or value <= 0:
        raise InvalidRequest("Amount must be a positive number", details={"amount": str(amount)})
    if value.normalize().as_tuple().exponent < -decimals:
        raise InvalidRequest(
            f"Amount has more than {decimals} decimal places",
            details={"amount": str(amount), "decimals": decimals},
        )
    return value


def checksum_address(address: Optional[str], field: str) -> Optional[str]:
    if address is None:
        return None
    if not isinstance(address, str) or not Web3.is_address(address.lower()):
        raise InvalidRequest(f"Invalid {field} address: {address!r}", details={field: address})
    return Web3.to_checksum_address(address.lower())


def cancel_message(request_id: str) -> str:
    """Text a creator signs (EIP-191 personal_sign) to prove ownership when cancelling"""
    return f"Cancel PayLink request {request_id}"


def recover_signer(request_id: str, signature: str) -> str:
    try:
        return Account.recover_message(encode_defunct(text=cancel_message(request_id)), signature=signature)
    except Exception as e:
        raise InvalidRequest(
            "Invalid cancellation signature",
            details={"request_id": request_id, "signature": signature},
        ) from e


class RequestLedger:
    """Owns PaymentRequest state; the only writer of request status"""

    def __init__(
        self,
        store: RecordStore,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier or Notifier()
        self.clock = clock

    async def create_request(
        self,
        amount: Union[str, int, float, Decimal],
        token: str,
        receiver: str,
        network: str = "sepolia",
        description: str = "",
        payer: Optional[str] = None,
        expires_in_seconds: Optional[int] = None,
        token_decimals: Optional[int] = None,
        creator_agent_id: Optional[str] = None,
        creator_wallet: Optional[str] = None,
    ) -> PaymentRequest:
        chain = get_chain(network)
        token_info = resolve_token(chain.name, token, token_decimals)
        value = _parse_amount(amount, token_info.decimals)

        if expires_in_seconds is not None and expires_in_seconds <= 0:
            raise InvalidRequest(
                "expires_in_seconds must be positive",
                details={"expires_in_seconds": expires_in_seconds},
            )

        now = self.clock()
        request = PaymentRequest(
            amount=value,
            token=token_info.symbol,
            network=chain.name,
            receiver=checksum_address(receiver, "receiver"),
            token_decimals=token_info.decimals if token_info.symbol == token_info.address else None,
            description=description,
            payer=checksum_address(payer, "payer"),
            creator_agent_id=creator_agent_id,
            creator_wallet=checksum_address(creator_wallet, "creator_wallet"),
            created_at=now,
            expires_at=now + timedelta(seconds=expires_in_seconds) if expires_in_seconds else None,
        )
        request = await self.store.create_request(request)

        logger.info(
            "payment_request_created",
            request_id=request.id,
            amount=str(request.amount),
            token=request.token,
            network=request.network,
            agent=request.created_by_agent,
        )
        await self.notifier.emit(PaymentEvent.CREATED, request)
        return request

    async def get(self, request_id: str, lazy_expiry: bool = True) -> PaymentRequest:
        """
        Load a request.

        With ``lazy_expiry`` a PENDING request past ``expires_at`` is reported
        as EXPIRED; the stored status is left untouched either way.
        """
        request = await self.store.get_request(request_id)
        if request is None:
            raise NotFound(f"Payment request {request_id} not found", details={"request_id": request_id})
        if not lazy_expiry:
            return request
        effective = request.effective_status(self.clock())
        if effective is not request.status:
            return request.model_copy(update={"status": effective})
        return request

    async def list_requests(
        self,
        creator_wallet: Optional[str] = None,
        status: Optional[RequestStatus] = None,
    ) -> List[PaymentRequest]:
        return await self.store.list_requests(creator_wallet=creator_wallet, status=status)

    async def _transition(self, request_id: str, new: RequestStatus) -> PaymentRequest:
        updated = await self.store.transition_request(request_id, RequestStatus.PENDING, new)
        if updated is not None:
            await self.store.fail_pending_fee_transactions(request_id)
            return updated

        current = await self.store.get_request(request_id)
        if current is None:
            raise NotFound(f"Payment request {request_id} not found", details={"request_id": request_id})
        raise terminal_error(current, current.status)

    async def cancel(
        self,
        request_id: str,
        requested_by: Optional[str] = None,
        signature: Optional[str] = None,
    ) -> PaymentRequest:
        """
        Cancel a PENDING request.

        Only the creator (its creator wallet, or the receiver when no creator
        wallet was recorded) may cancel. With ``signature`` the caller is the
        wallet recovered from a signed ``cancel_message``. With
        ``requested_by`` alone the named wallet is taken on trust: nothing
        here proves the caller controls it, so callers exposed to untrusted
        clients must authenticate it first or require a signature. Pending
        fee records are failed.
        """
        request = await self.store.get_request(request_id)
        if request is None:
            raise NotFound(f"Payment request {request_id} not found", details={"request_id": request_id})

        if signature:
            signer = recover_signer(request_id, signature)
            if requested_by is not None and not same_address(signer, requested_by):
                raise InvalidTransition(
                    "Cancellation signature was not made by requested_by",
                    details={"request_id": request_id, "requested_by": requested_by, "signer": signer},
                )
            requested_by = signer

        owner = request.creator_wallet or request.receiver
        if requested_by is not None and not same_address(owner, requested_by):
            raise InvalidTransition(
                "Only the creator can cancel a payment request",
                details={"request_id": request_id, "requested_by": requested_by},
            )

        if request.status is RequestStatus.PENDING and request.is_past_expiry(self.clock()):
            await self.expire(request_id)
            raise terminal_error(request, RequestStatus.EXPIRED)

        cancelled = await self._transition(request_id, RequestStatus.CANCELLED)
        logger.info("payment_request_cancelled", request_id=request_id)
        await self.notifier.emit(PaymentEvent.CANCELLED, cancelled)
        return cancelled

    async def expire(self, request_id: str) -> PaymentRequest:
        expired = await self._transition(request_id, RequestStatus.EXPIRED)
        logger.info("payment_request_expired", request_id=request_id)
        await self.notifier.emit(PaymentEvent.EXPIRED, expired)
        return expired

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Persist EXPIRED for every PENDING request past its expiry; returns the count"""
        now = now or self.clock()
        expired = 0
        for request in await self.store.list_pending_expired(now):
            try:
                await self.expire(request.id)
                expired += 1
            except (AlreadySettled, Cancelled, Expired):
                # Settled or cancelled between the listing and the transition
                continue
        return expired

    async def mark_paid(
        self,
        request: PaymentRequest,
        fee_transaction: FeeTransaction,
        tx_hash: str,
        fee_tx_hash: str,
        creator_reward_tx_hash: str,
        payer_agent_id: Optional[str] = None,
    ) -> PaymentRequest:
        """
        Compare-and-swap PENDING → PAID; raises AlreadySettled when another settlement won.

        ``fee_transaction`` is marked COLLECTED, and written for the first time
        when the payer settled without a reserved quote.
        """
        paid = await self.store.settle(
            request_id=request.id,
            tx_hash=tx_hash,
            fee_tx_hash=fee_tx_hash,
            creator_reward_tx_hash=creator_reward_tx_hash,
            fee_transaction=fee_transaction,
            paid_at=self.clock(),
            payer_agent_id=payer_agent_id,
        )
        if paid is None:
            current = await self.store.get_request(request.id) or request
            logger.info("settlement_race_lost", request_id=request.id, status=current.status.value)
            raise terminal_error(current, current.status)

        logger.info(
            "payment_settled",
            request_id=paid.id,
            tx_hash=tx_hash,
            fee_transaction_id=fee_transaction.id,
            fee_token=fee_transaction.quote.fee_token,
        )
        return paid
