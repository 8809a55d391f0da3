"""
Settlement verifier

Confirms that on-chain transactions carry the three transfers a payment
request requires (payment, platform fee, creator reward) and settles the
request exactly once.

A verdict is either PAID or REJECTED with a reason code. Rejections leave the
request and its fee records untouched, so a payer can correct the problem
(or wait for a receipt, or send a missing fee transfer) and call verify again.
"""

import asyncio
import re
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from paylink.chain.reader import ReceiptReader, TokenTransfer, TransactionReceipt
from paylink.chains import same_address
from paylink.errors import (
    AmountMismatch,
    Expired,
    InvalidRequest,
    PaymentError,
    RecipientMismatch,
    RpcUnavailable,
    SenderMismatch,
    Timeout,
    TokenMismatch,
    TransactionAlreadyUsed,
    TransactionFailed,
    TransactionNotFound,
)
from paylink.fees.instructions import build_instructions, payment_transfer
from paylink.fees.reservation import FeeReservations
from paylink.ledger.ledger import RequestLedger, terminal_error
from paylink.models import (
    FeeTransaction,
    PaymentRequest,
    Transfer,
    VerificationResult,
    VerificationStatus,
)
from paylink.notifications import Notifier, PaymentEvent

logger = structlog.get_logger()

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


def _token_matches(expected: Transfer, actual: TokenTransfer) -> bool:
    if expected.token_address is None:
        return actual.is_native
    return same_address(actual.token_address, expected.token_address)


def match_transfer(
    expected: Transfer,
    candidates: Sequence[TokenTransfer],
    sender: Optional[str] = None,
) -> TokenTransfer:
    """
    Find the transfer satisfying ``expected`` among ``candidates``.

    Candidates are narrowed by token, then recipient, then exact amount, then
    sender; the first stage that leaves nothing decides the error raised.
    """
    details = {
        "expected": {
            "description": expected.description,
            "token": expected.token,
            "token_address": expected.token_address,
            "to": expected.to,
            "amount": str(expected.amount),
            "base_units": str(expected.base_units),
        },
    }

    by_token = [c for c in candidates if _token_matches(expected, c)]
    if not by_token:
        raise TokenMismatch(
            f"{expected.description}: no {expected.token} transfer found",
            details={**details, "found_tokens": sorted({c.token_address or "native" for c in candidates})},
        )

    by_recipient = [c for c in by_token if same_address(c.to_address, expected.to)]
    if not by_recipient:
        raise RecipientMismatch(
            f"{expected.description}: {expected.token} was not sent to {expected.to}",
            details={**details, "found_recipients": sorted({c.to_address for c in by_token})},
        )

    by_amount = [c for c in by_recipient if c.value == expected.base_units]
    if not by_amount:
        raise AmountMismatch(
            f"{expected.description}: expected {expected.amount} {expected.token}",
            details={**details, "found_base_units": [str(c.value) for c in by_recipient]},
        )

    if sender is None:
        return by_amount[0]

    by_sender = [c for c in by_amount if same_address(c.from_address, sender)]
    if not by_sender:
        raise SenderMismatch(
            f"{expected.description}: transfer was not sent by the payer {sender}",
            details={**details, "payer": sender, "found_senders": sorted({c.from_address for c in by_amount})},
        )
    return by_sender[0]


class SettlementVerifier:
    def __init__(
        self,
        ledger: RequestLedger,
        receipts: ReceiptReader,
        reservations: FeeReservations,
        notifier: Optional[Notifier] = None,
        rpc_timeout_seconds: float = 8.0,
    ):
        self.ledger = ledger
        self.receipts = receipts
        self.reservations = reservations
        self.notifier = notifier or ledger.notifier
        self.rpc_timeout_seconds = rpc_timeout_seconds

    async def verify(
        self,
        request_id: str,
        tx_hash: str,
        fee_tx_hash: Optional[str] = None,
        creator_reward_tx_hash: Optional[str] = None,
        payer_agent_id: Optional[str] = None,
    ) -> VerificationResult:
        """
        Verify a settlement and mark the request PAID.

        ``fee_tx_hash`` and ``creator_reward_tx_hash`` default to ``tx_hash``
        for wallets that bundle all three transfers into one transaction.
        Never raises a PaymentError; failures come back as REJECTED verdicts.
        """
        request: Optional[PaymentRequest] = None
        try:
            request = await self.ledger.get(request_id, lazy_expiry=False)
            return await self._settle(request, tx_hash, fee_tx_hash, creator_reward_tx_hash, payer_agent_id)
        except PaymentError as e:
            logger.info(
                "verification_rejected",
                request_id=request_id,
                tx_hash=tx_hash,
                reason=e.code,
                retryable=e.retryable,
                message=e.message,
            )
            return VerificationResult.rejected(e, request=request)

    async def _settle(
        self,
        request: PaymentRequest,
        tx_hash: str,
        fee_tx_hash: Optional[str],
        creator_reward_tx_hash: Optional[str],
        payer_agent_id: Optional[str],
    ) -> VerificationResult:
        if request.status.is_terminal:
            raise terminal_error(request, request.status)

        payment_hash = self._normalize_hash(tx_hash, "tx_hash")
        fee_hash = self._normalize_hash(fee_tx_hash or tx_hash, "fee_tx_hash")
        reward_hash = self._normalize_hash(creator_reward_tx_hash or tx_hash, "creator_reward_tx_hash")
        distinct = list(dict.fromkeys([payment_hash, fee_hash, reward_hash]))

        await self._check_replay(request, distinct)
        receipts = await self._fetch_receipts(distinct, request.network)

        payment_receipt = receipts[payment_hash]
        mined_at = payment_receipt.block_timestamp
        if mined_at is not None and request.is_past_expiry(mined_at):
            raise Expired(
                f"Payment for {request.id} was mined after the request expired",
                details={
                    "request_id": request.id,
                    "expires_at": request.expires_at.isoformat(),
                    "block_timestamp": mined_at.isoformat(),
                },
            )

        # Each decoded transfer can satisfy at most one expected transfer
        remaining: Dict[str, List[TokenTransfer]] = {h: r.transfers() for h, r in receipts.items()}

        payment = match_transfer(payment_transfer(request), remaining[payment_hash])
        remaining[payment_hash].remove(payment)
        payer = payment.from_address

        if request.payer and not same_address(request.payer, payer):
            raise SenderMismatch(
                f"Request {request.id} must be paid by {request.payer}",
                details={"expected_payer": request.payer, "payer": payer},
            )

        candidates = await self.reservations.settlement_candidates(request, payer, payer_agent_id)
        fee_transaction, fee_transfers = self._match_fees(request, candidates, remaining, fee_hash, reward_hash, payer)
        matched = [payment, *fee_transfers]

        paid = await self.ledger.mark_paid(
            request,
            fee_transaction,
            tx_hash=payment_hash,
            fee_tx_hash=fee_hash,
            creator_reward_tx_hash=reward_hash,
            payer_agent_id=payer_agent_id,
        )
        collected = await self.ledger.store.get_fee_transaction(fee_transaction.id) or fee_transaction

        logger.info(
            "settlement_verified",
            request_id=paid.id,
            payer=payer,
            fee_token=collected.quote.fee_token,
            fee_total=str(collected.quote.fee_total),
            transactions=len(distinct),
        )
        await self.notifier.emit(PaymentEvent.PAID, paid, collected)

        return VerificationResult(
            status=VerificationStatus.PAID,
            details={
                "payer": payer,
                "transfers": [t.describe() for t in matched],
            },
            request=paid,
            fee_transaction=collected,
        )

    @staticmethod
    def _match_fees(
        request: PaymentRequest,
        candidates: List[FeeTransaction],
        remaining: Dict[str, List[TokenTransfer]],
        fee_hash: str,
        reward_hash: str,
        payer: str,
    ) -> Tuple[FeeTransaction, List[TokenTransfer]]:
        """
        Match the platform-fee and creator-reward transfers of the first
        candidate fee record the receipts satisfy.

        The payment transfer has already matched, so a missing fee transfer is
        retryable: it may still arrive in a separate transaction.
        """
        first_error: Optional[PaymentError] = None
        for candidate in candidates:
            instructions = build_instructions(request, candidate.quote, candidate.treasury_wallet)
            _, platform_fee, creator_reward = instructions.transfers
            pool = {h: list(transfers) for h, transfers in remaining.items()}
            found = []
            try:
                for expected, tx in ((platform_fee, fee_hash), (creator_reward, reward_hash)):
                    if expected.base_units == 0:
                        continue
                    transfer = match_transfer(expected, pool[tx], sender=payer)
                    pool[tx].remove(transfer)
                    found.append(transfer)
            except (TokenMismatch, RecipientMismatch, AmountMismatch) as e:
                e.retryable = True
                e.details["payment_verified"] = True
                first_error = first_error or e
                continue
            return candidate, found
        raise first_error

    @staticmethod
    def _normalize_hash(value: Optional[str], field: str) -> str:
        if not value or not TX_HASH_PATTERN.match(value.strip()):
            raise InvalidRequest(f"Invalid {field}: {value!r}", details={field: value})
        return value.strip().lower()

    async def _check_replay(self, request: PaymentRequest, hashes: List[str]) -> None:
        for h in hashes:
            owner = await self.ledger.store.find_request_by_tx_hash(h)
            if owner is not None and owner.id != request.id:
                raise TransactionAlreadyUsed(
                    f"Transaction {h} already settled request {owner.id}",
                    details={"tx_hash": h, "request_id": owner.id},
                )

    async def _fetch_receipts(self, hashes: List[str], network: str) -> Dict[str, TransactionReceipt]:
        receipts = await asyncio.gather(*(self._receipt(h, network) for h in hashes))
        return dict(zip(hashes, receipts))

    async def _receipt(self, tx_hash: str, network: str) -> TransactionReceipt:
        try:
            receipt = await asyncio.wait_for(
                self.receipts.get_transaction_receipt(tx_hash, network),
                timeout=self.rpc_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise Timeout(
                f"Receipt lookup for {tx_hash} timed out",
                details={"tx_hash": tx_hash, "timeout_seconds": self.rpc_timeout_seconds},
            ) from e
        except PaymentError:
            raise
        except Exception as e:
            raise RpcUnavailable(
                f"Receipt lookup for {tx_hash} failed: {e}",
                details={"tx_hash": tx_hash, "network": network},
            ) from e

        if receipt is None or not receipt.mined:
            raise TransactionNotFound(
                f"Transaction {tx_hash} is not mined yet",
                details={"tx_hash": tx_hash, "network": network},
            )
        if not receipt.succeeded:
            raise TransactionFailed(
                f"Transaction {tx_hash} reverted",
                details={"tx_hash": tx_hash, "block_number": receipt.block_number},
            )
        return receipt
