"""
Locked fee quotes

The first quote for a (request, payer) pair is stored as a PENDING
FeeTransaction. Later quotes and settlement verification for the same pair
read that record back instead of re-pricing, so a price or config refresh
cannot change the fee owed once it has been shown to the payer.

Verification never reserves: when a payer settles without having asked for a
quote, the candidate records are built in memory and only the one the
receipts satisfy is written, by the winning settle.
"""

from typing import List, Optional, Tuple

import structlog

from paylink.fees.calculator import FeeCalculator
from paylink.fees.config import FeeConfig, FeeConfigProvider
from paylink.ledger.store import RecordStore
from paylink.models import FeeQuote, FeeTransaction, PaymentRequest

logger = structlog.get_logger()


class FeeReservations:
    def __init__(self, store: RecordStore, calculator: FeeCalculator, config: FeeConfigProvider):
        self.store = store
        self.calculator = calculator
        self.config = config

    async def locked_quote(
        self,
        request: PaymentRequest,
        payer_wallet: str,
        payer_agent_id: Optional[str] = None,
    ) -> Tuple[FeeTransaction, bool]:
        """Return (record, reused) for this payer, quoting and reserving on first use"""
        existing = await self.store.find_pending_fee_transaction(request.id, payer_wallet)
        if existing is not None:
            logger.debug("fee_quote_reused", request_id=request.id, fee_transaction_id=existing.id)
            return existing, True

        config = await self.config.get()
        quote = await self.calculator.quote(payer_wallet, request, config)
        record = self._record(request, payer_wallet, payer_agent_id, quote, config)

        record, created = await self.store.reserve_fee_transaction(record)
        if created:
            logger.info(
                "fee_transaction_reserved",
                request_id=request.id,
                fee_transaction_id=record.id,
                payer=payer_wallet,
                fee_token=quote.fee_token,
                fee_total=str(quote.fee_total),
            )
        return record, not created

    async def settlement_candidates(
        self,
        request: PaymentRequest,
        payer_wallet: str,
        payer_agent_id: Optional[str] = None,
    ) -> List[FeeTransaction]:
        """
        Fee records a settlement by ``payer_wallet`` may satisfy. Writes nothing.

        The locked quote when the payer has one. Otherwise an unsaved quote for
        the payer's current balance; if that falls back to the payment token,
        the reward-token quote is offered as well, since the settlement being
        verified may itself have spent the reward-token balance.
        """
        existing = await self.store.find_pending_fee_transaction(request.id, payer_wallet)
        if existing is not None:
            return [existing]

        config = await self.config.get()
        quote = await self.calculator.quote(payer_wallet, request, config)
        candidates = [self._record(request, payer_wallet, payer_agent_id, quote, config)]
        if not quote.paid_in_reward_token:
            reward_quote = await self.calculator.quote_for_path(
                payer_wallet, request, config, quote.payer_reward_balance, in_reward_token=True
            )
            candidates.append(self._record(request, payer_wallet, payer_agent_id, reward_quote, config))

        logger.debug(
            "fee_quote_unlocked",
            request_id=request.id,
            payer=payer_wallet,
            fee_tokens=[c.quote.fee_token for c in candidates],
        )
        return candidates

    @staticmethod
    def _record(
        request: PaymentRequest,
        payer_wallet: str,
        payer_agent_id: Optional[str],
        quote: FeeQuote,
        config: FeeConfig,
    ) -> FeeTransaction:
        return FeeTransaction(
            payment_request_id=request.id,
            payer_wallet=payer_wallet,
            payer_agent_id=payer_agent_id,
            creator_wallet=request.creator_wallet or request.receiver,
            creator_agent_id=request.creator_agent_id,
            quote=quote,
            payment_amount=request.amount,
            payment_token=request.token,
            treasury_wallet=config.treasury_wallet,
        )
