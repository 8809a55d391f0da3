"""
Instruction builder: payment request + fee quote → ordered transfers
"""

from decimal import Decimal
from typing import Dict

from paylink.chains import resolve_token
from paylink.models import FeeQuote, InstructionSet, PaymentRequest, Transfer


def payment_transfer(request: PaymentRequest) -> Transfer:
    """The payment-to-creator line item; independent of the fee quote"""
    token = resolve_token(request.network, request.token, request.token_decimals)
    return Transfer(
        description=f"Payment for {request.id}",
        token=token.symbol,
        token_address=token.address,
        decimals=token.decimals,
        amount=request.amount,
        to=request.receiver,
    )


def build_instructions(request: PaymentRequest, quote: FeeQuote, treasury_wallet: str) -> InstructionSet:
    """
    Always three line items, in order: payment, platform fee, creator reward.

    Line items are never merged, even when the fee token equals the payment
    token or the receiver is the treasury itself. Pure: identical inputs give
    identical output and nothing is reserved here.
    """
    transfers = [
        payment_transfer(request),
        Transfer(
            description="Platform fee",
            token=quote.fee_token,
            token_address=quote.fee_token_address,
            decimals=quote.fee_token_decimals,
            amount=quote.platform_share,
            to=treasury_wallet,
        ),
        Transfer(
            description="Creator reward",
            token=quote.fee_token,
            token_address=quote.fee_token_address,
            decimals=quote.fee_token_decimals,
            amount=quote.creator_reward,
            to=request.receiver,
        ),
    ]

    totals: Dict[str, Decimal] = {}
    for transfer in transfers:
        totals[transfer.token] = totals.get(transfer.token, Decimal("0")) + transfer.amount

    return InstructionSet(
        request_id=request.id,
        network=request.network,
        fee_token=quote.fee_token,
        transfers=transfers,
        totals_by_token=totals,
    )
