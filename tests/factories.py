"""
Factory Boy factories for generating test data
"""

from decimal import Decimal

import factory

from paylink.fees.config import FeeConfig
from paylink.models import (
    FeeQuote,
    FeeTransaction,
    FeeTransactionStatus,
    PaymentRequest,
    RequestStatus,
    utcnow,
)

# Well-known development accounts
TREASURY = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
RECEIVER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
PAYER = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
OTHER_PAYER = "0x90F79bf6EB2c4f870365E785982E1f101E93b906"
STRANGER = "0x15d34AAf54267DB7D7c367839AAf71A00a2C6A65"

# Sepolia contracts
SEPOLIA_USDC = "0x3402d41aa8e34e0df605c12109de2f8f4ff33a87"
SEPOLIA_USDT = "0xF9E0643Ba46eeaf4e1059775567f67F5c867bbfc"
SEPOLIA_LCX = "0x98d99c88D31C27C5a591Fe7F023F9DB0B37E4B3b"


class FeeConfigFactory(factory.Factory):
    """Factory for FeeConfig"""
    class Meta:
        model = FeeConfig

    reward_fee_amount = Decimal("4")
    platform_share_fraction = Decimal("0.5")
    creator_reward_fraction = Decimal("0.5")
    reward_token_symbol = "LCX"
    reward_token_contract = SEPOLIA_LCX
    treasury_wallet = TREASURY
    price_cache_ttl_seconds = 300
    fallback_reward_price_usd = Decimal("0.15")
    fallback_prices_usd = factory.LazyFunction(lambda: {"ETH": Decimal("2500")})


class PaymentRequestFactory(factory.Factory):
    """Factory for PaymentRequest"""
    class Meta:
        model = PaymentRequest

    id = factory.Sequence(lambda n: f"REQ-{n:08X}")
    amount = Decimal("10")
    token = "USDC"
    network = "sepolia"
    receiver = RECEIVER
    description = "Test payment"
    status = RequestStatus.PENDING
    created_at = factory.LazyFunction(utcnow)
    expires_at = None


class FeeQuoteFactory(factory.Factory):
    """Reward-token quote for the default fee record"""
    class Meta:
        model = FeeQuote

    fee_token = "LCX"
    fee_token_address = SEPOLIA_LCX
    fee_token_decimals = 18
    paid_in_reward_token = True
    fee_total = Decimal("4")
    platform_share = Decimal("2")
    creator_reward = Decimal("2")
    reference_price_usd = Decimal("0.15")
    price_stale = False
    payer_reward_balance = Decimal("10")


class FeeTransactionFactory(factory.Factory):
    """Factory for FeeTransaction"""
    class Meta:
        model = FeeTransaction

    payment_request_id = factory.Sequence(lambda n: f"REQ-{n:08X}")
    payer_wallet = PAYER
    creator_wallet = RECEIVER
    quote = factory.SubFactory(FeeQuoteFactory)
    payment_amount = Decimal("10")
    payment_token = "USDC"
    treasury_wallet = TREASURY
    status = FeeTransactionStatus.PENDING
    created_at = factory.LazyFunction(utcnow)
