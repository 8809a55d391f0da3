"""
Fee calculator for the dual-token fee model

Decides, per payer, whether the protocol fee is paid in the reward token or
in the payment's own token, and computes the platform/creator split.

Fee paths (strictly binary, no blending):
- reward-token balance >= reward_fee_amount → fee is reward_fee_amount of the reward token
- otherwise → the USD value of reward_fee_amount, expressed in the payment token

All amounts are computed in integer base units of the fee token. The creator
share is floored and the platform share takes the remainder, so the two
always sum to the fee total and identical inputs give identical quotes.
"""

import asyncio
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, localcontext
from typing import Tuple

import structlog

from paylink.chain.reader import BalanceReader
from paylink.chains import TokenInfo, resolve_token
from paylink.errors import BalanceUnavailable, PriceUnavailable, UnsupportedToken
from paylink.fees.config import FeeConfig
from paylink.models import FeeQuote, PaymentRequest
from paylink.pricing.oracle import PriceOracle

logger = structlog.get_logger()


def to_units(amount: Decimal, decimals: int) -> int:
    """Token amount → integer base units (half-up at the last on-chain digit)"""
    return int(amount.scaleb(decimals).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_units(units: int, decimals: int) -> Decimal:
    return Decimal(units).scaleb(-decimals)


def split_fee(total_units: int, creator_reward_fraction: Decimal) -> Tuple[int, int]:
    """
    Split a fee into (platform_units, creator_units).

    The creator share is rounded down; any remainder goes to the platform.
    """
    creator_units = int(
        (Decimal(total_units) * creator_reward_fraction).to_integral_value(rounding=ROUND_FLOOR)
    )
    return total_units - creator_units, creator_units


class FeeCalculator:
    """Computes FeeQuotes; reads chain balances and prices but never writes state"""

    def __init__(
        self,
        balance_reader: BalanceReader,
        oracle: PriceOracle,
        rpc_timeout_seconds: float = 8.0,
    ):
        self.balance_reader = balance_reader
        self.oracle = oracle
        self.rpc_timeout_seconds = rpc_timeout_seconds

    async def reward_balance(self, payer_address: str, network: str, config: FeeConfig) -> Decimal:
        """Payer's reward-token balance; any read failure is BalanceUnavailable"""
        contract = config.reward_contract_for(network)
        try:
            balance = await asyncio.wait_for(
                self.balance_reader.get_token_balance(payer_address, contract, network),
                timeout=self.rpc_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning("reward_balance_timeout", payer=payer_address, network=network)
            raise BalanceUnavailable(
                "Reward-token balance read timed out",
                details={"payer": payer_address, "network": network, "timeout_seconds": self.rpc_timeout_seconds},
            ) from e
        except Exception as e:
            logger.warning("reward_balance_unavailable", payer=payer_address, network=network, error=str(e))
            raise BalanceUnavailable(
                f"Reward-token balance read failed: {e}",
                details={"payer": payer_address, "network": network},
            ) from e
        return Decimal(balance)

    async def quote(self, payer_address: str, request: PaymentRequest, config: FeeConfig) -> FeeQuote:
        balance = await self.reward_balance(payer_address, request.network, config)
        return await self.quote_for_path(
            payer_address, request, config, balance, in_reward_token=balance >= config.reward_fee_amount
        )

    async def quote_for_path(
        self,
        payer_address: str,
        request: PaymentRequest,
        config: FeeConfig,
        balance: Decimal,
        in_reward_token: bool,
    ) -> FeeQuote:
        """Quote a given fee path for an already-read reward-token balance"""
        payment_token = resolve_token(request.network, request.token, request.token_decimals)

        if in_reward_token:
            fee_token = TokenInfo(
                symbol=config.reward_token_symbol.upper(),
                address=config.reward_contract_for(request.network),
                decimals=config.reward_token_decimals,
            )
            reference = self.oracle.reference_price(config.reward_token_symbol)
            total_units = to_units(config.reward_fee_amount, fee_token.decimals)
        else:
            fee_token = payment_token
            reference = await self.oracle.get_usd_price(config.reward_token_symbol)
            total_units = to_units(
                await self._fallback_fee_total(payment_token, reference.price, config),
                fee_token.decimals,
            )

        platform_units, creator_units = split_fee(total_units, config.creator_reward_fraction)

        quote = FeeQuote(
            fee_token=fee_token.symbol,
            fee_token_address=fee_token.address,
            fee_token_decimals=fee_token.decimals,
            paid_in_reward_token=in_reward_token,
            fee_total=from_units(total_units, fee_token.decimals),
            platform_share=from_units(platform_units, fee_token.decimals),
            creator_reward=from_units(creator_units, fee_token.decimals),
            reference_price_usd=reference.price,
            price_stale=reference.stale,
            payer_reward_balance=balance,
        )

        logger.info(
            "fee_quoted",
            request_id=request.id,
            payer=payer_address,
            fee_token=quote.fee_token,
            fee_total=str(quote.fee_total),
            reward_path=in_reward_token,
            price_stale=reference.stale,
        )
        return quote

    async def _fallback_fee_total(
        self, payment_token: TokenInfo, reward_price_usd: Decimal, config: FeeConfig
    ) -> Decimal:
        """reward_fee_amount worth of USD, denominated in the payment token"""
        if payment_token.symbol.upper() == config.reward_token_symbol.upper():
            return config.reward_fee_amount

        with localcontext() as ctx:
            ctx.prec = 60
            fee_usd = config.reward_fee_amount * reward_price_usd
            if payment_token.usd_pegged:
                return fee_usd
            try:
                token_price = await self.oracle.get_usd_price(payment_token.symbol)
            except PriceUnavailable as e:
                # Unpriced Pro-mode token: the fallback fee cannot be expressed in it
                raise UnsupportedToken(
                    f"No USD price for {payment_token.symbol}; its fee must be paid in {config.reward_token_symbol}",
                    details={"token": payment_token.symbol, "reward_token": config.reward_token_symbol},
                ) from e
            return fee_usd / token_price.price
