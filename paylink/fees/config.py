"""
Operator-controlled fee configuration and its in-memory cache
"""

import asyncio
import time
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

from paylink.chains import get_token_address
from paylink.config import CoreSettings

logger = structlog.get_logger()


class FeeConfig(BaseModel):
    """Single globally shared fee record"""

    model_config = ConfigDict(frozen=True)

    id: str = "default"
    reward_fee_amount: Decimal = Field(description="Fee in reward-token units, e.g. 4")
    platform_share_fraction: Decimal
    creator_reward_fraction: Decimal
    reward_token_symbol: str = "LCX"
    reward_token_contract: str
    reward_token_decimals: int = 18
    treasury_wallet: str
    price_cache_ttl_seconds: int = Field(default=300, gt=0)
    fallback_reward_price_usd: Decimal = Field(description="Last-resort reward-token price")
    fallback_prices_usd: Dict[str, Decimal] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_split(self) -> "FeeConfig":
        for name in ("platform_share_fraction", "creator_reward_fraction"):
            value = getattr(self, name)
            if value < 0 or value > 1:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if self.platform_share_fraction + self.creator_reward_fraction != 1:
            raise ValueError(
                "platform_share_fraction and creator_reward_fraction must sum to exactly 1"
            )
        if self.reward_fee_amount < 0:
            raise ValueError("reward_fee_amount must not be negative")
        if not self.treasury_wallet:
            raise ValueError("treasury_wallet must be set (TREASURY_WALLET)")
        return self

    def reward_contract_for(self, network: str) -> str:
        """Reward-token contract on a network, falling back to the configured address"""
        return get_token_address(network, self.reward_token_symbol) or self.reward_token_contract

    def fallback_price_for(self, token: str) -> Optional[Decimal]:
        if token.upper() == self.reward_token_symbol.upper():
            return self.fallback_reward_price_usd
        return self.fallback_prices_usd.get(token.upper())

    @classmethod
    def from_settings(cls, settings: CoreSettings) -> "FeeConfig":
        return cls(
            reward_fee_amount=settings.reward_fee_amount,
            platform_share_fraction=settings.platform_share_fraction,
            creator_reward_fraction=settings.creator_reward_fraction,
            reward_token_symbol=settings.reward_token_symbol,
            reward_token_contract=settings.reward_token_contract,
            treasury_wallet=settings.treasury_wallet,
            price_cache_ttl_seconds=settings.price_cache_ttl_seconds,
            fallback_reward_price_usd=settings.fallback_reward_price_usd,
            fallback_prices_usd={"ETH": settings.fallback_eth_price_usd},
        )


ConfigLoader = Callable[[], Awaitable[Optional[FeeConfig]]]


class FeeConfigProvider:
    """
    Read-mostly cache of the fee record.

    Readers get an immutable snapshot; a refresh swaps in a new snapshot, so
    quotes already issued keep the values they were computed with.
    """

    def __init__(
        self,
        default: FeeConfig,
        loader: Optional[ConfigLoader] = None,
        ttl_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = default
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._loaded_at: Optional[float] = None if loader else clock()
        self._refresh_lock = asyncio.Lock()

    def current(self) -> FeeConfig:
        return self._config

    def _is_fresh(self) -> bool:
        return self._loaded_at is not None and (self._clock() - self._loaded_at) < self._ttl

    async def get(self) -> FeeConfig:
        """Cached snapshot, reloaded once the TTL has elapsed"""
        if self._is_fresh() or self._loader is None:
            return self._config
        if self._refresh_lock.locked():
            # A refresh is already running; serve the previous snapshot
            return self._config
        return await self.refresh()

    async def refresh(self) -> FeeConfig:
        if self._loader is None:
            self._loaded_at = self._clock()
            return self._config

        async with self._refresh_lock:
            try:
                loaded = await self._loader()
            except Exception as e:
                logger.warning("fee_config_load_failed", error=str(e))
                loaded = None

            if loaded is not None:
                if loaded != self._config:
                    logger.info(
                        "fee_config_refreshed",
                        reward_fee_amount=str(loaded.reward_fee_amount),
                        treasury_wallet=loaded.treasury_wallet,
                    )
                self._config = loaded
            self._loaded_at = self._clock()
            return self._config

    async def update(self, **changes) -> FeeConfig:
        """Apply operator changes to the in-memory record (validated)"""
        updated = FeeConfig.model_validate({**self._config.model_dump(), **changes})
        self._config = updated
        self._loaded_at = self._clock()
        logger.info("fee_config_updated", fields=sorted(changes))
        return updated
