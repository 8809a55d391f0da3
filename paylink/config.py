"""
PayLink Configuration Management
Uses pydantic-settings for type-safe environment variable loading
"""

from decimal import Decimal
from typing import Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoreSettings(BaseSettings):
    """Configuration for the fee and settlement core"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # RPC Configuration
    sepolia_rpc_url: str = Field(default="", description="RPC endpoint for Sepolia")
    eth_mainnet_rpc_url: str = Field(default="", description="RPC endpoint for Ethereum mainnet")
    base_mainnet_rpc_url: str = Field(default="https://mainnet.base.org", description="RPC endpoint for Base")
    rpc_timeout_seconds: float = Field(default=8.0, gt=0, description="Bound on every RPC call")

    # Price Source
    coingecko_base_url: str = Field(default="https://api.coingecko.com/api/v3")
    price_fetch_timeout_seconds: float = Field(default=10.0, gt=0)

    # Persistence (empty → in-memory store)
    supabase_url: str = Field(default="")
    supabase_key: str = Field(default="")

    # Fee defaults, used until an operator record is loaded
    fee_config_cache_ttl_seconds: int = Field(default=60, gt=0)
    reward_fee_amount: Decimal = Field(default=Decimal("4"))
    platform_share_fraction: Decimal = Field(default=Decimal("0.5"))
    creator_reward_fraction: Decimal = Field(default=Decimal("0.5"))
    reward_token_symbol: str = Field(default="LCX")
    reward_token_contract: str = Field(
        default="0x98d99c88D31C27C5a591Fe7F023F9DB0B37E4B3b",
        description="Reward token contract used when the network has no registered address"
    )
    treasury_wallet: str = Field(default="", description="Platform-fee recipient; must be set")
    price_cache_ttl_seconds: int = Field(default=300, gt=0)
    fallback_reward_price_usd: Decimal = Field(default=Decimal("0.15"))
    fallback_eth_price_usd: Decimal = Field(default=Decimal("2500"))

    # Notifications
    webhook_url: str = Field(default="", description="Optional sink for payment events")
    webhook_secret: str = Field(default="", description="HMAC-SHA256 key for webhook signatures")
    webhook_timeout_seconds: float = Field(default=10.0, gt=0)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # API Server
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    reload: bool = Field(default=False)
    expiry_sweep_interval_seconds: float = Field(default=60.0, gt=0)

    @field_validator("reward_token_contract", "treasury_wallet")
    @classmethod
    def validate_address(cls, v):
        if v and not v.startswith("0x"):
            return f"0x{v}"
        return v

    def rpc_url_for(self, network: str) -> Optional[str]:
        """RPC URL for a canonical network name, None when unset"""
        urls = {
            "sepolia": self.sepolia_rpc_url,
            "ethereum": self.eth_mainnet_rpc_url,
            "base": self.base_mainnet_rpc_url,
        }
        return urls.get(network) or None

    @property
    def use_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


# Singleton instance
_settings: CoreSettings | None = None


def get_settings() -> CoreSettings:
    """Get or create settings singleton"""
    global _settings
    if _settings is None:
        _settings = CoreSettings()
    return _settings
