"""
CoinGecko simple-price source
"""

from decimal import Decimal
from typing import Dict, Optional

import httpx
import structlog

from paylink.errors import PriceUnavailable

logger = structlog.get_logger()

COINGECKO_IDS: Dict[str, str] = {
    "LCX": "lcx",
    "ETH": "ethereum",
    "USDC": "usd-coin",
    "USDT": "tether",
}


class CoinGeckoPriceSource:
    """Fetches a USD price per token symbol; raises PriceUnavailable on any failure"""

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        client: Optional[httpx.AsyncClient] = None,
        ids: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(headers={"Accept": "application/json"})
        self.ids = {**COINGECKO_IDS, **(ids or {})}

    async def __call__(self, token: str) -> Decimal:
        coin_id = self.ids.get(token.upper())
        if coin_id is None:
            raise PriceUnavailable(f"No price feed for {token}", details={"token": token})

        try:
            response = await self.client.get(
                f"{self.base_url}/simple/price",
                params={"ids": coin_id, "vs_currencies": "usd"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise PriceUnavailable(f"CoinGecko request failed: {e}") from e

        try:
            value = data[coin_id]["usd"]
        except (KeyError, TypeError) as e:
            raise PriceUnavailable("Invalid CoinGecko response format") from e
        if not isinstance(value, (int, float, str)):
            raise PriceUnavailable("Invalid CoinGecko price value")

        return Decimal(str(value))

    async def close(self) -> None:
        await self.client.aclose()
